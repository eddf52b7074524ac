"""
Configuration Manager Module
Loads engine settings from YAML files and environment variables.
"""

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


class ConfigManager:
    """Manages application configuration from YAML files and environment variables."""

    _instance = None
    _config: Dict = None
    _status_mapping: Dict = None

    def __new__(cls):
        """Singleton pattern for configuration."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize configuration if not already loaded."""
        if self._config is None:
            self._load_configuration()

    def _load_configuration(self) -> None:
        """Load all configuration files."""
        load_dotenv()

        self._config_dir = self._find_config_dir()

        self._config = self._load_yaml_with_env(self._config_dir / 'config.yaml')
        self._status_mapping = self._load_yaml_with_env(self._config_dir / 'status_mapping.yaml')

    def _find_config_dir(self) -> Path:
        """Find the configuration directory."""
        env_config_dir = os.getenv('CONFIG_DIR')
        if env_config_dir:
            return Path(env_config_dir)

        possible_paths = [
            Path(__file__).parent.parent / 'config',  # Repository root
            Path.cwd() / 'config',
            Path('/app/config'),  # Docker container
        ]

        for path in possible_paths:
            if path.exists():
                return path

        raise FileNotFoundError("Configuration directory not found")

    def _load_yaml_with_env(self, file_path: Path) -> Dict:
        """
        Load YAML file with environment variable substitution.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} syntax.
        """
        if not file_path.exists():
            return {}

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        content = self._substitute_env_vars(content)

        return yaml.safe_load(content) or {}

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR_NAME} and ${VAR_NAME:-default} references."""
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2)

            value = os.getenv(var_name)
            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                return match.group(0)

        return re.sub(pattern, replacer, content)

    # ========================================
    # Configuration Getters
    # ========================================

    def get_jira_config(self) -> Dict:
        """Get Jira API configuration."""
        return self._config.get('jira') or {}

    def get_database_config(self) -> Dict:
        """Get database configuration."""
        return self._config.get('database') or {}

    def get_locks_config(self) -> Dict:
        """Get lock manager configuration."""
        return self._config.get('locks') or {}

    def get_logging_config(self) -> Dict:
        """Get logging configuration."""
        return self._config.get('logging') or {}

    def get_scheduler_config(self) -> Dict:
        """Get scheduler configuration."""
        return self._config.get('scheduler') or {}

    def get_minutes(self, section: str, key: str, default: int) -> timedelta:
        """
        Read a minutes setting as a timedelta.

        Args:
            section: Top-level configuration section
            key: Setting name inside the section
            default: Minutes to use when the setting is absent

        Returns:
            timedelta of the configured minutes
        """
        value = (self._config.get(section) or {}).get(key)
        return timedelta(minutes=int(value if value is not None else default))

    # ========================================
    # Status Mapping Getters
    # ========================================

    def get_status_categories(self) -> Dict[str, List[str]]:
        """Get status category mappings."""
        return self._status_mapping.get('status_categories') or {}

    def get_wait_statuses(self) -> List[str]:
        """Get in-progress statuses that count as waiting time."""
        return self._status_mapping.get('wait_statuses') or []

    def get_status_category(self, status_name: str) -> Optional[str]:
        """
        Get status category for a given status name.

        Args:
            status_name: Name of the status

        Returns:
            Category name ('to_do', 'in_progress', 'done') or None
        """
        if not status_name:
            return None

        lowered = status_name.strip().lower()
        for category, statuses in self.get_status_categories().items():
            if any(lowered == s.lower() for s in statuses or []):
                return category
        return None

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a single setting with a default."""
        value = (self._config.get(section) or {}).get(key)
        return default if value is None else value

"""
Status Classification
Maps workflow status names onto to_do / in_progress / done.
"""

from typing import Optional

from agile_mirror.config_manager import ConfigManager

TO_DO = 'to_do'
IN_PROGRESS = 'in_progress'
DONE = 'done'

# Jira statusCategory.key values
JIRA_CATEGORY_KEYS = {
    'new': TO_DO,
    'indeterminate': IN_PROGRESS,
    'done': DONE,
}

_KEYWORDS = [
    (DONE, ('done', 'closed', 'resolved', 'complete', 'released')),
    (IN_PROGRESS, ('progress', 'review', 'develop', 'test', 'qa')),
    (TO_DO, ('to do', 'todo', 'open', 'backlog', 'new', 'selected')),
]


class StatusClassifier:
    """
    Resolves a status to a workflow category.

    Order: configured name lists, then the tracker's own status category,
    then keyword matching on the name.
    """

    def __init__(self, config: ConfigManager = None):
        config = config or ConfigManager()
        self._config = config
        self._wait_statuses = {s.lower() for s in config.get_wait_statuses()}

    def category(self, status_name: Optional[str], category_key: Optional[str] = None) -> Optional[str]:
        configured = self._config.get_status_category(status_name)
        if configured:
            return configured

        if category_key in JIRA_CATEGORY_KEYS:
            return JIRA_CATEGORY_KEYS[category_key]

        if not status_name:
            return None
        lowered = status_name.lower()
        for category, keywords in _KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return category
        return None

    def is_done(self, status_name: Optional[str], category_key: Optional[str] = None) -> bool:
        return self.category(status_name, category_key) == DONE

    def is_in_progress(self, status_name: Optional[str], category_key: Optional[str] = None) -> bool:
        return self.category(status_name, category_key) == IN_PROGRESS

    def is_active(self, status_name: Optional[str]) -> bool:
        """In progress and not a queue/wait state."""
        if not status_name or status_name.lower() in self._wait_statuses:
            return False
        return self.is_in_progress(status_name)

"""
Database Connection Module
Handles store connection pooling and session management using SQLAlchemy.
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from agile_mirror.config_manager import ConfigManager
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnection:
    """
    Owns one SQLAlchemy engine and its session factory.

    Instances are created by the process context; there is no module-level
    connection.
    """

    def __init__(self, url: str = None, db_config: dict = None):
        """
        Initialize the engine.

        Args:
            url: SQLAlchemy URL; built from configuration when omitted
            db_config: Database settings; read from ConfigManager when omitted
        """
        if db_config is None:
            db_config = ConfigManager().get_database_config() if url is None else {}

        self.url = url or db_config.get('url') or self._build_connection_url(db_config)
        self._engine = self._create_engine(self.url, db_config)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

        logger.info(f"Database engine initialized for {self._engine.url.render_as_string(hide_password=True)}")

    def _build_connection_url(self, db_config: dict) -> str:
        """Build PostgreSQL connection URL from config."""
        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 5432)
        name = db_config.get('name', 'agile_mirror')
        user = db_config.get('user', 'agile_mirror')
        password = db_config.get('password') or ''

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"

    def _create_engine(self, url: str, db_config: dict) -> Engine:
        """Create the engine with pooling suited to the dialect."""
        echo = os.getenv('SQL_ECHO', 'false').lower() == 'true'

        if url.startswith('sqlite'):
            # In-memory SQLite must share one connection across sessions
            options = {'connect_args': {'check_same_thread': False}}
            if url in ('sqlite://', 'sqlite:///:memory:'):
                options['poolclass'] = StaticPool
            return create_engine(url, echo=echo, **options)

        return create_engine(
            url,
            poolclass=QueuePool,
            pool_size=db_config.get('pool_size', 5),
            max_overflow=db_config.get('max_overflow', 10),
            pool_timeout=db_config.get('pool_timeout', 30),
            pool_pre_ping=True,
            echo=echo
        )

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        return self._engine

    @property
    def dialect(self) -> str:
        """Name of the backing dialect ('postgresql', 'sqlite')."""
        return self._engine.dialect.name

    def get_session(self) -> Session:
        """Create a new database session."""
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        Usage:
            with db.session_scope() as session:
                session.query(...)
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            bool: True if connection is healthy, False otherwise.
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.debug("Database connection health check passed")
            return True
        except Exception as e:
            logger.error(f"Database connection health check failed: {e}")
            return False

    def dispose(self) -> None:
        """Dispose of the connection pool."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database connection pool disposed")

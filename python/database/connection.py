"""
Database connection handling for the durable batch job store

- DatabaseSettings: resolved from the ``database`` config section, DB_* env
  vars, or a full DATABASE_URL
- tenacity retries around connecting, so the service survives a database
  that comes up after it
- DatabaseSessionProvider: owns the engine and hands out transactional
  sessions via ``session_scope()``
- create_test_provider(): in-memory SQLite for tests

Uses SQLAlchemy 2.0 style.
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy import create_engine, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig
from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# SETTINGS
# ============================================

@dataclass
class DatabaseSettings:
    """Where the job store lives and how its pool behaves."""
    host: str = "localhost"
    port: int = 5432
    database: str = "screening_database"
    user: str = "screening_user"
    password: str = "screening_password"
    url: Optional[str] = None
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800

    @classmethod
    def from_env(cls, base: Optional[DatabaseConfig] = None) -> 'DatabaseSettings':
        """Environment wins over the config section, which wins over defaults."""
        base = base or DatabaseConfig()
        env = os.environ
        return cls(
            host=env.get("DB_HOST", base.host),
            port=int(env.get("DB_PORT", base.port)),
            database=env.get("DB_NAME", base.name),
            user=env.get("DB_USER", base.user),
            password=env.get("DB_PASSWORD", base.password),
            url=env.get("DATABASE_URL") or None,
            echo=env.get("DB_ECHO", "false").lower() == "true",
            pool_size=int(env.get("DB_POOL_SIZE", cls.pool_size)),
            max_overflow=int(env.get("DB_MAX_OVERFLOW", cls.max_overflow)),
            pool_timeout=int(env.get("DB_POOL_TIMEOUT", cls.pool_timeout)),
            pool_recycle=int(env.get("DB_POOL_RECYCLE", cls.pool_recycle)),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")

    def get_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    def pool_options(self) -> Dict[str, Any]:
        """Keyword arguments for create_engine(); SQLite takes none."""
        if self.is_sqlite:
            return {}
        return dict(
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_timeout=self.pool_timeout,
            pool_recycle=self.pool_recycle,
            pool_pre_ping=True,
        )


# ============================================
# RETRIES
# ============================================

def create_retry_decorator(attempts: int = 3, max_wait: float = 10) -> Callable:
    """tenacity policy for connection-level failures.

    Only OperationalError is retried; anything else (bad SQL, constraint
    violations) surfaces immediately.
    """
    return retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


db_retry = create_retry_decorator()


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Engine owner for the job store.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_env(config.database))
        provider.init()
        provider.create_tables()
        with provider.session_scope() as session:
            BatchJobRepository(session).list_recent(limit=20)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self.settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._sessions: Optional[sessionmaker] = None

    @property
    def is_initialized(self) -> bool:
        return self._sessions is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def init(self) -> None:
        """Connect (with retries) and build the session factory. Idempotent."""
        if self.is_initialized:
            return
        if self._engine is None:
            self._engine = self._connect()
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info("Job store connected: %s", self._engine.url.render_as_string(hide_password=True))

    @db_retry
    def _connect(self) -> Engine:
        engine = create_engine(
            self.settings.get_url(),
            echo=self.settings.echo,
            **self.settings.pool_options()
        )
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return engine

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """One transaction: commit on success, roll back on any exception."""
        self.init()
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        self.init()
        Base.metadata.create_all(self.engine)
        logger.info("Job store tables ready")

    @db_retry
    def _ping(self) -> None:
        with self.session_scope() as session:
            session.execute(text("SELECT 1"))

    def health_check(self) -> bool:
        """True when a trivial query succeeds, connection errors retried first."""
        try:
            self._ping()
        except SQLAlchemyError as e:
            logger.error("Job store health check failed: %s", e)
            return False
        return True

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Job store engine disposed")
        self._sessions = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Ready-to-use provider for tests, tables created.

    With no arguments the store is a single in-memory SQLite connection that
    executor threads can share.
    """
    if engine is None and settings is None:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )
    provider = DatabaseSessionProvider(
        settings=settings or DatabaseSettings(url="sqlite://"),
        engine=engine
    )
    provider.create_tables()
    return provider

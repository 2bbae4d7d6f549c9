"""
Database Connection Management for the Screening Core

Owns the SQLAlchemy engine and session factory used by the repositories.
Connection settings come from the ``database`` section of config.yaml;
``DATABASE_URL`` and ``DB_*`` environment variables override them so
deployments never need credentials in the file.

Engine creation is retried with tenacity while the server is unreachable.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
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
    """Resolved connection and pool settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "screening_core"
    user: str = "screening_user"
    password: str = "screening_password"
    url: Optional[str] = None
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_config(cls, config: Optional[DatabaseConfig] = None) -> 'DatabaseSettings':
        """Settings from the config section, overridden by environment variables."""
        config = config or DatabaseConfig()
        return cls(
            host=os.getenv("DB_HOST", config.host),
            port=int(os.getenv("DB_PORT", str(config.port))),
            database=os.getenv("DB_NAME", config.name),
            user=os.getenv("DB_USER", config.user),
            password=os.getenv("DB_PASSWORD", config.password),
            url=os.getenv("DATABASE_URL") or None,
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    def get_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> dict:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Retry decorator for operations that fail while the database is unreachable.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait between attempts (seconds)
        max_wait: Maximum wait between attempts (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Engine and session factory shared by the repositories.

    Usage:
        provider = DatabaseSessionProvider(DatabaseSettings.from_config(config.database))
        with provider.session_scope() as session:
            PartyRepository(session).upsert(party)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Args:
            settings: Connection settings (config defaults plus environment when omitted)
            engine: Pre-created engine, e.g. in-memory SQLite in tests
        """
        self._settings = settings or DatabaseSettings.from_config()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """Create the engine (unless one was given) and the session factory."""
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        # Schedules and list records are handed out as detached snapshots
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=self._settings.echo,
                connect_args={"check_same_thread": False}
            )
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **self._settings.pool_options()
            )

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

        @event.listens_for(self._engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            logger.debug("Connection returned to pool")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session that commits on exit and rolls back on any exception.

        Usage:
            with provider.session_scope() as session:
                session.add(record)
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables (tests and local development; production uses alembic)."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """Drop all database tables. USE WITH CAUTION!"""
        if self._engine is None:
            self.init()
        Base.metadata.drop_all(self._engine)
        logger.warning("Database tables dropped")

    def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider(config: Optional[DatabaseConfig] = None) -> DatabaseSessionProvider:
    """Process-wide provider, created from ``config`` on first use."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(DatabaseSettings.from_config(config))
    return _db_provider


def init_db(config: Optional[DatabaseConfig] = None, echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global provider. Call during application startup.

    Args:
        config: ``database`` section of the loaded configuration
        echo: If True, log all SQL statements
    """
    provider = get_db_provider(config)
    provider.init(echo=echo)
    return provider


def close_db() -> None:
    """Dispose the global provider. Call during application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Provider for tests.

    Args:
        engine: Pre-created engine (e.g., SQLite for unit tests)
        settings: Custom settings
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)

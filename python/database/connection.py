"""
Database Connection Management for the Identity Screening Engine

This module provides:
- FastAPI Dependency Injection pattern for database sessions
- Unit of Work pattern for the all-or-nothing report write
- Connection pooling configured from the environment
- Health checks with retry logic (tenacity)

Uses SQLAlchemy 2.0 style.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from functools import lru_cache
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "screening"
    user: str = "screening"
    password: str = "screening"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Create settings from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "screening"),
            user=os.getenv("DB_USER", "screening"),
            password=os.getenv("DB_PASSWORD", "screening"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    def get_url(self) -> str:
        """Database URL; DATABASE_URL wins over the individual settings."""
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def engine_options(self, url: str) -> dict:
        """Pool options for create_engine; SQLite keeps its default pool."""
        if url.startswith("sqlite"):
            return {}
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


@lru_cache()
def get_settings() -> DatabaseSettings:
    """Get cached database settings."""
    return DatabaseSettings.from_env()


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for database operations.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait between attempts (seconds)
        max_wait: Maximum wait between attempts (seconds)

    Returns:
        tenacity retry decorator retrying on OperationalError
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
# UNIT OF WORK PATTERN
# ============================================

class UnitOfWork:
    """
    Unit of Work pattern for explicit transaction management.

    Nothing is visible to other sessions until commit(); leaving the
    block with an exception rolls everything back.

    Usage:
        with provider.get_unit_of_work() as uow:
            repo = ReportRepository(uow.session)
            report = repo.create_report(...)
            uow.commit()
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None

    def __enter__(self) -> 'UnitOfWork':
        self._session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.rollback()
        self.close()

    @property
    def session(self) -> Session:
        """Get the current session."""
        if self._session is None:
            raise RuntimeError("UnitOfWork not started. Use as context manager.")
        return self._session

    def commit(self) -> None:
        if self._session:
            self._session.commit()

    def rollback(self) -> None:
        if self._session:
            self._session.rollback()

    def close(self) -> None:
        if self._session:
            self._session.close()
            self._session = None


# ============================================
# DATABASE SESSION PROVIDER (FastAPI DI)
# ============================================

class DatabaseSessionProvider:
    """
    Provides database sessions for the report assembler, the database
    cache backend and FastAPI endpoints.

    Usage:
        db_provider = DatabaseSessionProvider()
        db_provider.init()

        with db_provider.session_scope() as session:
            ...
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Initialize the database session provider.

        Args:
            settings: Database settings (uses env if not provided)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or get_settings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Initialize the engine and session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

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
        """Create database engine with retry logic."""
        url = self._settings.get_url()
        engine = create_engine(url, echo=self._settings.echo, **self._settings.engine_options(url))

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

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

    def get_unit_of_work(self) -> UnitOfWork:
        """Get a Unit of Work for explicit transaction management."""
        if self._session_factory is None:
            self.init()
        return UnitOfWork(self._session_factory)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for session with auto-commit/rollback.

        Usage:
            with db_provider.session_scope() as session:
                session.add(entry)
                # Auto-commits on exit, rolls back on exception
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
        """Create all database tables."""
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

    @db_retry
    def health_check(self) -> bool:
        """
        Check if database connection is healthy with retry.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except OperationalError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Close database connections and clean up."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """Get the global database provider instance."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False, create_tables: bool = True) -> DatabaseSessionProvider:
    """
    Initialize the global database provider.

    Call this during application startup.

    Args:
        echo: If True, log all SQL statements
        create_tables: Create missing tables

    Returns:
        DatabaseSessionProvider instance
    """
    provider = get_db_provider()
    provider.init(echo=echo)
    if create_tables:
        provider.create_tables()
    return provider


def close_db() -> None:
    """Close the global database provider during application shutdown."""
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        engine: Pre-created engine (e.g., SQLite for unit tests)
        settings: Custom settings for testing

    Returns:
        DatabaseSessionProvider configured for testing
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)

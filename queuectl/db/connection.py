"""
Database connection management.
Handles SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from queuectl.config import get_settings
from queuectl.db.models import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def _enable_sqlite_wal(dbapi_connection, connection_record) -> None:
    """Switch SQLite to WAL so readers never block the claiming writer."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def create_db_engine(database_url: str, busy_timeout_seconds: float | None = None) -> Engine:
    """
    Create a database engine for the given URL.

    SQLite connections get a busy timeout so that concurrent workers wait for
    the write lock instead of failing immediately.

    Args:
        database_url: SQLAlchemy database URL.
        busy_timeout_seconds: SQLite busy timeout. Defaults to settings.

    Returns:
        Engine: The SQLAlchemy engine instance.
    """
    settings = get_settings()
    if busy_timeout_seconds is None:
        busy_timeout_seconds = settings.database_busy_timeout_seconds

    is_sqlite = make_url(database_url).get_backend_name() == "sqlite"
    connect_args = {"timeout": busy_timeout_seconds} if is_sqlite else {}

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_wal)
    return engine


def get_engine() -> Engine:
    """
    Get or create the database engine.

    Returns:
        Engine: The SQLAlchemy engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_settings().database_url)
    return _engine


def init_db(database_url: str | None = None, create_schema: bool = True) -> None:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Args:
        database_url: Optional URL overriding the configured one.
        create_schema: Create missing tables. Worker processes skip this, the
            supervisor has already done it before forking.
    """
    global _engine, SessionLocal
    if database_url is not None:
        close_db()
        _engine = create_db_engine(database_url)
    engine = get_engine()

    if create_schema:
        Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(
        bind=engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Database connection initialized", extra={"url": engine.url.render_as_string()})


def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, SessionLocal
    if _engine is not None:
        _engine.dispose()
        _engine = None
        SessionLocal = None
        logger.info("Database connection closed")


@contextmanager
def get_session_context() -> Generator[Session]:
    """
    Context manager for getting database sessions.
    Commits on clean exit, rolls back on error.

    Yields:
        Session: A database session.
    """
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    with SessionLocal() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise

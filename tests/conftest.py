"""
Pytest configuration and shared fixtures.
"""

from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from queuectl.config import Settings, get_settings
from queuectl.db import Job, close_db, get_session_context, init_db
from queuectl.scheduling import utcnow


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get a throwaway SQLite database URL."""
    return f"sqlite:///{tmp_path / 'queuectl-test.db'}"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path, database_url: str) -> Generator[Settings]:
    """Point every test at its own database and PID file."""
    monkeypatch.setenv("QUEUECTL_DATABASE_URL", database_url)
    monkeypatch.setenv("QUEUECTL_PID_FILE", str(tmp_path / "queuectl.pid"))
    monkeypatch.setenv("QUEUECTL_WORKER_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("QUEUECTL_SUPERVISOR_SHUTDOWN_GRACE_SECONDS", "0.5")
    monkeypatch.setenv("QUEUECTL_LOG_LEVEL", "WARNING")
    get_settings.cache_clear()

    yield get_settings()

    close_db()
    get_settings.cache_clear()


@pytest.fixture
def db(test_settings: Settings) -> Generator[None]:
    """Initialize the database schema and session factory."""
    init_db()
    yield
    close_db()


@pytest.fixture
def db_session(db) -> Generator[Session]:
    """Create a database session for tests."""
    with get_session_context() as session:
        yield session


@pytest.fixture
def make_due(db_session: Session):
    """Return a helper that makes a job eligible right now."""

    def _make_due(job_id: str) -> None:
        db_session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(next_run_at=utcnow() - timedelta(seconds=1))
        )
        db_session.commit()

    return _make_due

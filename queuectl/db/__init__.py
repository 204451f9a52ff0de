"""
Database module.
Contains database connection, models, and repository implementations.
"""

from queuectl.db.connection import (
    close_db,
    create_db_engine,
    get_engine,
    get_session_context,
    init_db,
)
from queuectl.db.models import Base, Configuration, Job
from queuectl.db.repository import AmbiguousJobId, ConfigRepository, JobRepository

__all__ = [
    "get_session_context",
    "get_engine",
    "create_db_engine",
    "init_db",
    "close_db",
    "Job",
    "Configuration",
    "Base",
    "JobRepository",
    "ConfigRepository",
    "AmbiguousJobId",
]

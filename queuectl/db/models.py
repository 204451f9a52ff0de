"""
SQLAlchemy database models.
Defines the Job and Configuration tables.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from queuectl.constants import DEFAULT_PRIORITY, JobState
from queuectl.scheduling import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _new_job_id() -> str:
    return str(uuid4())


class Job(Base):
    """
    Job model representing one shell command in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - a job is claimable only in PENDING/FAILED with next_run_at <= now
    - attempts only moves on a failed execution (or a DLQ retry reset)
    - COMPLETED is terminal, DEAD leaves only through an administrative retry
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=_new_job_id,
    )

    command: Mapped[str] = mapped_column(Text, nullable=False)

    # State and priority
    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobState.PENDING,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeout: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Scheduling
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    # Execution results
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Index for the claim query: eligible state, due time, priority band
        Index("ix_jobs_claim", "state", "next_run_at", "priority", "created_at"),
        Index("ix_jobs_priority_created", "priority", "created_at"),
    )

    @property
    def short_id(self) -> str:
        """First eight characters of the id, as shown in listings."""
        return self.id[:8]

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, state={self.state}, priority={self.priority}, "
            f"attempts={self.attempts}/{self.max_retries})"
        )


class Configuration(Base):
    """Runtime configuration stored as key/value pairs, upserted by key."""

    __tablename__ = "configuration"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return f"Configuration(key={self.key}, value={self.value})"

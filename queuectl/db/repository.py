"""
Job and configuration repositories for database operations.
Implements the core data access patterns for job management.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from queuectl.constants import (
    CLAIMABLE_STATES,
    DEFAULT_LIST_LIMIT,
    DEFAULT_PRIORITY,
    SLOWEST_JOBS_LIMIT,
    JobState,
)
from queuectl.db.models import Configuration, Job
from queuectl.scheduling import utcnow
from queuectl.types.job import DurationStats, QueueStats, RetryDecision, SlowJob

logger = logging.getLogger(__name__)


class AmbiguousJobId(ValueError):
    """Raised when an id prefix matches more than one job."""

    def __init__(self, prefix: str):
        super().__init__(f"Job id prefix '{prefix}' matches more than one job")
        self.prefix = prefix


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job creation
    - Claiming with a compare-and-swap on the observed state
    - State machine transitions (complete, fail, dead-letter, DLQ retry)
    - Listing and aggregate statistics
    """

    def __init__(self, session: Session):
        """
        Initialize the repository with a database session.

        Args:
            session: The database session.
        """
        self._session = session

    def create_job(
        self,
        command: str,
        priority: int = DEFAULT_PRIORITY,
        timeout: int | None = None,
        max_retries: int | None = None,
        next_run_at: datetime | None = None,
    ) -> Job:
        """
        Create a new pending job.

        Args:
            command: Shell command to execute.
            priority: Higher values are claimed first.
            timeout: Optional wall-clock limit in seconds.
            max_retries: Failed executions allowed before dead-lettering.
                None defers to the configured default at finalization time.
            next_run_at: First eligible time, defaults to now.

        Returns:
            The created Job.
        """
        now = utcnow()
        job = Job(
            command=command,
            state=JobState.PENDING,
            priority=priority,
            attempts=0,
            max_retries=max_retries,
            timeout=timeout,
            next_run_at=next_run_at or now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": job.id, "priority": priority, "next_run_at": job.next_run_at.isoformat()},
        )
        return job

    def get_job(self, job_id: str) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The full job id.

        Returns:
            The Job or None if not found.
        """
        return self._session.get(Job, job_id, populate_existing=True)

    def find_job(self, id_or_prefix: str, state: JobState | None = None) -> Job | None:
        """
        Look a job up by its full id, falling back to an id prefix.

        Args:
            id_or_prefix: Full id or leading characters of one.
            state: Optional state the job must be in.

        Returns:
            The Job or None if nothing matches.

        Raises:
            AmbiguousJobId: If the prefix matches several jobs.
        """
        job = self.get_job(id_or_prefix)
        if job is not None:
            return job if state is None or job.state == state else None

        stmt = select(Job).where(Job.id.startswith(id_or_prefix, autoescape=True))
        if state is not None:
            stmt = stmt.where(Job.state == state)
        matches = self._session.execute(stmt.limit(2)).scalars().all()

        if len(matches) > 1:
            raise AmbiguousJobId(id_or_prefix)
        return matches[0] if matches else None

    def list_jobs(
        self,
        state: JobState | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Job]:
        """
        List jobs, highest priority first, then most recent first.

        Args:
            state: Optional state filter.
            limit: Maximum number of jobs to return.

        Returns:
            The matching jobs.
        """
        stmt = select(Job)
        if state is not None:
            stmt = stmt.where(Job.state == state)
        stmt = stmt.order_by(Job.priority.desc(), Job.created_at.desc()).limit(limit)
        return self._session.execute(stmt).scalars().all()

    def claim_next_job(self) -> Job | None:
        """
        Claim the next eligible job for execution.

        This is the critical path for job distribution. The candidate is
        selected by priority (desc) then age (asc), and the transition to
        PROCESSING only succeeds if the row is still in the state observed at
        selection time. A lost race yields None, never an error.

        Returns:
            The claimed Job, or None if nothing was claimable this cycle.
        """
        now = utcnow()

        candidate = self._session.execute(
            select(Job.id, Job.state)
            .where(
                and_(
                    Job.state.in_(CLAIMABLE_STATES),
                    Job.next_run_at <= now,
                )
            )
            .order_by(Job.priority.desc(), Job.created_at.asc())
            .limit(1)
        ).first()

        if candidate is None:
            return None

        result = self._session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == candidate.id,
                    Job.state == candidate.state,
                )
            )
            .values(
                state=JobState.PROCESSING,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.debug(
                "Claim lost to another worker",
                extra={"job_id": candidate.id, "observed_state": candidate.state.value},
            )
            return None

        job = self.get_job(candidate.id)
        logger.info(
            "Claimed job",
            extra={"job_id": candidate.id, "previous_state": candidate.state.value},
        )
        return job

    def complete_job(self, job_id: str, output: str, duration_ms: int) -> Job | None:
        """
        Mark a processing job as successfully completed.

        Args:
            job_id: The job id.
            output: Captured command output.
            duration_ms: Execution time in milliseconds.

        Returns:
            Updated Job or None if the job was no longer processing.
        """
        now = utcnow()
        result = self._session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING,
                )
            )
            .values(
                state=JobState.COMPLETED,
                completed_at=now,
                updated_at=now,
                duration=duration_ms,
                output=output,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(
                "Job is no longer processing, completion dropped",
                extra={"job_id": job_id},
            )
            return None

        logger.info(
            "Job completed successfully",
            extra={"job_id": job_id, "duration_ms": duration_ms},
        )
        return self.get_job(job_id)

    def fail_job(
        self,
        job_id: str,
        decision: RetryDecision,
        output: str,
        duration_ms: int,
    ) -> Job | None:
        """
        Record a failed execution. Either schedule a retry or dead-letter.

        The update only applies while the job is processing and its attempts
        still match the count the decision was computed from.

        Args:
            job_id: The job id.
            decision: Outcome of the retry policy.
            output: Captured command output.
            duration_ms: Execution time in milliseconds.

        Returns:
            Updated Job or None if the transition no longer applies.
        """
        now = utcnow()
        values: dict = {
            "state": decision.state,
            "attempts": decision.attempts,
            "output": output,
            "duration": duration_ms,
            "updated_at": now,
        }

        if decision.is_dead:
            values["completed_at"] = now
        else:
            values["next_run_at"] = _retry_at(now, decision.delay_seconds)

        result = self._session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.PROCESSING,
                    Job.attempts == decision.attempts - 1,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(
                "Job is no longer processing, failure dropped",
                extra={"job_id": job_id},
            )
            return None

        if decision.is_dead:
            logger.warning(
                f"Job moved to DLQ after {decision.attempts} attempts",
                extra={"job_id": job_id},
            )
        else:
            logger.info(
                f"Job failed, retrying in {decision.delay_seconds}s",
                extra={"job_id": job_id, "attempts": decision.attempts},
            )
        return self.get_job(job_id)

    def retry_from_dlq(self, id_or_prefix: str) -> Job | None:
        """
        Move a dead job back to the pending queue.

        Resets attempts to 0 and makes the job eligible immediately.

        Args:
            id_or_prefix: Full job id or a prefix of one.

        Returns:
            Updated Job or None if no dead job matches.

        Raises:
            AmbiguousJobId: If the prefix matches several dead jobs.
        """
        job = self.find_job(id_or_prefix, state=JobState.DEAD)
        if job is None:
            return None

        now = utcnow()
        result = self._session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.state == JobState.DEAD,
                )
            )
            .values(
                state=JobState.PENDING,
                attempts=0,
                next_run_at=now,
                completed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            return None

        logger.info("Job retried from DLQ", extra={"job_id": job.id})
        return self.get_job(job.id)

    def get_state_counts(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, including zero counts.
        """
        counts = {state.value: 0 for state in JobState}
        stmt = select(Job.state, func.count()).group_by(Job.state)
        for state, count in self._session.execute(stmt).all():
            counts[state.value] = count
        return counts

    def get_stats(self) -> QueueStats:
        """
        Get aggregate queue statistics.

        Returns:
            QueueStats with state counts, execution time statistics, the
            slowest completed jobs and the priority distribution.
        """
        counts = self.get_state_counts()
        total = sum(counts.values())
        completed = counts[JobState.COMPLETED.value]

        completed_with_duration = and_(
            Job.state == JobState.COMPLETED,
            Job.duration.is_not(None),
        )
        durations = sorted(
            self._session.execute(
                select(Job.duration).where(completed_with_duration)
            ).scalars().all()
        )

        slowest = self._session.execute(
            select(Job)
            .where(completed_with_duration)
            .order_by(Job.duration.desc())
            .limit(SLOWEST_JOBS_LIMIT)
        ).scalars().all()

        priority_rows = self._session.execute(
            select(Job.priority, func.count())
            .group_by(Job.priority)
            .order_by(Job.priority.desc())
        ).all()

        jobs_with_timeout = self._session.execute(
            select(func.count()).select_from(Job).where(Job.timeout.is_not(None))
        ).scalar() or 0

        return QueueStats(
            total=total,
            state_counts=counts,
            success_rate=round(completed / total * 100, 2) if completed else None,
            durations=_duration_stats(durations),
            slowest_jobs=[
                SlowJob(
                    id=job.id,
                    command=job.command,
                    duration_ms=job.duration,
                    completed_at=job.completed_at,
                )
                for job in slowest
            ],
            priority_histogram={priority: count for priority, count in priority_rows},
            jobs_with_timeout=jobs_with_timeout,
        )


def _retry_at(now: datetime, delay_seconds: int) -> datetime:
    """Time of the next attempt, pinned to datetime.max when the delay runs off the calendar."""
    try:
        return now + timedelta(seconds=delay_seconds)
    except OverflowError:
        return datetime.max


def _duration_stats(durations: list[int]) -> DurationStats | None:
    """Summarize a sorted list of durations."""
    if not durations:
        return None

    count = len(durations)
    p95_index = min(count - 1, max(0, math.ceil(0.95 * count) - 1))
    return DurationStats(
        count=count,
        average_ms=round(sum(durations) / count, 2),
        median_ms=durations[count // 2],
        min_ms=durations[0],
        max_ms=durations[-1],
        p95_ms=durations[p95_index],
    )


class ConfigRepository:
    """Key/value configuration store backed by the configuration table."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, key: str, default: str) -> str:
        """Get a configuration value, or the default when unset."""
        row = self._session.get(Configuration, key, populate_existing=True)
        return row.value if row is not None else default

    def get_int(self, key: str, default: int) -> int:
        """Get an integer configuration value, or the default when unset or malformed."""
        value = self.get(key, str(default))
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Ignoring non-integer configuration value",
                extra={"key": key, "value": value, "default": default},
            )
            return default

    def set(self, key: str, value: str) -> None:
        """Insert or update a configuration value."""
        self._session.merge(Configuration(key=key, value=value, updated_at=utcnow()))
        self._session.flush()
        logger.info("Configuration updated", extra={"key": key, "value": value})

    def get_all(self) -> dict[str, str]:
        """Get all stored configuration values."""
        rows = self._session.execute(select(Configuration)).scalars().all()
        return {row.key: row.value for row in rows}

"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel

from queuectl.constants import JobState


class ExecutionResult(BaseModel):
    """
    Result of running a job's command.
    Returned by the command executor after the process exits or is killed.
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    exit_code: int | None = None

    @property
    def output(self) -> str:
        """Combined output in the format persisted on the job row."""
        return f"STDOUT:\n{self.stdout}\n\nSTDERR:\n{self.stderr}"


@dataclass(frozen=True)
class RetryDecision:
    """
    Outcome of the retry policy for one failed execution.

    delay_seconds is None when the job is dead-lettered.
    """

    state: JobState
    attempts: int
    delay_seconds: int | None = None

    @property
    def is_dead(self) -> bool:
        """Check if the job exhausted its retries."""
        return self.state == JobState.DEAD


class DurationStats(BaseModel):
    """Execution time statistics over completed jobs, in milliseconds."""

    count: int
    average_ms: float
    median_ms: int
    min_ms: int
    max_ms: int
    p95_ms: int


class SlowJob(BaseModel):
    """A completed job ranked by execution time."""

    id: str
    command: str
    duration_ms: int
    completed_at: datetime | None = None


class QueueStats(BaseModel):
    """
    Aggregate queue statistics.
    Used by the `status` and `stats` commands.
    """

    total: int
    state_counts: dict[str, int]
    success_rate: float | None = None
    durations: DurationStats | None = None
    slowest_jobs: list[SlowJob] = []
    priority_histogram: dict[int, int] = {}
    jobs_with_timeout: int = 0

"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by a worker)
    - FAILED -> PROCESSING (claimed again once backoff has elapsed)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> FAILED (failure, retries left)
    - PROCESSING -> DEAD (failure, retries exhausted)
    - DEAD -> PENDING (administrative DLQ retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# States a worker may claim from
CLAIMABLE_STATES: tuple[JobState, ...] = (JobState.PENDING, JobState.FAILED)

# Default values
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2
DEFAULT_PRIORITY = 0
DEFAULT_LIST_LIMIT = 50
SLOWEST_JOBS_LIMIT = 5

# Configuration store keys
CONFIG_MAX_RETRIES = "max_retries"
CONFIG_BACKOFF_BASE = "backoff_base"
CONFIG_KEYS: frozenset[str] = frozenset({CONFIG_MAX_RETRIES, CONFIG_BACKOFF_BASE})

# Relative run_at units, in seconds
RUN_AT_UNITS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

# Metrics names
METRIC_JOBS_CLAIMED = "queuectl_jobs_claimed_total"
METRIC_FINALIZE_CONFLICTS = "queuectl_finalize_conflicts_total"
METRIC_JOBS_FINALIZED = "queuectl_jobs_finalized_total"
METRIC_JOB_DURATION = "queuectl_job_duration_seconds"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_FINALIZE_JOB = "finalize_job"

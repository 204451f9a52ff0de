"""
Type definitions for queuectl.
Contains input/output type definitions shared between modules.
"""

from queuectl.types.job import (
    DurationStats,
    ExecutionResult,
    QueueStats,
    RetryDecision,
    SlowJob,
)

__all__ = [
    "ExecutionResult",
    "RetryDecision",
    "DurationStats",
    "SlowJob",
    "QueueStats",
]

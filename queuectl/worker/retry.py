"""
Retry policy for failed executions.

Exponential backoff with no cap and no jitter: after the n-th failure a job
waits backoff_base ** n seconds, unless n has reached max_retries, in which
case it is dead-lettered.
"""

from queuectl.constants import JobState
from queuectl.types.job import RetryDecision


def compute_retry(prior_attempts: int, max_retries: int, backoff_base: int) -> RetryDecision:
    """
    Decide what happens to a job after a failed execution.

    Args:
        prior_attempts: Failed executions recorded before this one.
        max_retries: Ceiling on attempts before dead-lettering.
        backoff_base: Base of the exponential delay.

    Returns:
        RetryDecision with the new state, attempt count and delay.
    """
    attempts = prior_attempts + 1

    if attempts >= max_retries:
        return RetryDecision(state=JobState.DEAD, attempts=attempts)

    return RetryDecision(
        state=JobState.FAILED,
        attempts=attempts,
        delay_seconds=backoff_base**attempts,
    )

"""
Unit tests for the retry policy.
"""

import pytest

from queuectl.constants import JobState
from queuectl.worker.retry import compute_retry


class TestComputeRetry:
    """Tests for compute_retry."""

    def test_three_failures_with_default_policy(self):
        """Test the failed, failed, dead progression for max_retries=3, base 2."""
        first = compute_retry(0, max_retries=3, backoff_base=2)
        assert first.state == JobState.FAILED
        assert first.attempts == 1
        assert first.delay_seconds == 2

        second = compute_retry(first.attempts, max_retries=3, backoff_base=2)
        assert second.state == JobState.FAILED
        assert second.attempts == 2
        assert second.delay_seconds == 4

        third = compute_retry(second.attempts, max_retries=3, backoff_base=2)
        assert third.state == JobState.DEAD
        assert third.attempts == 3
        assert third.delay_seconds is None
        assert third.is_dead

    def test_single_attempt_goes_straight_to_dlq(self):
        """Test max_retries=1 dead-letters on the first failure."""
        decision = compute_retry(0, max_retries=1, backoff_base=2)

        assert decision.is_dead
        assert decision.attempts == 1

    @pytest.mark.parametrize(
        ("prior_attempts", "base", "expected"),
        [
            (0, 3, 3),
            (1, 3, 9),
            (9, 2, 1024),
            (19, 2, 1048576),
        ],
    )
    def test_delay_is_uncapped_exponential(self, prior_attempts, base, expected):
        """Test delay is base ** attempts with no ceiling."""
        decision = compute_retry(prior_attempts, max_retries=100, backoff_base=base)

        assert decision.state == JobState.FAILED
        assert decision.delay_seconds == expected

    def test_base_one_gives_constant_delay(self):
        """Test a backoff base of 1 retries every second."""
        assert compute_retry(0, max_retries=5, backoff_base=1).delay_seconds == 1
        assert compute_retry(3, max_retries=5, backoff_base=1).delay_seconds == 1

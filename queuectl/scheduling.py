"""
Clock and run_at parsing helpers.

All timestamps are stored as naive UTC datetimes so that SQLite compares them
correctly as text.
"""

import re
from datetime import datetime, timedelta, timezone

from queuectl.constants import RUN_AT_UNITS

RELATIVE_RUN_AT_RE = re.compile(r"^\+(\d+)([smhd])$")

INVALID_RUN_AT_MESSAGE = "Invalid run_at format. Use +30s, +5m, +2h, +1d or ISO timestamp"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_run_at(value: str | None, now: datetime | None = None) -> datetime:
    """
    Resolve a run_at expression to the job's first eligible time.

    Accepts:
    - None or "" for an immediate run
    - a relative offset such as "+30s", "+5m", "+2h" or "+1d"
    - an ISO-8601 timestamp; aware values are converted to UTC, naive values
      are taken as UTC

    Args:
        value: The run_at expression.
        now: Reference time, defaults to the current time.

    Returns:
        Naive UTC datetime.

    Raises:
        ValueError: If the expression cannot be parsed.
    """
    now = now or utcnow()
    if not value:
        return now

    value = value.strip()
    if value.startswith("+"):
        match = RELATIVE_RUN_AT_RE.match(value)
        if match is None:
            raise ValueError(INVALID_RUN_AT_MESSAGE)
        amount, unit = match.groups()
        return now + timedelta(seconds=int(amount) * RUN_AT_UNITS[unit])

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(INVALID_RUN_AT_MESSAGE) from e

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

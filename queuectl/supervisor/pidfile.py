"""
PID file bookkeeping for the supervisor.

The PID file is the liveness marker used to refuse a second `worker start`
and to target `worker stop`. It lives outside the database on purpose: the
check must work before any database is reachable.
"""

import os
from pathlib import Path


def read_pid_file(path: str | Path) -> int | None:
    """
    Read the PID recorded in the marker.

    Returns:
        The PID, or None if the file is missing or unreadable.
    """
    try:
        return int(Path(path).read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def write_pid_file(path: str | Path, pid: int | None = None) -> None:
    """Record the given PID (default: this process) in the marker."""
    Path(path).write_text(str(pid if pid is not None else os.getpid()))


def remove_pid_file(path: str | Path) -> None:
    """Delete the marker if present."""
    Path(path).unlink(missing_ok=True)


def is_process_running(pid: int) -> bool:
    """Probe a process with signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else
        return True
    return True

"""
Supervisor module.
Contains the worker pool supervisor and its PID file bookkeeping.
"""

from queuectl.supervisor.main import StopResult, Supervisor, SupervisorAlreadyRunning
from queuectl.supervisor.pidfile import (
    is_process_running,
    read_pid_file,
    remove_pid_file,
    write_pid_file,
)

__all__ = [
    "Supervisor",
    "SupervisorAlreadyRunning",
    "StopResult",
    "read_pid_file",
    "write_pid_file",
    "remove_pid_file",
    "is_process_running",
]

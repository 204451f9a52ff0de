"""
Worker module.
Contains the worker loop, the command executor and the retry policy.
"""

from queuectl.worker.executor import execute_command
from queuectl.worker.main import Worker, run_worker
from queuectl.worker.retry import compute_retry

__all__ = ["Worker", "run_worker", "execute_command", "compute_retry"]

"""
Shell command execution for jobs.

Commands run through the shell in their own session, so a timeout can kill
the whole process group rather than just the shell.
"""

import logging
import os
import signal
import subprocess

from queuectl.types.job import ExecutionResult

logger = logging.getLogger(__name__)


def _kill_process_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def execute_command(command: str, timeout_seconds: int | None = None) -> ExecutionResult:
    """
    Run a shell command and capture its output.

    Args:
        command: The command line, interpreted by the shell.
        timeout_seconds: Wall-clock limit. None or 0 means no limit.

    Returns:
        ExecutionResult describing the outcome. Never raises for command
        failures; an unstartable command is reported as a failed result.
    """
    timeout = timeout_seconds or None

    try:
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        logger.exception("Failed to start command", extra={"command": command})
        return ExecutionResult(
            success=False,
            stderr=f"Command could not be started: {e}",
        )

    with process:
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_process_group(process)
            stdout, _ = process.communicate()
            logger.warning(
                "Command timed out",
                extra={"command": command, "timeout": timeout},
            )
            return ExecutionResult(
                success=False,
                stdout=stdout or "",
                stderr=f"Command timed out after {timeout} seconds",
                timed_out=True,
                exit_code=process.returncode,
            )

    if process.returncode != 0 and not stderr:
        stderr = f"Command failed with exit code {process.returncode}"

    return ExecutionResult(
        success=process.returncode == 0,
        stdout=stdout or "",
        stderr=stderr or "",
        exit_code=process.returncode,
    )

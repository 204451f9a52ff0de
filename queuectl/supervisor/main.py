"""
Supervisor for the multi-process worker pool.

The supervisor owns its worker processes explicitly: it spawns them, relays
shutdown signals to them and reaps them. Shutdown is bounded: workers get a
grace period to finish their current job, after which they are killed.
"""

import logging
import multiprocessing
import os
import signal
import time
from collections.abc import Callable
from enum import StrEnum
from multiprocessing.process import BaseProcess

from queuectl.config import get_settings
from queuectl.supervisor.pidfile import (
    is_process_running,
    read_pid_file,
    remove_pid_file,
    write_pid_file,
)
from queuectl.worker.main import run_worker

logger = logging.getLogger(__name__)

# How often the supervisor checks on its workers
SUPERVISE_INTERVAL_SECONDS = 0.1

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _worker_main(
    target: Callable[[int, str | None], None],
    index: int,
    database_url: str | None,
) -> None:
    """Child entry point: drop the supervisor's handlers inherited through fork."""
    for sig in SHUTDOWN_SIGNALS:
        signal.signal(sig, signal.SIG_DFL)
    target(index, database_url)


class StopResult(StrEnum):
    """Outcome of a stop request."""

    NOT_RUNNING = "not_running"
    STALE = "stale"
    SIGNALLED = "signalled"


class SupervisorAlreadyRunning(RuntimeError):
    """Raised when the PID file references a live supervisor."""

    def __init__(self, pid: int):
        super().__init__(f"Workers are already running (PID: {pid}). Use 'worker stop' first.")
        self.pid = pid


class Supervisor:
    """
    Starts and stops the worker pool.

    Lifecycle:
    1. Refuse to start if the PID file names a live process
    2. Record our PID and spawn one process per worker
    3. On SIGTERM/SIGINT remove the PID file, relay SIGTERM to every worker
       and arm the shutdown deadline
    4. Kill whatever is still alive once the deadline passes
    """

    def __init__(
        self,
        pid_file: str | None = None,
        shutdown_grace_seconds: float | None = None,
        database_url: str | None = None,
        worker_target: Callable[[int, str | None], None] = run_worker,
        start_method: str | None = None,
    ):
        """
        Initialize the supervisor.

        Args:
            pid_file: Liveness marker path. Defaults to settings.
            shutdown_grace_seconds: Time workers get to drain after a
                shutdown signal. Defaults to settings.
            database_url: Passed through to every worker.
            worker_target: Worker process entry point, called with
                (index, database_url).
            start_method: multiprocessing start method, platform default when
                None.
        """
        settings = get_settings()

        self.pid_file = pid_file or settings.pid_file
        self.shutdown_grace_seconds = (
            shutdown_grace_seconds
            if shutdown_grace_seconds is not None
            else settings.supervisor_shutdown_grace_seconds
        )
        self.database_url = database_url
        self._worker_target = worker_target
        self._start_method = start_method

        self._processes: list[BaseProcess] = []
        self._shutdown_deadline: float | None = None
        self._owner_pid: int | None = None

    @property
    def processes(self) -> list[BaseProcess]:
        return list(self._processes)

    def running_pid(self) -> int | None:
        """PID of the live supervisor named in the PID file, if any."""
        pid = read_pid_file(self.pid_file)
        if pid is not None and is_process_running(pid):
            return pid
        return None

    def start(self, count: int) -> None:
        """
        Start `count` workers and supervise them until they are all gone.

        Blocks until shutdown completes.

        Args:
            count: Number of worker processes.

        Raises:
            ValueError: If count is below 1.
            SupervisorAlreadyRunning: If another supervisor is alive.
            OSError: If the PID file cannot be written.
        """
        if count < 1:
            raise ValueError("Worker count must be at least 1")

        pid = self.running_pid()
        if pid is not None:
            raise SupervisorAlreadyRunning(pid)

        self._owner_pid = os.getpid()
        write_pid_file(self.pid_file, self._owner_pid)
        logger.info(
            f"Starting {count} workers",
            extra={"pid": os.getpid(), "pid_file": str(self.pid_file)},
        )

        # Must be in place before the first worker exists
        previous_handlers = {
            sig: signal.signal(sig, self._handle_shutdown)
            for sig in SHUTDOWN_SIGNALS
        }

        try:
            try:
                self._spawn(count)
            except BaseException:
                self.shutdown()
                self._supervise()
                raise
            self._supervise()
        finally:
            for sig, handler in previous_handlers.items():
                signal.signal(sig, handler)
            if read_pid_file(self.pid_file) == os.getpid():
                remove_pid_file(self.pid_file)

        logger.info("Supervisor stopped")

    def _spawn(self, count: int) -> None:
        """Start worker processes, stopping early if a shutdown began."""
        ctx = multiprocessing.get_context(self._start_method)
        for index in range(count):
            if self._shutdown_deadline is not None:
                logger.info("Shutdown requested, not spawning remaining workers")
                return

            process = ctx.Process(
                target=_worker_main,
                args=(self._worker_target, index, self.database_url),
                name=f"queuectl-worker-{index + 1}",
            )
            process.start()
            self._processes.append(process)
            logger.info("Spawned worker", extra={"worker_pid": process.pid, "index": index})

    def _handle_shutdown(self, signum: int, frame) -> None:
        if os.getpid() != self._owner_pid:
            # Forked worker that has not reset its handlers yet
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)
            return
        if self._shutdown_deadline is not None:
            return

        logger.info(
            "Shutting down all workers",
            extra={"signal": signal.Signals(signum).name},
        )
        self.shutdown()

    def shutdown(self) -> None:
        """
        Begin a bounded shutdown.

        Removes the PID file, relays SIGTERM to every live worker and arms
        the deadline after which stragglers are killed.
        """
        remove_pid_file(self.pid_file)
        for process in self._processes:
            if process.is_alive():
                process.terminate()
        self._shutdown_deadline = time.monotonic() + self.shutdown_grace_seconds

    def _supervise(self) -> None:
        """Wait for workers to exit, enforcing the shutdown deadline."""
        reported: set[int] = set()

        while True:
            alive = []
            for process in self._processes:
                if process.is_alive():
                    alive.append(process)
                elif process.pid not in reported:
                    reported.add(process.pid)
                    logger.info(
                        "Worker exited",
                        extra={"worker_pid": process.pid, "exitcode": process.exitcode},
                    )

            if not alive:
                return

            if self._shutdown_deadline is not None and time.monotonic() >= self._shutdown_deadline:
                for process in alive:
                    logger.warning(
                        "Worker still running after grace period, killing it",
                        extra={"worker_pid": process.pid},
                    )
                    process.kill()
                for process in alive:
                    process.join()
                return

            time.sleep(SUPERVISE_INTERVAL_SECONDS)

    def stop(self) -> StopResult:
        """
        Ask a running supervisor to shut down.

        Does not wait for the shutdown to complete.

        Returns:
            StopResult describing what was found and done.
        """
        pid = read_pid_file(self.pid_file)
        if pid is None:
            return StopResult.NOT_RUNNING

        if not is_process_running(pid):
            logger.info("Removing stale PID file", extra={"pid": pid})
            remove_pid_file(self.pid_file)
            return StopResult.STALE

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            remove_pid_file(self.pid_file)
            return StopResult.STALE

        logger.info("Sent stop signal to supervisor", extra={"pid": pid})
        return StopResult.SIGNALLED

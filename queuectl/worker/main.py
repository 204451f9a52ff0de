"""
Worker process for executing jobs.

The worker claims jobs from the queue one at a time, runs their commands and
advances them through the retry/backoff/dead-letter lifecycle.
"""

import logging
import os
import signal
import socket
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from queuectl.config import get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    CONFIG_MAX_RETRIES,
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_FINALIZE_JOB,
)
from queuectl.db import (
    ConfigRepository,
    Job,
    JobRepository,
    close_db,
    get_session_context,
    init_db,
)
from queuectl.observability.logging import bind_context, setup_logging
from queuectl.observability.metrics import get_metrics, setup_metrics
from queuectl.observability.tracing import get_tracer, setup_tracing
from queuectl.types.job import ExecutionResult, RetryDecision
from queuectl.worker.executor import execute_command
from queuectl.worker.retry import compute_retry

logger = logging.getLogger(__name__)

# Granularity of the idle sleep, so a shutdown request is noticed quickly
IDLE_SLICE_SECONDS = 0.1


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claiming through a conditional update on the observed state
    - One job at a time, no intra-process concurrency
    - Graceful shutdown on SIGTERM/SIGINT: the in-flight job always finishes
    - Retry with exponential backoff and dead-lettering
    """

    def __init__(
        self,
        worker_id: str | None = None,
        poll_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds to wait when the queue has nothing eligible.
        """
        settings = get_settings()

        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )

        self._shutdown_requested = False
        self._current_job_id: str | None = None
        self._metrics = get_metrics()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to a graceful stop."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum: int, frame) -> None:
        logger.info(
            "Shutdown signal received, finishing current job",
            extra={
                "worker_id": self.worker_id,
                "signal": signal.Signals(signum).name,
                "job_id": self._current_job_id,
            },
        )
        self.stop()

    def start(self) -> None:
        """Run the worker loop until a stop is requested."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "poll_interval": self.poll_interval},
        )

        while not self._shutdown_requested:
            try:
                processed = self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                processed = False

            if not processed and not self._shutdown_requested:
                self._idle_wait()

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """
        Request a graceful stop.

        The flag is only checked at the top of the loop, so an in-flight job
        is never interrupted.
        """
        self._shutdown_requested = True

    def run_once(self) -> bool:
        """
        Run one claim/execute/finalize cycle.

        Returns:
            True if a job was claimed and processed, False otherwise.
        """
        job = self._claim()
        if job is None:
            return False

        self._process(job)
        return True

    def _idle_wait(self) -> None:
        deadline = time.monotonic() + self.poll_interval
        while not self._shutdown_requested:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(IDLE_SLICE_SECONDS, remaining))

    def _claim(self) -> Job | None:
        """
        Claim the next eligible job.

        Store errors are logged and reported as "no job"; the next iteration
        tries again.
        """
        try:
            with get_tracer().start_as_current_span(SPAN_CLAIM_JOB):
                with get_session_context() as session:
                    job = JobRepository(session).claim_next_job()
        except SQLAlchemyError:
            logger.exception(
                "Error claiming job, will retry",
                extra={"worker_id": self.worker_id},
            )
            return None

        if job is not None:
            self._metrics.record_job_claimed(self.worker_id)
        return job

    def _process(self, job: Job) -> None:
        """
        Execute a claimed job and persist the outcome.

        Args:
            job: The claimed job, detached from its session.
        """
        self._current_job_id = job.id
        logger.info(
            "Processing job",
            extra={
                "job_id": job.id,
                "command": job.command,
                "priority": job.priority,
                "attempt": job.attempts + 1,
            },
        )

        start_time = time.monotonic()
        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("priority", job.priority)
                result = execute_command(job.command, job.timeout)
                span.set_attribute("success", result.success)

            duration_ms = int((time.monotonic() - start_time) * 1000)
            self._finalize(job, result, duration_ms)
        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": job.id, "worker_id": self.worker_id, "error": str(e)},
            )

            # Try to record the execution as failed
            try:
                self._finalize(
                    job,
                    ExecutionResult(success=False, stderr=f"Worker exception: {e}"),
                    int((time.monotonic() - start_time) * 1000),
                )
            except Exception:
                logger.exception(
                    "Failed to mark job as failed, job left in processing",
                    extra={"job_id": job.id, "worker_id": self.worker_id},
                )
        finally:
            self._current_job_id = None

    def _finalize(self, job: Job, result: ExecutionResult, duration_ms: int) -> None:
        """Apply the state machine transition for an execution outcome."""
        with get_tracer().start_as_current_span(SPAN_FINALIZE_JOB):
            with get_session_context() as session:
                repo = JobRepository(session)
                if result.success:
                    updated = repo.complete_job(job.id, result.output, duration_ms)
                else:
                    decision = self._retry_decision(session, job)
                    updated = repo.fail_job(job.id, decision, result.output, duration_ms)

        if updated is None:
            self._metrics.record_finalize_conflict(self.worker_id)
            return

        self._metrics.record_job_finalized(updated.state.value, duration_ms / 1000)

        if not result.success:
            logger.warning(
                "Job execution timed out" if result.timed_out else "Job execution failed",
                extra={
                    "job_id": job.id,
                    "state": updated.state.value,
                    "attempts": updated.attempts,
                    "exit_code": result.exit_code,
                    "duration_ms": duration_ms,
                },
            )

    def _retry_decision(self, session: Session, job: Job) -> RetryDecision:
        """
        Run the retry policy with the current configuration.

        Configuration is read on every failure so operators can tune it while
        jobs are in flight. The job's own max_retries wins over the default.
        """
        settings = get_settings()
        config = ConfigRepository(session)

        max_retries = job.max_retries
        if max_retries is None:
            max_retries = config.get_int(CONFIG_MAX_RETRIES, settings.default_max_retries)
        backoff_base = config.get_int(CONFIG_BACKOFF_BASE, settings.default_backoff_base)

        return compute_retry(job.attempts, max_retries, backoff_base)


def run_worker(index: int = 0, database_url: str | None = None) -> None:
    """
    Entry point of a worker process.

    Args:
        index: Position of this worker in the pool, used to offset the
            metrics port.
        database_url: Database to work against. Defaults to settings.
    """
    settings = get_settings()

    setup_logging()
    setup_tracing(enable_console_export=settings.otel_console_export)
    init_db(database_url or settings.database_url, create_schema=False)
    if settings.metrics_port is not None:
        setup_metrics(settings.metrics_port + index)

    worker = Worker()
    bind_context(worker_id=worker.worker_id)
    worker.install_signal_handlers()

    try:
        worker.start()
    finally:
        close_db()

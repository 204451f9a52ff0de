"""CLI interface for queuectl."""

import os
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from datetime import datetime

import click

from queuectl import __version__
from queuectl.config import get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    CONFIG_KEYS,
    CONFIG_MAX_RETRIES,
    DEFAULT_LIST_LIMIT,
    JobState,
)
from queuectl.db import (
    AmbiguousJobId,
    ConfigRepository,
    Job,
    JobRepository,
    close_db,
    get_session_context,
    init_db,
)
from queuectl.observability.logging import setup_logging
from queuectl.scheduling import parse_run_at, utcnow
from queuectl.supervisor import StopResult, Supervisor, SupervisorAlreadyRunning

STATE_CHOICES = [state.value for state in JobState] + ["all"]


@contextmanager
def _repositories() -> Generator[tuple[JobRepository, ConfigRepository]]:
    """Open the database for the duration of one command."""
    init_db()
    try:
        with get_session_context() as session:
            yield JobRepository(session), ConfigRepository(session)
    finally:
        close_db()


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _print_jobs(jobs: Sequence[Job]) -> None:
    click.echo(
        f"{'ID':<10} {'STATE':<11} {'PRIO':>5} {'ATTEMPTS':>9} {'DURATION':>10}  "
        f"{'NEXT RUN':<20} COMMAND"
    )
    click.echo("-" * 100)
    for job in jobs:
        duration = f"{job.duration}ms" if job.duration is not None else "-"
        click.echo(
            f"{job.short_id:<10} {job.state.value:<11} {job.priority:>5} {job.attempts:>9} "
            f"{duration:>10}  {_format_time(job.next_run_at):<20} {job.command[:40]}"
        )


@click.group()
@click.version_option(version=__version__, prog_name="queuectl")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    help="Log level for administrative commands.",
)
def cli(log_level: str) -> None:
    """queuectl - persistent multi-process background job queue."""
    setup_logging(log_level=log_level)


@cli.command()
@click.argument("command")
@click.option("-p", "--priority", type=int, default=0, show_default=True, help="Job priority (higher runs first).")
@click.option("-t", "--timeout", type=click.IntRange(min=1), default=None, help="Job timeout in seconds.")
@click.option("-r", "--run-at", default=None, help="Schedule the job: +30s, +5m, +2h, +1d or an ISO timestamp.")
def enqueue(command: str, priority: int, timeout: int | None, run_at: str | None) -> None:
    """Add a new job to the queue.

    Example:
        queuectl enqueue "echo hello" --priority 10 --run-at +5m
    """
    try:
        next_run_at = parse_run_at(run_at)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="'--run-at'") from e

    settings = get_settings()
    with _repositories() as (jobs, config):
        max_retries = config.get_int(CONFIG_MAX_RETRIES, settings.default_max_retries)
        job = jobs.create_job(
            command=command,
            priority=priority,
            timeout=timeout,
            max_retries=max_retries,
            next_run_at=next_run_at,
        )

    details = ""
    if priority != 0:
        details += f" [priority: {priority}]"
    if timeout:
        details += f" [timeout: {timeout}s]"
    if next_run_at > utcnow():
        details += f" (scheduled for {next_run_at.isoformat()}Z)"
    click.echo(f"Enqueued job {job.id}: {command}{details}")


@cli.group()
def worker() -> None:
    """Manage worker processes."""


@worker.command("start")
@click.option("-c", "--count", type=click.IntRange(min=1), default=1, show_default=True, help="Number of workers.")
def worker_start(count: int) -> None:
    """Start a pool of workers and supervise it until stopped.

    Example:
        queuectl worker start --count 3
    """
    settings = get_settings()
    setup_logging()

    # Create the schema once, before the workers fork
    init_db()
    close_db()

    supervisor = Supervisor(database_url=settings.database_url)
    click.echo(f"Starting {count} worker(s) (supervisor PID: {os.getpid()}). Press Ctrl+C to stop.")
    try:
        supervisor.start(count)
    except SupervisorAlreadyRunning as e:
        raise click.ClickException(str(e)) from e
    click.echo("Workers stopped.")


@worker.command("stop")
def worker_stop() -> None:
    """Signal the running supervisor to stop its workers."""
    supervisor = Supervisor()
    pid = supervisor.running_pid()
    result = supervisor.stop()

    if result == StopResult.NOT_RUNNING:
        raise click.ClickException("Workers are not running.")
    if result == StopResult.STALE:
        click.echo("Stale PID file found. Cleaned up.")
        return
    click.echo(f"Sent stop signal to supervisor (PID: {pid}).")


@cli.command()
def status() -> None:
    """Show job counts per state and whether workers are running."""
    with _repositories() as (jobs, _):
        counts = jobs.get_state_counts()

    click.echo("--- Job Queue Status ---")
    for state, count in counts.items():
        click.echo(f"  {state:<12} {count}")
    click.echo(f"  {'total':<12} {sum(counts.values())}")

    pid = Supervisor().running_pid()
    if pid is not None:
        click.echo(f"\nWorkers are RUNNING (supervisor PID: {pid})")
    else:
        click.echo("\nWorkers are STOPPED")


@cli.command()
def stats() -> None:
    """Show execution statistics and metrics."""
    with _repositories() as (jobs, _):
        queue_stats = jobs.get_stats()

    click.echo("--- Queue Statistics ---")
    click.echo(f"Total Jobs: {queue_stats.total}")
    for state in (JobState.COMPLETED, JobState.FAILED, JobState.DEAD):
        click.echo(f"{state.value.capitalize()}: {queue_stats.state_counts[state.value]}")
    if queue_stats.success_rate is not None:
        click.echo(f"Success Rate: {queue_stats.success_rate:.2f}%")

    durations = queue_stats.durations
    if durations is not None:
        click.echo("\n--- Execution Time Statistics ---")
        click.echo(f"Average: {durations.average_ms:.2f}ms")
        click.echo(f"Median: {durations.median_ms}ms")
        click.echo(f"P95: {durations.p95_ms}ms")
        click.echo(f"Min: {durations.min_ms}ms")
        click.echo(f"Max: {durations.max_ms}ms")

    if queue_stats.slowest_jobs:
        click.echo(f"\n--- Top {len(queue_stats.slowest_jobs)} Slowest Jobs ---")
        for slow in queue_stats.slowest_jobs:
            click.echo(f"{slow.id[:8]}: {slow.command[:40]} - {slow.duration_ms}ms")

    if any(priority != 0 for priority in queue_stats.priority_histogram):
        click.echo("\n--- Priority Distribution ---")
        for priority, count in queue_stats.priority_histogram.items():
            click.echo(f"Priority {priority}: {count} jobs")

    if queue_stats.jobs_with_timeout:
        click.echo(f"\nJobs with timeout configured: {queue_stats.jobs_with_timeout}")


@cli.command("list")
@click.option("-s", "--state", type=click.Choice(STATE_CHOICES), default="all", show_default=True, help="Filter by state.")
def list_jobs(state: str) -> None:
    """List the most recent jobs, highest priority first."""
    state_filter = None if state == "all" else JobState(state)
    with _repositories() as (jobs, _):
        rows = jobs.list_jobs(state=state_filter, limit=DEFAULT_LIST_LIMIT)

    if not rows:
        click.echo("No jobs found.")
        return

    click.echo(f"--- Showing jobs (state: {state}) ---")
    _print_jobs(rows)


@cli.command()
@click.argument("job_id")
def output(job_id: str) -> None:
    """Show details and captured output of a job (id prefixes allowed)."""
    with _repositories() as (jobs, _):
        try:
            job = jobs.find_job(job_id)
        except AmbiguousJobId as e:
            raise click.ClickException(str(e)) from e

    if job is None:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"--- Job {job.id} ---")
    click.echo(f"Command: {job.command}")
    click.echo(f"State: {job.state.value}")
    click.echo(f"Priority: {job.priority}")
    click.echo(f"Attempts: {job.attempts}/{job.max_retries if job.max_retries is not None else '-'}")
    if job.timeout:
        click.echo(f"Timeout: {job.timeout}s")
    click.echo(f"Created: {_format_time(job.created_at)}")
    click.echo(f"Next run: {_format_time(job.next_run_at)}")
    if job.started_at:
        click.echo(f"Started: {_format_time(job.started_at)}")
    if job.completed_at:
        click.echo(f"Completed: {_format_time(job.completed_at)}")
    if job.duration is not None:
        click.echo(f"Duration: {job.duration}ms")

    if job.output:
        click.echo("\n--- Output ---")
        click.echo(job.output)
    else:
        click.echo("\nNo output available yet.")


@cli.group()
def dlq() -> None:
    """Manage the Dead Letter Queue."""


@dlq.command("list")
def dlq_list() -> None:
    """List jobs in the Dead Letter Queue."""
    with _repositories() as (jobs, _):
        rows = jobs.list_jobs(state=JobState.DEAD, limit=DEFAULT_LIST_LIMIT)

    if not rows:
        click.echo("Dead Letter Queue is empty.")
        return

    _print_jobs(rows)


@dlq.command("retry")
@click.argument("job_id")
def dlq_retry(job_id: str) -> None:
    """Move a dead job back to the pending queue (id prefixes allowed)."""
    with _repositories() as (jobs, _):
        try:
            job = jobs.retry_from_dlq(job_id)
        except AmbiguousJobId as e:
            raise click.ClickException(str(e)) from e

    if job is None:
        raise click.ClickException(f"Job {job_id} not found in DLQ.")
    click.echo(f"Job {job.short_id} moved from DLQ to 'pending' queue.")


@cli.group()
def config() -> None:
    """Manage runtime configuration."""


@config.command("set")
@click.argument("key", type=click.Choice(sorted(CONFIG_KEYS)))
@click.argument("value", type=click.IntRange(min=0))
def config_set(key: str, value: int) -> None:
    """Set a configuration value (max_retries, backoff_base).

    Example:
        queuectl config set max_retries 5
    """
    if key == CONFIG_MAX_RETRIES and value < 1:
        raise click.BadParameter("max_retries must be at least 1", param_hint="'VALUE'")

    with _repositories() as (_, store):
        store.set(key, str(value))
    click.echo(f"Config updated: {key} = {value}")


@config.command("get")
def config_get() -> None:
    """Show the effective configuration."""
    settings = get_settings()
    defaults = {
        CONFIG_MAX_RETRIES: settings.default_max_retries,
        CONFIG_BACKOFF_BASE: settings.default_backoff_base,
    }
    with _repositories() as (_, store):
        stored = store.get_all()
        values = {key: store.get_int(key, default) for key, default in defaults.items()}

    for key, value in values.items():
        suffix = "" if key in stored else " (default)"
        click.echo(f"{key} = {value}{suffix}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

"""
Prometheus metrics collection.

Each worker is its own process, so each keeps its own registry and can
expose it on its own port.
"""

import logging

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)

from queuectl.constants import (
    METRIC_FINALIZE_CONFLICTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_FINALIZED,
)

logger = logging.getLogger(__name__)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Claims and dropped finalizations
    - Finalized jobs by resulting state
    - Job execution duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["worker_id"],
            registry=self._registry,
        )

        self.finalize_conflicts = Counter(
            METRIC_FINALIZE_CONFLICTS,
            "Finalizations dropped because the job was no longer processing",
            ["worker_id"],
            registry=self._registry,
        )

        self.jobs_finalized = Counter(
            METRIC_JOBS_FINALIZED,
            "Total number of executions finalized, by resulting state",
            ["state"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["state"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

    def record_job_claimed(self, worker_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_finalize_conflict(self, worker_id: str) -> None:
        """Record a finalization dropped because the row had moved on."""
        self.finalize_conflicts.labels(worker_id=worker_id).inc()

    def record_job_finalized(self, state: str, duration_seconds: float) -> None:
        """Record a finalized execution."""
        self.jobs_finalized.labels(state=state).inc()
        self.job_duration.labels(state=state).observe(duration_seconds)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, serve the registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port, registry=_metrics._registry)
        logger.info("Metrics exporter listening", extra={"port": port})
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics

"""
Prometheus metrics collection.
"""

import logging

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from mailqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_RECLAIMED,
    METRIC_QUEUE_DEPTH,
    METRIC_SCHEDULER_TICKS,
)

logger = logging.getLogger(__name__)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the mail queue.

    Collects metrics for:
    - Queue depth
    - Job enqueues and outcomes
    - Job execution duration
    - Lease acquisition and reclamation
    - Scheduler ticks
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs in the queue",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["kind"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job attempts by outcome",
            ["kind", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["kind", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of expired leases returned to the queue",
            registry=self._registry,
        )

        self.scheduler_ticks = Counter(
            METRIC_SCHEDULER_TICKS,
            "Total number of scheduler ticks by result",
            ["scheduler", "result"],
            registry=self._registry,
        )

    def record_job_enqueued(self, kind: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(kind=kind).inc()

    def record_job_outcome(
        self,
        kind: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of a job attempt."""
        self.jobs_completed.labels(kind=kind, outcome=outcome).inc()
        self.job_duration.labels(kind=kind, outcome=outcome).observe(duration_seconds)

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def record_lease_reclaimed(self, count: int = 1) -> None:
        """Record reclaimed leases."""
        self.lease_reclaimed.inc(count)

    def record_scheduler_tick(self, scheduler: str, result: str) -> None:
        """Record a scheduler tick."""
        self.scheduler_ticks.labels(scheduler=scheduler, result=result).inc()

    def update_queue_depth(self, depth: int) -> None:
        """Update queue depth."""
        self.queue_depth.set(depth)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, serve the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()

    if port is not None:
        start_http_server(port)
        logger.info(f"Serving Prometheus metrics on port {port}")

    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics

"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from taskflow.constants import (
    METRIC_IDEMPOTENCY_CHECKS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_PROCESSED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_TASKS_ENQUEUED,
)
from taskflow.types.task import QueueStats

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for task execution.

    Collects metrics for:
    - Tasks processed and their duration
    - Tasks enqueued
    - Idempotency guard outcomes
    - Queue depth
    - Expired leases
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Tasks processed counter
        self.jobs_processed = Counter(
            METRIC_JOBS_PROCESSED,
            "Total number of task executions",
            ["task_type", "queue", "status"],
            registry=self._registry,
        )

        # Task duration histogram
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Task execution duration in seconds",
            ["task_type", "queue"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        # Tasks enqueued counter
        self.tasks_enqueued = Counter(
            METRIC_TASKS_ENQUEUED,
            "Total number of tasks accepted by the broker",
            ["task_type", "queue"],
            registry=self._registry,
        )

        # Idempotency outcomes counter
        self.idempotency_checks = Counter(
            METRIC_IDEMPOTENCY_CHECKS,
            "Idempotency guard outcomes",
            ["outcome"],
            registry=self._registry,
        )

        # Queue depth gauge
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of tasks per queue and state",
            ["queue", "state"],
            registry=self._registry,
        )

        # Lease expired counter
        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases returned to the queue",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_processed(
        self,
        task_type: str,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished task execution."""
        self.jobs_processed.labels(task_type=task_type, queue=queue, status=status).inc()
        self.job_duration.labels(task_type=task_type, queue=queue).observe(duration_seconds)

    def record_task_enqueued(self, task_type: str, queue: str) -> None:
        """Record a task accepted by the broker."""
        self.tasks_enqueued.labels(task_type=task_type, queue=queue).inc()

    def record_idempotency_check(self, outcome: str) -> None:
        """Record an idempotency guard outcome."""
        self.idempotency_checks.labels(outcome=outcome).inc()

    def record_lease_expired(self, count: int = 1) -> None:
        """Record leases recovered by the reaper."""
        self.lease_expired.inc(count)

    def update_queue_depth(self, stats: QueueStats) -> None:
        """Update queue depth gauges from a stats snapshot."""
        for state in ("pending", "active", "retry", "archived", "completed"):
            self.queue_depth.labels(queue=stats.queue, state=state).set(getattr(stats, state))


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
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


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP for scraping."""
    start_http_server(port)

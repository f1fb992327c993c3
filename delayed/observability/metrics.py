"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from delayed.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_CONTENDED,
    METRIC_ORPHANS_RECOVERED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Enqueued jobs and queue depth
    - Job completions by outcome and execution duration
    - Lease acquisitions and contention
    - Orphaned leases recovered by the reaper
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
            "Number of jobs in the queue by state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions by outcome",
            ["status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_name"],
            registry=self._registry,
        )

        self.lease_contended = Counter(
            METRIC_LEASE_CONTENDED,
            "Total number of lease attempts lost to another worker",
            ["worker_name"],
            registry=self._registry,
        )

        self.orphans_recovered = Counter(
            METRIC_ORPHANS_RECOVERED,
            "Total number of leases of dead workers cleaned up",
            registry=self._registry,
        )

    def record_job_enqueued(self) -> None:
        self.jobs_enqueued.inc()

    def record_job_completed(self, status: str, duration_seconds: float) -> None:
        """Record the outcome of one execution."""
        self.jobs_completed.labels(status=status).inc()
        self.job_duration.labels(status=status).observe(duration_seconds)

    def record_lease_acquired(self, worker_name: str) -> None:
        self.lease_acquired.labels(worker_name=worker_name).inc()

    def record_lease_contended(self, worker_name: str) -> None:
        self.lease_contended.labels(worker_name=worker_name).inc()

    def record_orphans_recovered(self, count: int) -> None:
        self.orphans_recovered.inc(count)

    def update_queue_depth(self, stats: dict[str, int]) -> None:
        """Update queue depth gauges from repository stats."""
        for state, count in stats.items():
            self.queue_depth.labels(state=state).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


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

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

from jobrunner.constants import (
    METRIC_ACTIVE_LEASES,
    METRIC_DEAD_LETTERED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_SUBMITTED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_RECLAIMED,
    METRIC_QUEUE_DEPTH,
    JobState,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job runner.

    Collects metrics for:
    - Queue depth per state, active leases, dead-letter count
    - Job submissions and outcomes
    - Job execution duration
    - Lease acquisition and reclaim
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
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

        self.active_leases = Gauge(
            METRIC_ACTIVE_LEASES,
            "Number of jobs currently holding a lease",
            registry=self._registry,
        )

        self.dead_lettered = Gauge(
            METRIC_DEAD_LETTERED,
            "Number of dead-lettered jobs",
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["job_type"],
            registry=self._registry,
        )

        # outcome: completed, retrying, dead_lettered, conflict
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job executions by outcome",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of expired leases reclaimed",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            registry=self._registry,
        )

    def record_job_submitted(self, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(job_type=job_type).inc()

    def record_job_finished(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one execution."""
        self.jobs_finished.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_reclaimed(self, count: int = 1) -> None:
        """Record reclaimed leases."""
        self.lease_reclaimed.inc(count)

    def record_lease_acquired(self, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.inc(count)

    def update_queue_stats(self, depth_by_state: dict[str, int], active_leases: int) -> None:
        """Refresh the depth, lease and dead-letter gauges."""
        for state in JobState:
            self.queue_depth.labels(state=state.value).set(depth_by_state.get(state.value, 0))
        self.active_leases.set(active_leases)
        self.dead_lettered.set(depth_by_state.get(JobState.DEAD_LETTERED.value, 0))

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

"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from amqp_jobs.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_ACKED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_FAILED,
    METRIC_JOBS_POPPED,
    METRIC_JOBS_PUSHED,
    METRIC_JOBS_RELEASED,
    METRIC_MALFORMED_PAYLOADS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue driver.

    Collects metrics for:
    - Jobs pushed (immediate and delayed) and popped
    - Acks, releases and jobs parked as failed
    - Malformed payloads
    - Job execution outcome and duration in the worker
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_pushed = Counter(
            METRIC_JOBS_PUSHED,
            "Total number of jobs published",
            ["queue", "delayed"],
            registry=self._registry,
        )

        self.jobs_popped = Counter(
            METRIC_JOBS_POPPED,
            "Total number of jobs fetched from a queue",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_acked = Counter(
            METRIC_JOBS_ACKED,
            "Total number of jobs deleted after processing",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_released = Counter(
            METRIC_JOBS_RELEASED,
            "Total number of jobs released back onto their queue",
            ["queue", "delayed"],
            registry=self._registry,
        )

        self.jobs_failed = Counter(
            METRIC_JOBS_FAILED,
            "Total number of jobs parked on the failed queue",
            ["queue"],
            registry=self._registry,
        )

        self.malformed_payloads = Counter(
            METRIC_MALFORMED_PAYLOADS,
            "Total number of message bodies that were not valid job envelopes",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs processed by workers",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

    def record_job_pushed(self, queue: str, delayed: bool = False) -> None:
        """Record a published job."""
        self.jobs_pushed.labels(queue=queue, delayed=str(delayed).lower()).inc()

    def record_job_popped(self, queue: str) -> None:
        self.jobs_popped.labels(queue=queue).inc()

    def record_job_acked(self, queue: str) -> None:
        self.jobs_acked.labels(queue=queue).inc()

    def record_job_released(self, queue: str, delayed: bool = False) -> None:
        self.jobs_released.labels(queue=queue, delayed=str(delayed).lower()).inc()

    def record_job_failed(self, queue: str) -> None:
        self.jobs_failed.labels(queue=queue).inc()

    def record_malformed_payload(self, queue: str) -> None:
        self.malformed_payloads.labels(queue=queue).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a processed job."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

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

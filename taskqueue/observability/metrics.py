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

from taskqueue.constants import (
    METRIC_API_REQUESTS,
    METRIC_CACHE_LOOKUPS,
    METRIC_DEAD_LETTERS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASES_RECLAIMED,
    METRIC_QUEUE_DEPTH,
    METRIC_TICK_DURATION,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task queue.

    Collects metrics for:
    - Queue depth by status
    - Enqueues, claims and job outcomes by job type
    - Dead letters and reclaimed leases
    - Processor and tick durations
    - Cache hits and misses by namespace
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
            "Number of jobs per status",
            ["status"],
            registry=self._registry,
        )
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )
        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by ticks",
            ["job_type"],
            registry=self._registry,
        )
        # outcome: completed, retried, failed
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts finished",
            ["job_type", "outcome"],
            registry=self._registry,
        )
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Processor execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 50.0),
            registry=self._registry,
        )
        self.dead_letters = Counter(
            METRIC_DEAD_LETTERS,
            "Total number of jobs moved to the dead letter queue",
            ["job_type"],
            registry=self._registry,
        )
        self.leases_reclaimed = Counter(
            METRIC_LEASES_RECLAIMED,
            "Total number of abandoned jobs reclaimed after lease expiry",
            registry=self._registry,
        )
        self.tick_duration = Histogram(
            METRIC_TICK_DURATION,
            "Processing tick wall-clock duration in seconds",
            buckets=(0.5, 1.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0),
            registry=self._registry,
        )
        # result: hit, miss
        self.cache_lookups = Counter(
            METRIC_CACHE_LOOKUPS,
            "Total number of cache lookups",
            ["namespace", "result"],
            registry=self._registry,
        )
        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["endpoint", "status"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str, count: int = 1) -> None:
        """Record job submissions."""
        self.jobs_enqueued.labels(job_type=job_type).inc(count)

    def record_job_claimed(self, job_type: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(job_type=job_type).inc()

    def record_job_finished(self, job_type: str, outcome: str) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(job_type=job_type, outcome=outcome).inc()

    def record_job_duration(self, job_type: str, outcome: str, duration_seconds: float) -> None:
        """Record how long a processor ran."""
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(duration_seconds)

    def record_dead_letter(self, job_type: str) -> None:
        """Record a job escalated to the dead letter queue."""
        self.dead_letters.labels(job_type=job_type).inc()

    def record_leases_reclaimed(self, count: int) -> None:
        """Record reclaimed abandoned jobs."""
        self.leases_reclaimed.inc(count)

    def record_tick(self, duration_seconds: float) -> None:
        """Record one processing tick."""
        self.tick_duration.observe(duration_seconds)

    def record_cache_lookup(self, namespace: str, hit: bool) -> None:
        """Record a cache hit or miss."""
        self.cache_lookups.labels(
            namespace=namespace,
            result="hit" if hit else "miss",
        ).inc()

    def update_queue_depth(self, status: str, depth: int) -> None:
        """Update the job count for a status."""
        self.queue_depth.labels(status=status).set(depth)

    def record_api_request(self, endpoint: str, status: int) -> None:
        """Record an API request."""
        self.api_requests.labels(endpoint=endpoint, status=str(status)).inc()

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

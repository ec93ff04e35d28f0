import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.settlements = None
            self.stripe_webhook_events = None
            self.webhook_errors = None
            self.jobs = None
            self.job_claims = None
            self.booking_sweeps = None
            self.job_heartbeat = None
            self.http_latency = None
            return

        self.settlements = Counter(
            "settlements_total",
            "Booking settlement attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.stripe_webhook_events = Counter(
            "stripe_webhook_events_total",
            "Stripe webhook outcomes by result.",
            ["outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook errors by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.jobs = Counter(
            "jobs_total",
            "Queued job outcomes by task and status.",
            ["task", "status"],
            registry=self.registry,
        )
        self.job_claims = Counter(
            "job_claims_total",
            "Jobs claimed by this worker.",
            registry=self.registry,
        )
        self.booking_sweeps = Counter(
            "booking_sweeps_total",
            "Booking auto-completion sweep results.",
            ["outcome"],
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )

    def record_settlement(self, outcome: str) -> None:
        if not self.enabled or self.settlements is None:
            return
        self.settlements.labels(outcome=outcome or "unknown").inc()

    def record_stripe_webhook(self, outcome: str) -> None:
        if not self.enabled or self.stripe_webhook_events is None:
            return
        safe_outcome = outcome or "unknown"
        self.stripe_webhook_events.labels(outcome=safe_outcome).inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        safe_type = error_type or "unknown"
        self.webhook_errors.labels(type=safe_type).inc()

    def record_job(self, task: str, status: str) -> None:
        if not self.enabled or self.jobs is None:
            return
        self.jobs.labels(task=task or "unknown", status=status).inc()

    def record_job_claims(self, count: int) -> None:
        if not self.enabled or self.job_claims is None:
            return
        if count <= 0:
            return
        self.job_claims.inc(count)

    def record_booking_sweep(self, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.booking_sweeps is None:
            return
        if count <= 0:
            return
        self.booking_sweeps.labels(outcome=outcome).inc(count)

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics

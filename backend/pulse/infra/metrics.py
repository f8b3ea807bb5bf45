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
            self.jobs_processed = None
            self.job_duration = None
            self.queue_depth = None
            self.jobs_enqueued = None
            self.webhook_deliveries = None
            self.subscription_transitions = None
            self.scores_computed = None
            self.anomalies_detected = None
            self.notifications_suppressed = None
            self.side_effect_errors = None
            self.batch_item_errors = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_runner_up = None
            self.job_errors = None
            return

        self.jobs_processed = Counter(
            "jobs_processed_total",
            "Queued jobs processed by lane and outcome.",
            ["lane", "outcome"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "job_duration_seconds",
            "Queued job handler duration per lane.",
            ["lane"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "job_queue_depth",
            "Queued jobs by lane and status.",
            ["lane", "status"],
            registry=self.registry,
        )
        self.jobs_enqueued = Counter(
            "jobs_enqueued_total",
            "Jobs enqueued per lane, split by whether the job key was already present.",
            ["lane", "result"],
            registry=self.registry,
        )
        self.webhook_deliveries = Counter(
            "webhook_deliveries_total",
            "Webhook delivery attempts by event and outcome.",
            ["event", "outcome"],
            registry=self.registry,
        )
        self.subscription_transitions = Counter(
            "webhook_subscription_transitions_total",
            "Webhook subscription health transitions by target state.",
            ["state"],
            registry=self.registry,
        )
        self.scores_computed = Counter(
            "account_scores_computed_total",
            "Account scores computed by resulting tier.",
            ["tier"],
            registry=self.registry,
        )
        self.anomalies_detected = Counter(
            "signal_anomalies_detected_total",
            "Signal anomalies detected by type and severity.",
            ["type", "severity"],
            registry=self.registry,
        )
        self.notifications_suppressed = Counter(
            "notifications_suppressed_total",
            "Notifications suppressed by cooldown or dedupe.",
            ["reason"],
            registry=self.registry,
        )
        self.side_effect_errors = Counter(
            "side_effect_errors_total",
            "Side effects that failed to enqueue.",
            ["effect"],
            registry=self.registry,
        )
        self.batch_item_errors = Counter(
            "batch_item_errors_total",
            "Per-item failures skipped inside a batch or fan-out.",
            ["operation"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency by method, route and status class.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_heartbeat_timestamp",
            "Unix timestamp of the latest worker heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp of the latest successful run.",
            ["job"],
            registry=self.registry,
        )
        self.job_runner_up = Gauge(
            "job_runner_up",
            "Worker liveness indicator.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Worker loop errors by reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_job(self, lane: str, outcome: str, duration_seconds: float | None = None) -> None:
        if not self.enabled or self.jobs_processed is None:
            return
        self.jobs_processed.labels(lane=lane, outcome=outcome).inc()
        if duration_seconds is not None and self.job_duration is not None:
            self.job_duration.labels(lane=lane).observe(max(0.0, float(duration_seconds)))

    def record_enqueue(self, lane: str, result: str) -> None:
        if not self.enabled or self.jobs_enqueued is None:
            return
        self.jobs_enqueued.labels(lane=lane, result=result).inc()

    def set_queue_depth(self, lane: str, status: str, count: int) -> None:
        if not self.enabled or self.queue_depth is None:
            return
        self.queue_depth.labels(lane=lane, status=status or "unknown").set(max(0, count))

    def record_webhook_delivery(self, event: str, outcome: str) -> None:
        if not self.enabled or self.webhook_deliveries is None:
            return
        self.webhook_deliveries.labels(event=event or "unknown", outcome=outcome).inc()

    def record_subscription_transition(self, state: str) -> None:
        if not self.enabled or self.subscription_transitions is None:
            return
        self.subscription_transitions.labels(state=state).inc()

    def record_score(self, tier: str) -> None:
        if not self.enabled or self.scores_computed is None:
            return
        self.scores_computed.labels(tier=tier).inc()

    def record_anomaly(self, anomaly_type: str, severity: str) -> None:
        if not self.enabled or self.anomalies_detected is None:
            return
        self.anomalies_detected.labels(type=anomaly_type, severity=severity).inc()

    def record_notification_suppressed(self, reason: str) -> None:
        if not self.enabled or self.notifications_suppressed is None:
            return
        self.notifications_suppressed.labels(reason=reason).inc()

    def record_side_effect_error(self, effect: str) -> None:
        if not self.enabled or self.side_effect_errors is None:
            return
        self.side_effect_errors.labels(effect=effect).inc()

    def record_batch_item_error(self, operation: str) -> None:
        if not self.enabled or self.batch_item_errors is None:
            return
        self.batch_item_errors.labels(operation=operation).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None or self.job_runner_up is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)
        self.job_runner_up.labels(job=job).set(1)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

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

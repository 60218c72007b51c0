import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.transitions = None
            self.stale_events = None
            self.webhook_events = None
            self.checkout_sessions = None
            self.http_5xx = None
            return

        self.transitions = Counter(
            "booking_transitions_total",
            "Booking state transitions applied.",
            ["from_state", "to_state", "event"],
            registry=self.registry,
        )
        self.stale_events = Counter(
            "booking_stale_events_total",
            "Events rejected by the booking state machine as stale.",
            ["event"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "webhook_events_total",
            "Webhook events processed by provider and result.",
            ["provider", "result"],
            registry=self.registry,
        )
        self.checkout_sessions = Counter(
            "checkout_sessions_total",
            "Checkout session requests by result.",
            ["result"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )

    def record_transition(self, from_state: str, to_state: str, event: str) -> None:
        if not self.enabled or self.transitions is None:
            return
        self.transitions.labels(from_state=from_state, to_state=to_state, event=event).inc()

    def record_stale_event(self, event: str) -> None:
        if not self.enabled or self.stale_events is None:
            return
        self.stale_events.labels(event=event).inc()

    def record_webhook(self, provider: str, result: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(provider=provider, result=result).inc()

    def record_checkout(self, result: str) -> None:
        if not self.enabled or self.checkout_sessions is None:
            return
        self.checkout_sessions.labels(result=result).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

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

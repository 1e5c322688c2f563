"""Prometheus metric definitions for the checkout core.

Metrics are bound to an explicit `CollectorRegistry` so every process (and
every test) owns its own set instead of sharing module-level collectors.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


class CheckoutMetrics:
    """All counters/histograms emitted by checkout, payments and webhooks."""

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry
        self.orders_created_total = Counter(
            "orders_created_total", "Orders created by checkout", ["service"], registry=registry
        )
        self.checkout_rejected_total = Counter(
            "checkout_rejected_total",
            "Checkout attempts rejected, by error code",
            ["service", "code"],
            registry=registry,
        )
        self.stock_reservation_failed_total = Counter(
            "stock_reservation_failed_total",
            "Conditional stock decrements that found insufficient stock",
            ["service"],
            registry=registry,
        )
        self.checkout_latency_seconds = Histogram(
            "checkout_latency_seconds", "Order creation latency seconds", ["service"], registry=registry
        )
        self.payment_intents_total = Counter(
            "payment_intents_total",
            "Payment intent requests by outcome (created/reused/upgraded)",
            ["service", "outcome"],
            registry=registry,
        )
        self.payment_retries_total = Counter(
            "payment_retries_total", "Accepted payment retry attempts", ["service"], registry=registry
        )
        self.webhook_events_total = Counter(
            "webhook_events_total",
            "Webhook deliveries by outcome",
            ["service", "event_type", "outcome"],
            registry=registry,
        )
        self.stock_restored_units_total = Counter(
            "stock_restored_units_total",
            "Units returned to inventory by compensation",
            ["service", "reason"],
            registry=registry,
        )
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "route", "method", "status_code"],
            registry=registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration seconds",
            ["service", "route", "method"],
            registry=registry,
        )
        self.outbox_pending_total = Gauge(
            "outbox_pending_total",
            "Current count of outbox events not yet sent",
            ["service"],
            registry=registry,
        )
        self.outbox_oldest_pending_age_seconds = Gauge(
            "outbox_oldest_pending_age_seconds",
            "Age in seconds of the oldest pending outbox event",
            ["service"],
            registry=registry,
        )

    def response(self) -> Response:
        """Expose all registered metrics in Prometheus text format."""

        return Response(content=generate_latest(self.registry), media_type="text/plain")

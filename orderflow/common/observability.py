"""Process-scoped observability handle injected into services.

Owns the metrics registry, the tracer provider and the log handler. Created
once per process (or per test), started in the app lifespan and shut down on
teardown.
"""

import logging

from opentelemetry.sdk.trace import TracerProvider
from prometheus_client import CollectorRegistry

from orderflow.common.logging import configure_logging, logger, remove_logging
from orderflow.common.metrics import CheckoutMetrics
from orderflow.common.tracing import get_tracer, setup_tracing


class Observability:
    """Bundle of logger, metrics and tracer shared by checkout components."""

    def __init__(
        self,
        service_name: str = "orderflow",
        registry: CollectorRegistry | None = None,
        otlp_endpoint: str = "",
        log_level: str = "INFO",
    ) -> None:
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self.metrics = CheckoutMetrics(self.registry)
        self.logger: logging.Logger = logger
        self.otlp_endpoint = otlp_endpoint
        self.log_level = log_level
        self.tracer_provider: TracerProvider | None = None
        self._log_handler: logging.Handler | None = None

    def start(self) -> None:
        """Install log handler and tracer provider. Safe to call twice."""

        if self._log_handler is None:
            self._log_handler = configure_logging(self.service_name, self.log_level)
        if self.tracer_provider is None:
            self.tracer_provider = setup_tracing(self.service_name, self.otlp_endpoint)

    def shutdown(self) -> None:
        """Flush spans and detach the log handler."""

        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()
            self.tracer_provider = None
        if self._log_handler is not None:
            remove_logging(self._log_handler)
            self._log_handler = None

    def tracer(self, name: str):
        return get_tracer(self.tracer_provider, name)

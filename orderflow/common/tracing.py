"""OpenTelemetry setup helpers for the API process."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter


def setup_tracing(service_name: str, otlp_endpoint: str) -> TracerProvider:
    """Create a tracer provider, exporting over OTLP HTTP when an endpoint is given.

    The provider is returned rather than registered globally so the owner can
    shut it down on teardown.
    """

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    return provider


def instrument_app(app: FastAPI, provider: TracerProvider | None = None) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)


def get_tracer(provider: TracerProvider | None, name: str) -> trace.Tracer:
    if provider is None:
        return trace.get_tracer(name)
    return provider.get_tracer(name)

"""OpenTelemetry wiring for the gateway and the queue worker.

With `OTEL_ENABLED=false` nothing is registered and `tracer` stays the
API's no-op tracer, so spans in the retry path cost nothing.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from payrelay.common.config import settings


# Probe and scrape endpoints are not worth a span per hit.
EXCLUDED_URLS = "health,metrics"

tracer = trace.get_tracer("payrelay")


def setup_tracing(service_name: str) -> bool:
    """Register an OTLP/HTTP tracer provider; returns False when tracing is off."""

    if not settings.otel_enabled:
        return False
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return True


def instrument_app(app: FastAPI) -> None:
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)

"""OpenTelemetry wiring: one tracer provider per process, exported over OTLP HTTP."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from coinflow.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register the global tracer provider. An empty OTLP endpoint disables export."""

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.namespace": "coinflow"}),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_sample_ratio)),
    )
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


def get_tracer(name: str) -> trace.Tracer:
    """Tracer for manual spans around ledger operations.

    Returns a no-op tracer until `setup_tracing` has run, which keeps tests silent.
    """

    return trace.get_tracer(f"coinflow.{name}")

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from jobgate.core.config import settings
from jobgate.core.logging import get_logger

log = get_logger("observability.tracing")


def setup_tracing() -> bool:
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False
    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.OTEL_SERVICE_NAME})
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    log.bind(endpoint=endpoint).info("tracing.enabled")
    return True


def instrument_fastapi(app) -> None:
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return
    FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str):
    # no-op tracer until setup_tracing installs a provider
    return trace.get_tracer(name)

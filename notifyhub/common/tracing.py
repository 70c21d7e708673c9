"""OpenTelemetry setup and span helpers."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from notifyhub.common.config import settings


tracer = trace.get_tracer("notifyhub")


def setup_tracing(service_name: str) -> None:
    """Register an OTLP/HTTP tracer provider unless tracing is disabled."""

    if not settings.otel_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if not settings.otel_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls="/health,/metrics")


@contextmanager
def job_span(name: str, job):
    """Span around one unit of job work, tagged with the job's routing fields.

    No-op spans are produced when no provider is registered.
    """

    with tracer.start_as_current_span(name) as span:
        span.set_attribute("notifyhub.job_id", job.id)
        span.set_attribute("notifyhub.tenant_id", job.tenant_id)
        span.set_attribute("notifyhub.channel", job.channel)
        span.set_attribute("notifyhub.notification_type", job.notification_type)
        span.set_attribute("notifyhub.attempt", job.attempt_count)
        yield span


def mark_span_error(span, error_kind: str, detail: str | None) -> None:
    span.set_attribute("notifyhub.error_kind", error_kind)
    span.set_status(Status(StatusCode.ERROR, detail or error_kind))

from __future__ import annotations

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from subtrack.core.config import Settings, get_settings


_configured = False
_provider: TracerProvider | None = None


def build_resource(settings: Settings) -> Resource:
    """Resource shared by every span a worker or the CLI emits."""
    return Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.namespace": "subtrack",
            "deployment.environment": settings.app_env,
            "messaging.system": "celery",
            "subtrack.billing.queue": settings.billing_queue,
            "subtrack.webhook.queue": settings.webhook_queue,
            "subtrack.billing.timezone": settings.billing_timezone,
        }
    )


def _get_or_create_provider(settings: Settings) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(resource=build_resource(settings))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    global _configured

    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(settings)
    if _configured:
        return provider

    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(settings: Settings | None = None) -> InMemorySpanExporter:
    provider = _get_or_create_provider(settings or get_settings())
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)

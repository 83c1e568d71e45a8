from __future__ import annotations

from typing import Any

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

from leadflow.core.config import Settings, get_settings
from leadflow.middleware.correlation_id import CORRELATION_HEADER, accepted_correlation_id

_provider: TracerProvider | None = None
_exporters_attached = False


def _tracer_provider(service_name: str, settings: Settings) -> TracerProvider:
    """Install one global provider per process; the SDK refuses to replace it."""
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": settings.app_version,
                "deployment.environment": settings.app_env,
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(settings: Settings | None = None) -> TracerProvider | None:
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return None

    global _exporters_attached
    provider = _tracer_provider(settings.otel_service_name, settings)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str | None = None) -> InMemorySpanExporter:
    settings = get_settings()
    provider = _tracer_provider(service_name or settings.otel_service_name, settings)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(CORRELATION_HEADER.encode("latin-1"))
        correlation_id = accepted_correlation_id(raw.decode("latin-1")) if raw else None
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook

from __future__ import annotations

import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
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
from opentelemetry.trace import Span, Status, StatusCode

from app.context import CORRELATION_HEADER, is_acceptable_correlation_id

PIPELINE_TRACER = "app.crm.pipeline"

_configured = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.namespace": "crm",
                    "service.version": os.getenv("APP_VERSION", "0.1.0"),
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _configured

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if _configured:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _configured = True
    return provider


def setup_inmemory_otel(service_name: str = "pipeline-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _get_or_create_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def set_span_attribute(span: Span, key: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, uuid.UUID):
        value = str(value)
    span.set_attribute(key, value)


@contextmanager
def pipeline_span(name: str, **attributes: Any) -> Iterator[Span]:
    """Open a span on the pipeline tracer with the given lead attributes."""
    with trace.get_tracer(PIPELINE_TRACER).start_as_current_span(name) as span:
        for key, value in attributes.items():
            set_span_attribute(span, key, value)
        yield span


def mark_span_failed(span: Span, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))


def get_fastapi_server_request_hook():
    header_key = CORRELATION_HEADER.encode("latin-1")

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        raw = dict(scope.get("headers", [])).get(header_key)
        if raw is None:
            return
        correlation_id = raw.decode("latin-1").strip()
        # Oversized ids are replaced downstream; the middleware stamps the new one.
        if is_acceptable_correlation_id(correlation_id):
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook

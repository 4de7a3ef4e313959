"""OpenTelemetry tracing for Capsulate operations.

Spans are always created through the OpenTelemetry API; until
``setup_tracing`` installs an SDK provider they are no-ops.  Every span
carries ``capsulate.operation`` and, when known, ``capsulate.agent_id``.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, SpanKind, Status, StatusCode, Tracer

TRACER_NAME = "capsulate"

_tracer: Tracer | None = None


def setup_tracing(
    service_name: str = "capsulate",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
) -> Tracer:
    """Install an SDK tracer provider with the requested exporters.

    Without an endpoint (argument or ``OTEL_EXPORTER_OTLP_ENDPOINT``) and
    without console export, spans are recorded but not exported.
    """
    global _tracer

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))

    endpoint = otlp_endpoint or os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def get_tracer() -> Tracer:
    if _tracer is None:
        return trace.get_tracer(TRACER_NAME)
    return _tracer


@contextmanager
def create_span(
    operation: str,
    agent_id: str | None = None,
    attributes: dict[str, Any] | None = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Generator[Span, None, None]:
    """Start a span named ``capsulate.<operation>`` as the current span.

    Exceptions escaping the block are recorded on the span and re-raised.
    """
    attrs: dict[str, Any] = {"capsulate.operation": operation}
    if agent_id:
        attrs["capsulate.agent_id"] = agent_id
    if attributes:
        attrs.update({k: v for k, v in attributes.items() if v is not None})

    with get_tracer().start_as_current_span(
        f"capsulate.{operation}",
        kind=kind,
        attributes=attrs,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as exc:
            record_exception(span, exc)
            raise


def record_exception(span: Span, exception: Exception, escaped: bool = True) -> None:
    span.record_exception(exception, escaped=escaped)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def add_event(name: str, **attributes: Any) -> None:
    """Attach an event to the current span (no-op outside a span)."""
    span = trace.get_current_span()
    span.add_event(name, {k: v for k, v in attributes.items() if v is not None})

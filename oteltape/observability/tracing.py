"""
oteltape Tracing - OpenTelemetry Integration

Spans around capture ingests, replayed batches and retention passes.
Only the OpenTelemetry API is used; without a configured SDK tracer
provider spans are no-ops.

Usage:
    from oteltape.observability.tracing import get_tracer, SpanAttributes

    tracer = get_tracer()
    with tracer.span("oteltape.replay.batch", {SpanAttributes.SESSION_ID: "cap-1"}) as span:
        tracer.add_event(span, SpanEvents.BATCH_DELIVERED)
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace as otel_trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode


class SpanAttributes:
    """Attribute names for oteltape spans."""

    SESSION_ID = "oteltape.session.id"
    SIGNAL_TYPE = "oteltape.signal.type"
    OBJECT_KEY = "oteltape.object.key"
    OBJECT_SIZE_BYTES = "oteltape.object.size_bytes"
    SPEED_MULTIPLIER = "oteltape.replay.speed_multiplier"
    PROCESSED_RECORDS = "oteltape.replay.processed_records"
    ATTEMPT = "oteltape.replay.attempt"
    DELETED_OBJECTS = "oteltape.retention.deleted_objects"
    ERROR_REASON = "oteltape.error.reason"
    LATENCY_MS = "oteltape.latency.ms"


class SpanEvents:
    BATCH_DELIVERED = "Batch_Delivered"
    DELIVERY_RETRY = "Delivery_Retry"
    OBJECT_DELETED = "Object_Deleted"


class TapeTracer:
    """
    Thin wrapper over an OpenTelemetry tracer.

    Spans record exceptions and set an error status before re-raising.
    """

    def __init__(self, instrumentation_name: str = "oteltape") -> None:
        self._tracer = otel_trace.get_tracer(instrumentation_name)
        self._enabled = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
    ) -> Iterator[Span | None]:
        if not self._enabled:
            yield None
            return

        start_time = time.monotonic()
        with self._tracer.start_as_current_span(
            name, attributes=attributes, kind=kind, record_exception=False, set_status_on_exception=False
        ) as span:
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                reason = getattr(e, "reason", None)
                if reason:
                    span.set_attribute(SpanAttributes.ERROR_REASON, reason)
                raise
            finally:
                span.set_attribute(SpanAttributes.LATENCY_MS, (time.monotonic() - start_time) * 1000)

    def add_event(self, span: Span | None, name: str, attributes: dict[str, Any] | None = None) -> None:
        if span is not None and self._enabled:
            span.add_event(name, attributes or {})

    def set_attribute(self, span: Span | None, key: str, value: Any) -> None:
        if span is not None and self._enabled:
            span.set_attribute(key, value)


_tracer: TapeTracer | None = None


def get_tracer() -> TapeTracer:
    """Process-wide tracer"""
    global _tracer
    if _tracer is None:
        _tracer = TapeTracer()
    return _tracer

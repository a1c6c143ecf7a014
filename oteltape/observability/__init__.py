"""
oteltape Observability Module

OpenTelemetry spans for capture, replay and retention.
"""

from .tracing import SpanAttributes, SpanEvents, TapeTracer, get_tracer

__all__ = [
    "TapeTracer",
    "SpanAttributes",
    "SpanEvents",
    "get_tracer",
]

"""
relaytrace - distributed tracing with explicit context propagation

A small tracing pipeline with:
- Immutable trace carriers passed by value (no ambient span state)
- W3C traceparent and baggage propagation over HTTP headers
- Head-based sampling decided once per trace
- Batching OTLP/HTTP exporter with bounded queue and deadline shutdown
"""

__version__ = "0.1.0"

from relaytrace.config import TelemetrySettings
from relaytrace.provider import TelemetryProvider
from relaytrace.tracing.carrier import TraceCarrier
from relaytrace.tracing.propagation import extract, inject
from relaytrace.tracing.span import SpanKind, SpanStatus

__all__ = [
    "TelemetryProvider",
    "TelemetrySettings",
    "TraceCarrier",
    "SpanKind",
    "SpanStatus",
    "inject",
    "extract",
    "__version__",
]

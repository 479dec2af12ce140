"""
relaytrace Tracing

Span lifecycle, trace context carriers, propagation and sampling.
"""

from relaytrace.tracing.accumulator import SpanTreeAccumulator
from relaytrace.tracing.carrier import BaggageLimits, TraceCarrier
from relaytrace.tracing.propagation import (
    BaggagePropagator,
    CompositePropagator,
    TraceContextPropagator,
    extract,
    inject,
    parse_baggage,
)
from relaytrace.tracing.sampling import (
    AlwaysOffSampler,
    AlwaysOnSampler,
    ParentBasedSampler,
    Sampler,
    TraceIdRatioSampler,
    decide,
)
from relaytrace.tracing.span import SpanEvent, SpanHandle, SpanKind, SpanRecord, SpanStatus
from relaytrace.tracing.tracer import Tracer

__all__ = [
    # Carrier
    "TraceCarrier",
    "BaggageLimits",
    # Propagation
    "TraceContextPropagator",
    "BaggagePropagator",
    "CompositePropagator",
    "inject",
    "extract",
    "parse_baggage",
    # Sampling
    "Sampler",
    "AlwaysOnSampler",
    "AlwaysOffSampler",
    "TraceIdRatioSampler",
    "ParentBasedSampler",
    "decide",
    # Spans
    "SpanKind",
    "SpanStatus",
    "SpanEvent",
    "SpanRecord",
    "SpanHandle",
    "SpanTreeAccumulator",
    "Tracer",
]

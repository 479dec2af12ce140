"""
relaytrace Tracer

Creates spans from explicit carriers. There is no ambient "current span":
every call takes the carrier it continues and returns the carrier for the
work running under the new span.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, Mapping, Optional, Tuple

import structlog

from relaytrace.tracing.accumulator import CANCELLED_MESSAGE, SpanTreeAccumulator
from relaytrace.tracing.carrier import TraceCarrier
from relaytrace.tracing.sampling import AlwaysOnSampler, ParentBasedSampler, Sampler
from relaytrace.tracing.span import SpanHandle, SpanKind, SpanStatus, utc_now

logger = structlog.get_logger(__name__)

# Interruptions that abandon the request rather than fail it
_CANCELLATIONS = (asyncio.CancelledError, KeyboardInterrupt, SystemExit)


class Tracer:
    """
    Span factory bound to one accumulator and one sampler.

    Built once at startup (see TelemetryProvider) and passed to the code
    that emits spans.
    """

    def __init__(
        self,
        accumulator: SpanTreeAccumulator,
        sampler: Sampler = None,
        max_attributes_per_span: int = 128,
        max_events_per_span: int = 128,
    ):
        self.accumulator = accumulator
        self.sampler = sampler or ParentBasedSampler(AlwaysOnSampler())
        self.max_attributes_per_span = max_attributes_per_span
        self.max_events_per_span = max_events_per_span

    def _generate_trace_id(self) -> str:
        """Generate a W3C-compatible trace ID (32 hex chars)."""
        return uuid.uuid4().hex

    def _generate_span_id(self) -> str:
        """Generate a W3C-compatible span ID (16 hex chars)."""
        return uuid.uuid4().hex[:16]

    def start_span(
        self,
        carrier: TraceCarrier,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] = None,
    ) -> Tuple[TraceCarrier, SpanHandle]:
        """
        Start a span continuing carrier.

        A carrier without a span id starts a new trace: the span is a root,
        gets a fresh trace ID and the sampler decides for the whole trace.

        Returns:
            (child carrier pointing at the new span, handle of the new span)
        """
        start_time = utc_now()

        if not carrier.has_span:
            trace_id = self._generate_trace_id()
            parent_span_id = None
            sampled = self.sampler.should_sample(trace_id, None)
        else:
            trace_id = carrier.trace_id
            parent_span_id = carrier.span_id
            parent_start = self.accumulator.parent_start_time(trace_id, parent_span_id)
            if parent_start is not None:
                # Local parent: the root already decided for this trace
                sampled = carrier.sampled
                if start_time < parent_start:
                    start_time = parent_start
            else:
                sampled = self.sampler.should_sample(trace_id, carrier.sampled)

        handle = SpanHandle(
            trace_id=trace_id,
            span_id=self._generate_span_id(),
            parent_span_id=parent_span_id,
            name=name,
            kind=kind,
            start_time=start_time,
            attributes=attributes,
            sampled=sampled,
            on_end=self.accumulator.submit,
            max_attributes=self.max_attributes_per_span,
            max_events=self.max_events_per_span,
        )
        self.accumulator.register(handle)

        child = carrier.child(span_id=handle.span_id, trace_id=trace_id, sampled=sampled)
        return child, handle

    def _close(self, handle: SpanHandle, error: Optional[BaseException]) -> None:
        if error is None:
            if handle.status == SpanStatus.UNSET:
                handle.set_status(SpanStatus.OK)
        elif isinstance(error, _CANCELLATIONS):
            handle.set_status(SpanStatus.ERROR, CANCELLED_MESSAGE)
        else:
            handle.record_exception(error, escaped=True)
        handle.end()

    @contextmanager
    def use_span(self, handle: SpanHandle) -> Iterator[SpanHandle]:
        """End an already started span when the block exits."""
        try:
            yield handle
        except BaseException as e:
            self._close(handle, e)
            raise
        else:
            self._close(handle, None)

    @contextmanager
    def span(
        self,
        carrier: TraceCarrier,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] = None,
    ) -> Iterator[Tuple[TraceCarrier, SpanHandle]]:
        """
        Scope a span to a block.

        Usage:
            with tracer.span(carrier, "getPackage") as (carrier, span):
                span.add_event("found package")
        """
        child, handle = self.start_span(carrier, name, kind, attributes)
        with self.use_span(handle):
            yield child, handle

    @asynccontextmanager
    async def async_span(
        self,
        carrier: TraceCarrier,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Mapping[str, Any] = None,
    ) -> AsyncIterator[Tuple[TraceCarrier, SpanHandle]]:
        """Async version of span(); task cancellation closes the span as cancelled."""
        child, handle = self.start_span(carrier, name, kind, attributes)
        with self.use_span(handle):
            yield child, handle

    def cancel_trace(self, carrier: TraceCarrier) -> int:
        """Close every span of carrier's trace still open in this process."""
        if not carrier.has_span:
            return 0
        return self.accumulator.cancel_trace(carrier.trace_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sampler": self.sampler.description,
            **self.accumulator.get_stats(),
        }

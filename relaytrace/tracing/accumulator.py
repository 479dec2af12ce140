"""
relaytrace Span Tree Accumulator

Tracks the open spans of every in-flight trace and forwards each span to
the exporter sink as soon as it closes. Spans may close in any order; the
head-based sampling decision travels with each span so nothing waits for
the rest of its trace.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from relaytrace.tracing.span import SpanHandle, SpanRecord, SpanStatus

if TYPE_CHECKING:
    from relaytrace.export.sink import BatchExportSink

logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "cancelled"


@dataclass
class AccumulatorStats:
    """Statistics for the accumulator."""
    spans_started: int = 0
    spans_ended: int = 0
    spans_forwarded: int = 0
    spans_unsampled: int = 0
    spans_rejected: int = 0
    spans_cancelled: int = 0

    def to_dict(self) -> dict:
        return {
            "spans_started": self.spans_started,
            "spans_ended": self.spans_ended,
            "spans_forwarded": self.spans_forwarded,
            "spans_unsampled": self.spans_unsampled,
            "spans_rejected": self.spans_rejected,
            "spans_cancelled": self.spans_cancelled,
        }


class SpanTreeAccumulator:
    """Holds open spans per trace and hands closed ones to the sink."""

    def __init__(self, sink: Optional["BatchExportSink"] = None):
        self.sink = sink
        self._open: Dict[str, Dict[str, SpanHandle]] = {}
        self._lock = threading.Lock()
        self._stats = AccumulatorStats()

    def register(self, handle: SpanHandle) -> None:
        """Track a newly started span."""
        with self._lock:
            self._open.setdefault(handle.trace_id, {})[handle.span_id] = handle
            self._stats.spans_started += 1

    def submit(self, record: SpanRecord) -> None:
        """Accept a closed span and forward it if its trace is sampled."""
        with self._lock:
            spans = self._open.get(record.trace_id)
            if spans is not None:
                spans.pop(record.span_id, None)
                if not spans:
                    del self._open[record.trace_id]
            self._stats.spans_ended += 1

            if not record.sampled:
                self._stats.spans_unsampled += 1
                return

        if self.sink is None:
            return

        if self.sink.enqueue(record):
            with self._lock:
                self._stats.spans_forwarded += 1
        else:
            with self._lock:
                self._stats.spans_rejected += 1

    def get_open_span(self, trace_id: str, span_id: str) -> Optional[SpanHandle]:
        with self._lock:
            return self._open.get(trace_id, {}).get(span_id)

    def parent_start_time(self, trace_id: str, span_id: str) -> Optional[datetime]:
        """Start time of a parent span still open in this process."""
        parent = self.get_open_span(trace_id, span_id)
        return parent.start_time if parent is not None else None

    def open_spans(self, trace_id: str) -> List[SpanHandle]:
        with self._lock:
            return list(self._open.get(trace_id, {}).values())

    def open_span_count(self) -> int:
        with self._lock:
            return sum(len(spans) for spans in self._open.values())

    def cancel_trace(self, trace_id: str) -> int:
        """
        Close every open span of a trace with error("cancelled").

        Children are closed before their parents. Returns the number of
        spans closed.
        """
        handles = self.open_spans(trace_id)
        # Registration order reversed: children end before their parents
        handles.reverse()

        closed = 0
        for handle in handles:
            handle.set_status(SpanStatus.ERROR, CANCELLED_MESSAGE)
            if handle.end():
                closed += 1

        if closed:
            with self._lock:
                self._stats.spans_cancelled += closed
            logger.info("Cancelled open spans", trace_id=trace_id, count=closed)
        return closed

    def cancel_all(self) -> int:
        with self._lock:
            trace_ids = list(self._open.keys())
        return sum(self.cancel_trace(trace_id) for trace_id in trace_ids)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                **self._stats.to_dict(),
                "active_traces": len(self._open),
                "open_spans": sum(len(spans) for spans in self._open.values()),
            }

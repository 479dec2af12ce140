"""
relaytrace Tracer Tests

Tests cover: span creation from carriers, parent/child linkage, sampling
inheritance, span closing rules and trace cancellation.
"""

import asyncio
from datetime import timedelta

import pytest


class RecordingSink:
    """Collects forwarded span records."""

    def __init__(self, accept: bool = True):
        self.records = []
        self.accept = accept

    def enqueue(self, record) -> bool:
        if self.accept:
            self.records.append(record)
        return self.accept


def make_tracer(sampler=None, **kwargs):
    from relaytrace.tracing.accumulator import SpanTreeAccumulator
    from relaytrace.tracing.tracer import Tracer

    sink = RecordingSink()
    tracer = Tracer(SpanTreeAccumulator(sink), sampler=sampler, **kwargs)
    return tracer, sink


# =============================================================================
# Span Creation Tests
# =============================================================================

class TestStartSpan:
    """Test starting spans from carriers."""

    def test_root_span_gets_fresh_trace(self):
        """A carrier without a span starts a new trace."""
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        child, span = tracer.start_span(TraceCarrier(), "root")

        assert len(span.trace_id) == 32
        assert len(span.span_id) == 16
        assert span.parent_span_id is None
        assert child.trace_id == span.trace_id
        assert child.span_id == span.span_id
        assert child.sampled is True

    def test_root_spans_get_distinct_traces(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        _, first = tracer.start_span(TraceCarrier(), "a")
        _, second = tracer.start_span(TraceCarrier(), "b")

        assert first.trace_id != second.trace_id

    def test_child_span_links_to_parent(self):
        """Children share the trace id and point at the parent span."""
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        parent_carrier, parent = tracer.start_span(TraceCarrier(), "parent")
        child_carrier, child = tracer.start_span(parent_carrier, "child")

        assert child.trace_id == parent.trace_id
        assert child.parent_span_id == parent.span_id
        assert child_carrier.span_id == child.span_id
        assert child.start_time >= parent.start_time

    def test_original_carrier_unchanged(self):
        """Starting a span derives a new carrier."""
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        carrier = TraceCarrier(baggage={"destination": "newyork"})
        child, _ = tracer.start_span(carrier, "root")

        assert not carrier.has_span
        assert child.get_baggage("destination") == "newyork"

    def test_remote_parent(self):
        """An extracted carrier continues the remote trace."""
        from relaytrace.tracing.propagation import extract

        tracer, _ = make_tracer()
        carrier = extract({"traceparent": "00-abc123-def456-01"})
        _, span = tracer.start_span(carrier, "server")

        assert span.trace_id == "abc123"
        assert span.parent_span_id == "def456"

    def test_initial_attributes(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        _, span = tracer.start_span(
            TraceCarrier(), "root", attributes={"peer.service": "otel-example-server"}
        )

        assert span.attributes["peer.service"] == "otel-example-server"

    def test_child_start_clamped_to_parent(self):
        """A clock stepping backwards never starts a child before its parent."""
        from unittest.mock import patch

        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        carrier, parent = tracer.start_span(TraceCarrier(), "parent")

        earlier = parent.start_time - timedelta(seconds=1)
        with patch("relaytrace.tracing.tracer.utc_now", return_value=earlier):
            _, child = tracer.start_span(carrier, "child")

        assert child.start_time == parent.start_time


class TestSamplingInheritance:
    """Test that the root decision covers the whole trace."""

    def test_unsampled_root_not_forwarded(self):
        """Spans of an unsampled trace never reach the sink."""
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.sampling import never

        tracer, sink = make_tracer(sampler=never())
        carrier, root = tracer.start_span(TraceCarrier(), "root")
        _, child = tracer.start_span(carrier, "child")
        child.end()
        root.end()

        assert carrier.sampled is False
        assert sink.records == []
        assert tracer.get_stats()["spans_unsampled"] == 2

    def test_local_child_inherits_decision(self):
        """Local children reuse the carrier flag without re-sampling."""
        from unittest.mock import Mock

        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.sampling import Sampler

        sampler = Mock(spec=Sampler)
        sampler.should_sample.return_value = True
        tracer, _ = make_tracer(sampler=sampler)

        carrier, _ = tracer.start_span(TraceCarrier(), "root")
        tracer.start_span(carrier, "child")

        sampler.should_sample.assert_called_once()

    def test_remote_unsampled_parent(self):
        """The default policy honors an inbound 00 flag."""
        from relaytrace.tracing.propagation import extract

        tracer, sink = make_tracer()
        carrier, span = tracer.start_span(extract({"traceparent": "00-abc123-def456-00"}), "server")
        span.end()

        assert carrier.sampled is False
        assert sink.records == []


# =============================================================================
# Span Lifecycle Tests
# =============================================================================

class TestSpanLifecycle:
    """Test closing rules of span handles."""

    def test_end_submits_record(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.add_event("Sending request...")

        assert span.end() is True
        assert len(sink.records) == 1

        record = sink.records[0]
        assert record.name == "root"
        assert record.end_time >= record.start_time
        assert [e.name for e in record.events] == ["Sending request..."]
        assert record.is_root

    def test_double_end(self):
        """Only the first end() closes the span."""
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")

        assert span.end() is True
        assert span.end() is False
        assert span.redundant_end_calls == 1
        assert len(sink.records) == 1

    def test_end_time_clamped_to_start(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.end(span.start_time - timedelta(seconds=5))

        assert sink.records[0].end_time == sink.records[0].start_time

    def test_mutations_after_end_ignored(self):
        """A closed span is frozen."""
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.end()

        span.set_attribute("late", True)
        span.add_event("late")
        span.set_status(SpanStatus.ERROR, "late")
        span.update_name("renamed")

        record = sink.records[0]
        assert "late" not in record.attributes
        assert record.events == ()
        assert record.status == SpanStatus.UNSET
        assert record.name == "root"

    def test_status_message_only_for_errors(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, _ = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")

        span.set_status(SpanStatus.OK, "ignored")
        assert span.status_message == ""

        span.set_status(SpanStatus.ERROR, "boom")
        assert span.status_message == "boom"

    def test_attribute_limit(self):
        """Attributes past the limit are counted, not stored."""
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer(max_attributes_per_span=2)
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.set_attributes({"a": 1, "b": 2, "c": 3})
        span.set_attribute("a", 10)
        span.end()

        record = sink.records[0]
        assert dict(record.attributes) == {"a": 10, "b": 2}
        assert record.dropped_attributes_count == 1

    def test_non_scalar_attribute_coerced(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.set_attribute("items", {"x": 1})

        assert span.attributes["items"] == "{'x': 1}"

    def test_sink_errors_do_not_escape(self):
        """A failing sink never breaks the instrumented code."""
        from unittest.mock import Mock

        from relaytrace.tracing.accumulator import SpanTreeAccumulator
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.tracer import Tracer

        sink = Mock()
        sink.enqueue.side_effect = RuntimeError("sink down")
        tracer = Tracer(SpanTreeAccumulator(sink))
        _, span = tracer.start_span(TraceCarrier(), "root")

        assert span.end() is True

    def test_rejected_span_counted(self):
        from relaytrace.tracing.accumulator import SpanTreeAccumulator
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.tracer import Tracer

        tracer = Tracer(SpanTreeAccumulator(RecordingSink(accept=False)))
        _, span = tracer.start_span(TraceCarrier(), "root")
        span.end()

        assert tracer.get_stats()["spans_rejected"] == 1


# =============================================================================
# Scoped Span Tests
# =============================================================================

class TestScopedSpans:
    """Test context-manager helpers."""

    def test_span_sets_ok(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        with tracer.span(TraceCarrier(), "getPackage") as (carrier, span):
            span.add_event("found package")

        assert sink.records[0].status == SpanStatus.OK
        assert carrier.span_id == sink.records[0].span_id

    def test_span_keeps_explicit_error(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        with tracer.span(TraceCarrier(), "getPackage") as (_, span):
            span.record_exception(LookupError("package not found"))

        record = sink.records[0]
        assert record.status == SpanStatus.ERROR
        assert record.status_message == "package not found"
        assert record.events[0].attributes["exception.escaped"] is False

    def test_span_records_escaping_exception(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        with pytest.raises(ValueError):
            with tracer.span(TraceCarrier(), "work"):
                raise ValueError("bad input")

        record = sink.records[0]
        assert record.status == SpanStatus.ERROR
        assert record.events[0].name == "exception"
        assert record.events[0].attributes["exception.type"] == "ValueError"
        assert record.events[0].attributes["exception.escaped"] is True

    def test_children_close_before_parent(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer()
        with tracer.span(TraceCarrier(), "parent") as (carrier, parent):
            with tracer.span(carrier, "child") as (_, child):
                pass

        assert [r.name for r in sink.records] == ["child", "parent"]
        assert sink.records[0].parent_span_id == parent.span_id

    @pytest.mark.asyncio
    async def test_async_span(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        async with tracer.async_span(TraceCarrier(), "async work") as (_, span):
            await asyncio.sleep(0)
            span.add_event("done")

        assert sink.records[0].status == SpanStatus.OK

    @pytest.mark.asyncio
    async def test_async_span_cancelled(self):
        """Task cancellation closes the span as cancelled."""
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        entered = asyncio.Event()

        async def work():
            async with tracer.async_span(TraceCarrier(), "slow"):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(work())
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        record = sink.records[0]
        assert record.status == SpanStatus.ERROR
        assert record.status_message == "cancelled"


# =============================================================================
# Cancellation Tests
# =============================================================================

class TestCancelTrace:
    """Test closing abandoned traces."""

    def test_cancel_trace_closes_open_spans(self):
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.span import SpanStatus

        tracer, sink = make_tracer()
        carrier, root = tracer.start_span(TraceCarrier(), "root")
        child_carrier, child = tracer.start_span(carrier, "child")

        assert tracer.cancel_trace(child_carrier) == 2
        assert root.is_closed and child.is_closed
        assert [r.name for r in sink.records] == ["child", "root"]
        assert all(r.status == SpanStatus.ERROR for r in sink.records)
        assert all(r.status_message == "cancelled" for r in sink.records)

    def test_cancel_trace_skips_closed_and_other_traces(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, sink = make_tracer()
        carrier, root = tracer.start_span(TraceCarrier(), "root")
        _, done = tracer.start_span(carrier, "done")
        done.end()
        _, other = tracer.start_span(TraceCarrier(), "other trace")

        assert tracer.cancel_trace(carrier) == 1
        assert not other.is_closed
        assert tracer.get_stats()["open_spans"] == 1

    def test_cancel_without_span(self):
        from relaytrace.tracing.carrier import TraceCarrier

        tracer, _ = make_tracer()

        assert tracer.cancel_trace(TraceCarrier()) == 0

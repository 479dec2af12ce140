"""
relaytrace Span Records

A SpanHandle is the single-writer view of an open span. Closing it
produces a frozen SpanRecord which is handed to the accumulator and never
changes afterwards.
"""

from __future__ import annotations

import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

Scalar = (str, bool, int, float)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SpanKind(str, Enum):
    """Kind of span following OpenTelemetry conventions."""
    INTERNAL = "internal"    # Default internal operation
    SERVER = "server"        # Server-side of an RPC
    CLIENT = "client"        # Client-side of an RPC
    PRODUCER = "producer"    # Message producer
    CONSUMER = "consumer"    # Message consumer


class SpanStatus(str, Enum):
    """Status of a span."""
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"


def _freeze_attributes(attributes: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(attributes or {}))


def coerce_attribute(value: Any) -> Any:
    """Attributes hold scalars only; anything else is stored as text."""
    if isinstance(value, Scalar):
        return value
    return str(value)


@dataclass(frozen=True)
class SpanEvent:
    """A timestamped annotation within a span."""
    name: str
    timestamp: datetime = field(default_factory=utc_now)
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "attributes", _freeze_attributes(self.attributes))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class SpanRecord:
    """A closed span. Immutable once produced by SpanHandle.end()."""
    trace_id: str
    span_id: str
    name: str
    start_time: datetime
    end_time: datetime
    parent_span_id: Optional[str] = None
    kind: SpanKind = SpanKind.INTERNAL
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)
    events: Tuple[SpanEvent, ...] = ()
    status: SpanStatus = SpanStatus.UNSET
    status_message: str = ""
    sampled: bool = True
    dropped_attributes_count: int = 0
    dropped_events_count: int = 0

    def __post_init__(self):
        object.__setattr__(self, "attributes", _freeze_attributes(self.attributes))
        object.__setattr__(self, "events", tuple(self.events))

    @property
    def is_root(self) -> bool:
        return self.parent_span_id is None

    @property
    def duration_ms(self) -> float:
        return (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "kind": self.kind.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "status_message": self.status_message,
            "attributes": dict(self.attributes),
            "events": [e.to_dict() for e in self.events],
        }


class SpanHandle:
    """
    Mutable view of an open span, owned by one task at a time.

    Every mutator is a silent no-op once the span is closed.
    """

    def __init__(
        self,
        trace_id: str,
        span_id: str,
        name: str,
        parent_span_id: Optional[str] = None,
        kind: SpanKind = SpanKind.INTERNAL,
        start_time: Optional[datetime] = None,
        attributes: Optional[Mapping[str, Any]] = None,
        sampled: bool = True,
        on_end: Optional[Callable[[SpanRecord], None]] = None,
        max_attributes: int = 128,
        max_events: int = 128,
    ):
        self.trace_id = trace_id
        self.span_id = span_id
        self.parent_span_id = parent_span_id
        self.kind = kind
        self.sampled = sampled
        self.start_time = start_time or utc_now()
        self.max_attributes = max_attributes
        self.max_events = max_events

        self._name = name
        self._attributes: Dict[str, Any] = {}
        self._events: List[SpanEvent] = []
        self._status = SpanStatus.UNSET
        self._status_message = ""
        self._dropped_attributes = 0
        self._dropped_events = 0

        self._on_end = on_end
        self._end_lock = threading.Lock()
        self._record: Optional[SpanRecord] = None
        self.redundant_end_calls = 0

        if attributes:
            self.set_attributes(attributes)

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_closed(self) -> bool:
        return self._record is not None

    @property
    def status(self) -> SpanStatus:
        return self._status

    @property
    def status_message(self) -> str:
        return self._status_message

    @property
    def attributes(self) -> Mapping[str, Any]:
        return MappingProxyType(self._attributes)

    @property
    def events(self) -> Tuple[SpanEvent, ...]:
        return tuple(self._events)

    @property
    def record(self) -> Optional[SpanRecord]:
        """The frozen record, available once the span is closed."""
        return self._record

    def update_name(self, name: str) -> None:
        if self.is_closed:
            return
        self._name = name

    def set_attribute(self, key: str, value: Any) -> None:
        if self.is_closed:
            return
        if key not in self._attributes and len(self._attributes) >= self.max_attributes:
            self._dropped_attributes += 1
            return
        self._attributes[key] = coerce_attribute(value)

    def set_attributes(self, attributes: Mapping[str, Any]) -> None:
        for key, value in attributes.items():
            self.set_attribute(key, value)

    def add_event(
        self,
        name: str,
        attributes: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Append an event. Ignored once the span is closed."""
        if self.is_closed:
            return
        if len(self._events) >= self.max_events:
            self._dropped_events += 1
            return
        self._events.append(SpanEvent(
            name=name,
            timestamp=timestamp or utc_now(),
            attributes={k: coerce_attribute(v) for k, v in (attributes or {}).items()},
        ))

    def set_status(self, status: SpanStatus, message: str = "") -> None:
        """Set span status; the last call before end() wins."""
        if self.is_closed:
            return
        self._status = status
        # Descriptions only accompany errors
        self._status_message = message if status == SpanStatus.ERROR else ""

    def record_exception(self, exception: BaseException, escaped: bool = False) -> None:
        """Record an exception as an event and mark the span failed."""
        if self.is_closed:
            return
        self.add_event("exception", {
            "exception.type": type(exception).__name__,
            "exception.message": str(exception),
            "exception.stacktrace": "".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            ),
            "exception.escaped": escaped,
        })
        self.set_status(SpanStatus.ERROR, str(exception))

    def end(self, end_time: Optional[datetime] = None) -> bool:
        """
        Close the span and submit it.

        Returns True on the closing call. Later calls return False and only
        bump redundant_end_calls.
        """
        with self._end_lock:
            if self._record is not None:
                self.redundant_end_calls += 1
                return False

            end_time = end_time or utc_now()
            if end_time < self.start_time:
                end_time = self.start_time

            self._record = SpanRecord(
                trace_id=self.trace_id,
                span_id=self.span_id,
                parent_span_id=self.parent_span_id,
                name=self._name,
                kind=self.kind,
                start_time=self.start_time,
                end_time=end_time,
                attributes=self._attributes,
                events=self._events,
                status=self._status,
                status_message=self._status_message,
                sampled=self.sampled,
                dropped_attributes_count=self._dropped_attributes,
                dropped_events_count=self._dropped_events,
            )

        if self._on_end is not None:
            try:
                self._on_end(self._record)
            except Exception as e:
                # Export problems never reach the instrumented code
                logger.error("Failed to submit span", span=self._name, error=str(e))
        return True

    def __repr__(self) -> str:
        state = "closed" if self.is_closed else "open"
        return f"SpanHandle(name={self._name!r}, span_id={self.span_id}, {state})"

"""
OTLP/JSON serialization of span records.

Produces the body of an OTLP/HTTP ExportTraceServiceRequest. In the JSON
encoding trace and span ids are hex strings and 64-bit integers are
decimal strings.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence

from relaytrace.resource import Resource
from relaytrace.tracing.span import SpanEvent, SpanKind, SpanRecord, SpanStatus

# OTLP enum values
SPAN_KIND_CODES = {
    SpanKind.INTERNAL: 1,
    SpanKind.SERVER: 2,
    SpanKind.CLIENT: 3,
    SpanKind.PRODUCER: 4,
    SpanKind.CONSUMER: 5,
}

STATUS_CODES = {
    SpanStatus.UNSET: 0,
    SpanStatus.OK: 1,
    SpanStatus.ERROR: 2,
}

TRACE_ID_WIDTH = 32
SPAN_ID_WIDTH = 16


def to_unix_nano(timestamp: datetime) -> str:
    seconds = int(timestamp.timestamp())
    return str(seconds * 1_000_000_000 + timestamp.microsecond * 1_000)


def encode_id(value: str, width: int) -> str:
    """
    Fit an id to the fixed hex width OTLP requires (32 for traces, 16 for spans).

    Short hex ids are left-padded with zeros. Other ids are hashed, so the
    same inbound id always maps to the same OTLP id.
    """
    if len(value) <= width and all(ch in "0123456789abcdefABCDEF" for ch in value):
        return value.lower().zfill(width)
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:width]


class OTLPSerializer:
    """Serialize span records to OTLP JSON."""

    def __init__(self, scope_name: str = "relaytrace", scope_version: str = ""):
        self.scope_name = scope_name
        self.scope_version = scope_version

    def serialize_any_value(self, value: Any) -> Dict[str, Any]:
        """Serialize any value type."""
        if isinstance(value, str):
            return {"stringValue": value}
        elif isinstance(value, bool):
            return {"boolValue": value}
        elif isinstance(value, int):
            return {"intValue": str(value)}
        elif isinstance(value, float):
            return {"doubleValue": value}
        elif isinstance(value, (list, tuple)):
            return {"arrayValue": {"values": [
                self.serialize_any_value(v) for v in value
            ]}}
        return {"stringValue": str(value)}

    def serialize_attributes(self, attributes: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [
            {"key": key, "value": self.serialize_any_value(value)}
            for key, value in attributes.items()
        ]

    def serialize_resource(self, resource: Resource) -> Dict[str, Any]:
        return {
            "attributes": self.serialize_attributes(resource.attributes),
            "droppedAttributesCount": 0,
        }

    def serialize_event(self, event: SpanEvent) -> Dict[str, Any]:
        return {
            "timeUnixNano": to_unix_nano(event.timestamp),
            "name": event.name,
            "attributes": self.serialize_attributes(event.attributes),
        }

    def serialize_span(self, span: SpanRecord) -> Dict[str, Any]:
        status: Dict[str, Any] = {"code": STATUS_CODES[span.status]}
        if span.status_message:
            status["message"] = span.status_message

        return {
            "traceId": encode_id(span.trace_id, TRACE_ID_WIDTH),
            "spanId": encode_id(span.span_id, SPAN_ID_WIDTH),
            "parentSpanId": (
                encode_id(span.parent_span_id, SPAN_ID_WIDTH) if span.parent_span_id else ""
            ),
            "name": span.name,
            "kind": SPAN_KIND_CODES[span.kind],
            "startTimeUnixNano": to_unix_nano(span.start_time),
            "endTimeUnixNano": to_unix_nano(span.end_time),
            "attributes": self.serialize_attributes(span.attributes),
            "droppedAttributesCount": span.dropped_attributes_count,
            "events": [self.serialize_event(e) for e in span.events],
            "droppedEventsCount": span.dropped_events_count,
            "status": status,
        }

    def serialize_traces(
        self,
        spans: Sequence[SpanRecord],
        resource: Resource,
    ) -> Dict[str, Any]:
        """Serialize a batch to an ExportTraceServiceRequest."""
        return {
            "resourceSpans": [
                {
                    "resource": self.serialize_resource(resource),
                    "scopeSpans": [
                        {
                            "scope": {
                                "name": self.scope_name,
                                "version": self.scope_version,
                            },
                            "spans": [self.serialize_span(s) for s in spans],
                        }
                    ],
                }
            ]
        }

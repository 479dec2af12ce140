"""
relaytrace Trace Context Propagation

Serializes a TraceCarrier to and from HTTP headers:
- traceparent: version-trace_id-span_id-trace_flags
- baggage: key1=value1,key2=value2
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional
from urllib.parse import quote, unquote

import structlog

from relaytrace.errors import PropagationDecodeFailure, ValidationError
from relaytrace.tracing.carrier import (
    BaggageLimits,
    DEFAULT_BAGGAGE_LIMITS,
    TraceCarrier,
    validate_baggage_entry,
)

logger = structlog.get_logger(__name__)

TRACEPARENT_HEADER = "traceparent"
BAGGAGE_HEADER = "baggage"

SAMPLED_FLAG = 0x01


def _get_header(headers: Mapping[str, str], key: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    key = key.lower()
    for k, v in headers.items():
        if k.lower() == key:
            return v
    return None


class TextMapPropagator(ABC):
    """Base class for header propagators."""

    @abstractmethod
    def inject(self, carrier: TraceCarrier, headers: Dict[str, str]) -> Dict[str, str]:
        """Write the carrier's fields into headers."""
        pass

    @abstractmethod
    def extract(self, headers: Mapping[str, str], carrier: TraceCarrier) -> TraceCarrier:
        """
        Return carrier updated with the fields found in headers.

        Raises PropagationDecodeFailure when a header is present but
        malformed.
        """
        pass

    @property
    @abstractmethod
    def fields(self) -> List[str]:
        """List of header fields used by this propagator."""
        pass


class TraceContextPropagator(TextMapPropagator):
    """
    traceparent propagator.

    Tokens may be separated by '-' or ':'. Trace and span ids are accepted
    as any alphanumeric token and carried verbatim.
    """

    TRACEPARENT_REGEX = re.compile(
        r"^([0-9a-fA-F]{2})[-:]([0-9A-Za-z]+)[-:]([0-9A-Za-z]+)[-:]([0-9a-fA-F]{2})$"
    )

    @property
    def fields(self) -> List[str]:
        return [TRACEPARENT_HEADER]

    def inject(self, carrier: TraceCarrier, headers: Dict[str, str]) -> Dict[str, str]:
        if not carrier.has_span:
            return headers

        flags = SAMPLED_FLAG if carrier.sampled else 0
        headers[TRACEPARENT_HEADER] = f"00-{carrier.trace_id}-{carrier.span_id}-{flags:02x}"
        return headers

    def extract(self, headers: Mapping[str, str], carrier: TraceCarrier) -> TraceCarrier:
        traceparent = _get_header(headers, TRACEPARENT_HEADER)
        if traceparent is None:
            return carrier

        value = traceparent.strip()
        match = self.TRACEPARENT_REGEX.match(value)
        if not match:
            raise PropagationDecodeFailure(TRACEPARENT_HEADER, traceparent, "bad format")

        version, trace_id, span_id, flags = match.groups()

        if version.lower() == "ff":
            raise PropagationDecodeFailure(TRACEPARENT_HEADER, traceparent, "invalid version")

        if set(trace_id) == {"0"} or set(span_id) == {"0"}:
            raise PropagationDecodeFailure(TRACEPARENT_HEADER, traceparent, "all-zero id")

        return carrier.child(
            span_id=span_id,
            trace_id=trace_id,
            sampled=bool(int(flags, 16) & SAMPLED_FLAG),
        )


class BaggagePropagator(TextMapPropagator):
    """
    W3C Baggage propagator.

    Values are percent-encoded on the wire. Invalid members are skipped
    rather than failing the whole header.
    """

    def __init__(self, limits: BaggageLimits = DEFAULT_BAGGAGE_LIMITS):
        self.limits = limits

    @property
    def fields(self) -> List[str]:
        return [BAGGAGE_HEADER]

    def inject(self, carrier: TraceCarrier, headers: Dict[str, str]) -> Dict[str, str]:
        if not carrier.baggage:
            return headers

        headers[BAGGAGE_HEADER] = ",".join(
            f"{key}={quote(value, safe='')}" for key, value in carrier.baggage.items()
        )
        return headers

    def extract(self, headers: Mapping[str, str], carrier: TraceCarrier) -> TraceCarrier:
        header = _get_header(headers, BAGGAGE_HEADER)
        if not header:
            return carrier

        entries = self.parse(header)
        if not entries:
            return carrier

        merged = dict(carrier.baggage)
        merged.update(entries)
        return TraceCarrier(
            trace_id=carrier.trace_id,
            span_id=carrier.span_id,
            baggage=merged,
            sampled=carrier.sampled,
        )

    def parse(self, header: str) -> Dict[str, str]:
        """Parse a baggage header value into a dict."""
        entries: Dict[str, str] = {}

        for member in header.split(","):
            member = member.strip()
            if not member:
                continue

            # Drop ;metadata properties
            key_value = member.split(";", 1)[0]
            key, sep, raw_value = key_value.partition("=")
            if not sep:
                logger.warning("Skipping baggage member without value", member=member)
                continue

            key = key.strip()
            value = unquote(raw_value.strip())

            try:
                validate_baggage_entry(key, value, self.limits)
            except ValidationError as e:
                logger.warning("Skipping invalid baggage member", error=str(e))
                continue

            if key not in entries and len(entries) >= self.limits.max_entries:
                logger.warning(
                    "Baggage entry limit reached",
                    max_entries=self.limits.max_entries,
                )
                break

            entries[key] = value

        return entries


class CompositePropagator:
    """
    Runs several propagators over the same headers.

    Extraction starts from an empty carrier; a decode failure in any
    propagator makes the whole extraction fail so the request starts a
    fresh trace.
    """

    def __init__(self, propagators: List[TextMapPropagator] = None):
        self.propagators = propagators or [
            TraceContextPropagator(),
            BaggagePropagator(),
        ]

    @property
    def fields(self) -> List[str]:
        fields: List[str] = []
        for propagator in self.propagators:
            fields.extend(propagator.fields)
        return fields

    def inject(self, carrier: TraceCarrier, headers: Dict[str, str] = None) -> Dict[str, str]:
        headers = {} if headers is None else headers
        for propagator in self.propagators:
            headers = propagator.inject(carrier, headers)
        return headers

    def extract(self, headers: Mapping[str, str]) -> Optional[TraceCarrier]:
        carrier = TraceCarrier()
        try:
            for propagator in self.propagators:
                carrier = propagator.extract(headers, carrier)
        except PropagationDecodeFailure as e:
            logger.warning("Discarding inbound trace context", error=str(e))
            return None
        return carrier


_default_propagator = CompositePropagator()


def inject(carrier: TraceCarrier, headers: Dict[str, str] = None) -> Dict[str, str]:
    """Serialize a carrier into propagation headers."""
    return _default_propagator.inject(carrier, headers)


def extract(headers: Mapping[str, str]) -> Optional[TraceCarrier]:
    """
    Rebuild a carrier from inbound headers.

    Returns None when the trace context is malformed; callers treat the
    request as a new trace root.
    """
    return _default_propagator.extract(headers)


def parse_baggage(header: str, limits: BaggageLimits = DEFAULT_BAGGAGE_LIMITS) -> TraceCarrier:
    """Build a root carrier holding the baggage described by header."""
    return TraceCarrier(baggage=BaggagePropagator(limits).parse(header))

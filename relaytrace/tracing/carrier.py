"""
relaytrace Context Carrier

Immutable trace context passed by value along the call chain:
trace id, current span id, sampling flag and W3C baggage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from relaytrace.errors import ValidationError

# RFC 7230 token characters, as required for W3C baggage keys
KEY_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
ID_PATTERN = re.compile(r"^[0-9A-Za-z]+$")


@dataclass(frozen=True)
class BaggageLimits:
    """Size bounds enforced on baggage entries."""
    max_key_length: int = 256
    max_value_length: int = 4096
    max_entries: int = 180


DEFAULT_BAGGAGE_LIMITS = BaggageLimits()


def _has_control_chars(value: str) -> bool:
    for ch in value:
        code = ord(ch)
        if code < 0x20 or 0x7F <= code <= 0x9F:
            return True
    return False


def _check_format(key: str, value: str) -> None:
    if not isinstance(key, str) or not isinstance(value, str):
        raise ValidationError("Baggage keys and values must be strings")
    if not key or not KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid baggage key: {key!r}")
    if _has_control_chars(value):
        raise ValidationError(f"Baggage value for {key!r} contains control characters")


def validate_baggage_entry(
    key: str,
    value: str,
    limits: BaggageLimits = DEFAULT_BAGGAGE_LIMITS,
) -> None:
    """Raise ValidationError if the entry may not travel as baggage."""
    _check_format(key, value)
    if len(key) > limits.max_key_length:
        raise ValidationError(
            f"Baggage key {key!r} exceeds {limits.max_key_length} characters"
        )
    if len(value) > limits.max_value_length:
        raise ValidationError(
            f"Baggage value for {key!r} exceeds {limits.max_value_length} characters"
        )


@dataclass(frozen=True)
class TraceCarrier:
    """
    Trace context for one logical request.

    A carrier without a span id has not started a trace yet; the next span
    started from it becomes a root. Derived carriers are new values, the
    original is never mutated.
    """
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    baggage: Mapping[str, str] = field(default_factory=dict, hash=False)
    sampled: bool = True

    def __post_init__(self):
        if bool(self.trace_id) != bool(self.span_id):
            raise ValidationError("trace_id and span_id must be set together")
        for name in ("trace_id", "span_id"):
            value = getattr(self, name)
            if value is not None and (not ID_PATTERN.match(value) or set(value) == {"0"}):
                raise ValidationError(f"Invalid {name}: {value!r}")
        if self.span_id is None:
            # No sampling decision exists before the root span
            object.__setattr__(self, "sampled", True)

        # Size bounds are configurable and checked where entries are added
        entries = dict(self.baggage)
        for key, value in entries.items():
            _check_format(key, value)
        object.__setattr__(self, "baggage", MappingProxyType(entries))

    @property
    def has_span(self) -> bool:
        """True once a span has been started from this carrier's lineage."""
        return self.span_id is not None

    def get_baggage(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.baggage.get(key, default)

    def with_baggage(
        self,
        key: str,
        value: str,
        limits: BaggageLimits = DEFAULT_BAGGAGE_LIMITS,
    ) -> "TraceCarrier":
        """Return a new carrier with the baggage key set or overwritten."""
        validate_baggage_entry(key, value, limits)
        entries: Dict[str, str] = dict(self.baggage)
        if key not in entries and len(entries) >= limits.max_entries:
            raise ValidationError(f"Baggage is limited to {limits.max_entries} entries")
        entries[key] = value
        return replace(self, baggage=entries)

    def without_baggage(self, key: str) -> "TraceCarrier":
        entries = {k: v for k, v in self.baggage.items() if k != key}
        return replace(self, baggage=entries)

    def child(self, span_id: str, trace_id: str, sampled: bool) -> "TraceCarrier":
        """Derive the carrier handed to work running under a new span."""
        return replace(self, trace_id=trace_id, span_id=span_id, sampled=sampled)

    def to_dict(self) -> dict:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "baggage": dict(self.baggage),
            "sampled": self.sampled,
        }

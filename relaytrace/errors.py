"""
relaytrace error hierarchy.

Telemetry failures must never fail the operation being observed, so only
ValidationError is surfaced to callers. The other kinds are recovered
locally by the propagation and export layers.
"""

from __future__ import annotations


class RelayTraceError(Exception):
    """Base class for all relaytrace errors."""


class ValidationError(RelayTraceError, ValueError):
    """Raised when a baggage key or value is malformed or too large."""


class PropagationDecodeFailure(RelayTraceError):
    """Raised when an inbound propagation header cannot be decoded."""

    def __init__(self, header: str, value: str, reason: str):
        super().__init__(f"Invalid {header} header {value!r}: {reason}")
        self.header = header
        self.value = value
        self.reason = reason


class TransmissionFailure(RelayTraceError):
    """Raised when a batch cannot be delivered to the collector."""

    def __init__(self, message: str, batch_size: int = 0):
        super().__init__(message)
        self.batch_size = batch_size

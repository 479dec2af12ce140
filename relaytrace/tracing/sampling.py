"""
relaytrace Trace Sampling Strategies

Head-based samplers, evaluated once when a trace's root span starts:
- Always on/off
- Trace-id ratio (deterministic across processes)
- Parent-based
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from relaytrace.config import SamplerSettings

logger = structlog.get_logger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class Sampler(ABC):
    """Base class for trace samplers. Samplers are pure and never raise."""

    @abstractmethod
    def should_sample(
        self,
        trace_id: str,
        parent_sampled: Optional[bool] = None,
    ) -> bool:
        """
        Decide whether a trace is kept.

        Args:
            trace_id: Trace ID
            parent_sampled: Sampling flag inherited from an existing carrier,
                None for a trace root

        Returns:
            True to record and export the trace
        """
        pass

    @property
    def description(self) -> str:
        """Human-readable description of the sampler."""
        return self.__class__.__name__


class AlwaysOnSampler(Sampler):
    """Always sample all traces."""

    def should_sample(self, trace_id: str, parent_sampled: Optional[bool] = None) -> bool:
        return True

    @property
    def description(self) -> str:
        return "AlwaysOnSampler"


class AlwaysOffSampler(Sampler):
    """Never sample any traces."""

    def should_sample(self, trace_id: str, parent_sampled: Optional[bool] = None) -> bool:
        return False

    @property
    def description(self) -> str:
        return "AlwaysOffSampler"


def trace_id_to_int(trace_id: str) -> int:
    """
    Map a trace ID onto [0, 2**64).

    Hex IDs use their last 16 hex chars, as other tracers do, so every
    service evaluating the same trace reaches the same decision. Other IDs
    are hashed first.
    """
    if trace_id and all(ch in _HEX_DIGITS for ch in trace_id):
        return int(trace_id[-16:], 16)
    digest = hashlib.sha256((trace_id or "").encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


class TraceIdRatioSampler(Sampler):
    """
    Sample traces based on trace ID ratio.

    Uses a deterministic algorithm based on trace ID to ensure
    all spans in a trace are sampled consistently.
    """

    def __init__(self, ratio: float = 1.0):
        if not 0.0 <= ratio <= 1.0:
            raise ValueError("Ratio must be between 0.0 and 1.0")
        self.ratio = ratio
        self._bound = int(ratio * (1 << 64))

    def should_sample(self, trace_id: str, parent_sampled: Optional[bool] = None) -> bool:
        if self.ratio >= 1.0:
            return True
        if self.ratio <= 0.0:
            return False
        return trace_id_to_int(trace_id) < self._bound

    @property
    def description(self) -> str:
        return f"TraceIdRatioSampler(ratio={self.ratio})"


class ParentBasedSampler(Sampler):
    """
    Sample based on the parent's sampling decision.

    If a parent flag is inherited it is honored as-is.
    For root spans, delegates to another sampler.
    """

    def __init__(self, root_sampler: Sampler = None):
        self.root_sampler = root_sampler or AlwaysOnSampler()

    def should_sample(self, trace_id: str, parent_sampled: Optional[bool] = None) -> bool:
        if parent_sampled is None:
            return self.root_sampler.should_sample(trace_id, None)
        return parent_sampled

    @property
    def description(self) -> str:
        return f"ParentBasedSampler(root={self.root_sampler.description})"


def always() -> Sampler:
    return AlwaysOnSampler()


def never() -> Sampler:
    return AlwaysOffSampler()


def ratio(p: float) -> Sampler:
    return TraceIdRatioSampler(p)


def parent_based(inner: Sampler) -> Sampler:
    return ParentBasedSampler(root_sampler=inner)


def decide(trace_id: str, policy: Sampler, parent_sampled: Optional[bool] = None) -> bool:
    """Apply a sampling policy to a trace."""
    return policy.should_sample(trace_id, parent_sampled)


def _create_leaf(policy: str, ratio_value: float) -> Sampler:
    if policy == "always_on":
        return AlwaysOnSampler()
    elif policy == "always_off":
        return AlwaysOffSampler()
    elif policy == "ratio":
        return TraceIdRatioSampler(ratio_value)
    else:
        logger.warning(f"Unknown sampler type: {policy}, using AlwaysOn")
        return AlwaysOnSampler()


def create_sampler(settings: "SamplerSettings") -> Sampler:
    """
    Create a sampler from configuration.

    Examples:
        SamplerSettings(policy="always_on")
        SamplerSettings(policy="ratio", ratio=0.5)
        SamplerSettings(policy="parent_based", root="ratio", ratio=0.5)
    """
    if settings.policy == "parent_based":
        return ParentBasedSampler(root_sampler=_create_leaf(settings.root, settings.ratio))
    return _create_leaf(settings.policy, settings.ratio)

"""
relaytrace Export

Bounded queue, batching sink and span transmitters.
"""

from relaytrace.export.queue import BoundedQueue
from relaytrace.export.sink import BatchExportSink
from relaytrace.export.transport import (
    ConsoleTransmitter,
    InMemoryTransmitter,
    OTLPHTTPTransmitter,
    SpanTransmitter,
)

__all__ = [
    "BoundedQueue",
    "BatchExportSink",
    "SpanTransmitter",
    "OTLPHTTPTransmitter",
    "ConsoleTransmitter",
    "InMemoryTransmitter",
]

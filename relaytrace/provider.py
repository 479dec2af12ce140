"""
relaytrace Telemetry Provider

Wires resource, sampler, transmitter, sink, accumulator and tracer from
settings. One provider is built at process start and passed explicitly to
whatever emits spans; there is no process-wide singleton.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from relaytrace.config import TelemetrySettings
from relaytrace.export.sink import BatchExportSink
from relaytrace.export.transport import (
    ConsoleTransmitter,
    InMemoryTransmitter,
    OTLPHTTPTransmitter,
    SpanTransmitter,
)
from relaytrace.resource import Resource, detect_resource
from relaytrace.tracing.accumulator import SpanTreeAccumulator
from relaytrace.tracing.carrier import BaggageLimits
from relaytrace.tracing.propagation import (
    BaggagePropagator,
    CompositePropagator,
    TraceContextPropagator,
)
from relaytrace.tracing.sampling import create_sampler
from relaytrace.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)


def create_transmitter(settings: TelemetrySettings, resource: Resource) -> SpanTransmitter:
    """Build the transmitter named by settings.exporter.kind."""
    exporter = settings.exporter

    if exporter.kind == "console":
        return ConsoleTransmitter()
    elif exporter.kind == "memory":
        return InMemoryTransmitter()

    return OTLPHTTPTransmitter(
        endpoint=exporter.endpoint,
        resource=resource,
        headers=exporter.headers,
        timeout=exporter.timeout,
        compression=exporter.compression,
    )


class TelemetryProvider:
    """
    Owns the tracing pipeline of one process.

    Usage:
        async with TelemetryProvider(settings) as telemetry:
            carrier, span = telemetry.tracer.start_span(TraceCarrier(), "work")
            ...
        # every exit path drains the sink within the shutdown deadline
    """

    def __init__(
        self,
        settings: Optional[TelemetrySettings] = None,
        transmitter: Optional[SpanTransmitter] = None,
        resource: Optional[Resource] = None,
    ):
        self.settings = settings or TelemetrySettings()
        self.resource = resource or detect_resource(self.settings)
        self.baggage_limits: BaggageLimits = self.settings.baggage.to_limits()

        self.transmitter = transmitter or create_transmitter(self.settings, self.resource)
        self.sampler = create_sampler(self.settings.sampler)

        exporter = self.settings.exporter
        batch = self.settings.batch
        self.sink = BatchExportSink(
            self.transmitter,
            queue_capacity=batch.queue_capacity,
            max_batch_size=batch.max_batch_size,
            flush_interval=batch.flush_interval,
            max_retries=exporter.max_retries,
            retry_backoff=exporter.retry_backoff,
            max_backoff=exporter.max_backoff,
            export_timeout=exporter.timeout,
            shutdown_timeout=batch.shutdown_timeout,
        )
        self.accumulator = SpanTreeAccumulator(self.sink)
        self.tracer = Tracer(
            self.accumulator,
            sampler=self.sampler,
            max_attributes_per_span=self.settings.max_attributes_per_span,
            max_events_per_span=self.settings.max_events_per_span,
        )
        self.propagator = CompositePropagator([
            TraceContextPropagator(),
            BaggagePropagator(self.baggage_limits),
        ])

        self._started = False

    @property
    def service_name(self) -> str:
        return self.resource.service_name

    async def start(self) -> None:
        if self._started:
            return

        logger.info(
            "Starting telemetry",
            service_name=self.service_name,
            sampler=self.sampler.description,
            exporter=self.settings.exporter.kind,
        )
        await self.sink.start()
        self._started = True

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Close spans left open, then drain and release the sink."""
        cancelled = self.accumulator.cancel_all()
        if cancelled:
            logger.warning("Closed spans left open at shutdown", count=cancelled)
        await self.sink.shutdown(timeout)
        self._started = False

    async def __aenter__(self) -> "TelemetryProvider":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracer": self.tracer.get_stats(),
            "sink": self.sink.get_stats(),
        }

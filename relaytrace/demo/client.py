"""
relaytrace Example Client

Sends one traced request to the example server, carrying baggage along
with the trace context.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from relaytrace.config import TelemetrySettings
from relaytrace.provider import TelemetryProvider
from relaytrace.tracing.carrier import TraceCarrier
from relaytrace.tracing.propagation import CompositePropagator, parse_baggage
from relaytrace.tracing.span import SpanKind, SpanStatus
from relaytrace.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)

CLIENT_NAME = "otel-example-client"
DEFAULT_SERVER_URL = "http://localhost:8080/packages/123"
DEFAULT_BAGGAGE = "destination=newyork,transportation=truck"
ROOT_SPAN_NAME = "Otel propagation example: sending package from boston"

CARRIER_EXTENSION = "trace_carrier"


class TracingTransport(httpx.AsyncBaseTransport):
    """
    httpx transport that wraps each request in a CLIENT span.

    The carrier to continue is passed per request:
        client.get(url, extensions={"trace_carrier": carrier})
    Requests without one start a new trace.
    """

    def __init__(
        self,
        tracer: Tracer,
        propagator: Optional[CompositePropagator] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tracer = tracer
        self.propagator = propagator or CompositePropagator()
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        carrier = request.extensions.get(CARRIER_EXTENSION) or TraceCarrier()

        child, span = self.tracer.start_span(
            carrier,
            name=f"HTTP {request.method}",
            kind=SpanKind.CLIENT,
            attributes={
                "http.method": request.method,
                "http.url": str(request.url),
                "net.peer.name": request.url.host,
            },
        )

        for key, value in self.propagator.inject(child).items():
            request.headers[key] = value

        with self.tracer.use_span(span):
            response = await self._transport.handle_async_request(request)
            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 400:
                span.set_status(SpanStatus.ERROR, f"HTTP {response.status_code}")
            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


async def run_client(
    url: str = DEFAULT_SERVER_URL,
    settings: Optional[TelemetrySettings] = None,
    telemetry: Optional[TelemetryProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Request a package from the example server and return the reply body.

    The exporter is drained before returning, so the client's spans reach
    the collector even though the process exits right after.
    """
    if telemetry is None:
        telemetry = TelemetryProvider(settings or TelemetrySettings(service_name=CLIENT_NAME))

    carrier = parse_baggage(DEFAULT_BAGGAGE, telemetry.baggage_limits)

    async with telemetry:
        tracing_transport = TracingTransport(
            telemetry.tracer,
            propagator=telemetry.propagator,
            transport=transport,
        )
        async with httpx.AsyncClient(transport=tracing_transport) as client:
            async with telemetry.tracer.async_span(
                carrier,
                ROOT_SPAN_NAME,
                attributes={"peer.service": "otel-example-server"},
            ) as (carrier, span):
                span.add_event("Sending request...")
                response = await client.get(url, extensions={CARRIER_EXTENSION: carrier})
                body = response.text
                span.add_event("Request received")

        logger.info(
            "Response received",
            status_code=response.status_code,
            trace_id=carrier.trace_id,
        )

    return body

"""
relaytrace Example Server

Package lookup service continuing the caller's trace:

    GET /packages/{id}  ->  "package is found package (id 123)"
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from relaytrace.config import TelemetrySettings
from relaytrace.demo.middleware import TracingMiddleware
from relaytrace.export.transport import SpanTransmitter
from relaytrace.provider import TelemetryProvider
from relaytrace.tracing.carrier import TraceCarrier
from relaytrace.tracing.tracer import Tracer

logger = structlog.get_logger(__name__)

SERVER_NAME = "otel-example-server"
KNOWN_PACKAGE = "123"

_PACKAGE_ID = re.compile(r"^[0-9]+$")


def lookup_package(tracer: Tracer, carrier: TraceCarrier, package_id: str) -> str:
    """Resolve a package under a getPackage span."""
    with tracer.span(carrier, "getPackage") as (_, span):
        span.add_event("getPackage", {"package": package_id})
        if package_id == KNOWN_PACKAGE:
            span.add_event("found package")
            return "found package"
        span.record_exception(LookupError("package not found"))
        return "unknown"


def create_app(
    settings: Optional[TelemetrySettings] = None,
    transmitter: Optional[SpanTransmitter] = None,
) -> FastAPI:
    """
    Create the example FastAPI application.

    Args:
        settings: Telemetry settings (defaults read from the environment)
        transmitter: Optional transmitter override, e.g. for tests

    Returns:
        Configured FastAPI application
    """
    if settings is None:
        settings = TelemetrySettings(service_name=SERVER_NAME)

    telemetry = TelemetryProvider(settings, transmitter=transmitter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting example server", service_name=telemetry.service_name)
        await telemetry.start()

        yield

        logger.info("Shutting down example server")
        await telemetry.shutdown()

    app = FastAPI(title="relaytrace example server", lifespan=lifespan)
    app.state.telemetry = telemetry
    app.add_middleware(TracingMiddleware, telemetry=telemetry)

    @app.get("/packages/{package_id}", response_class=PlainTextResponse)
    async def get_package(package_id: str, request: Request) -> str:
        if not _PACKAGE_ID.match(package_id):
            raise HTTPException(status_code=404, detail="Not Found")

        carrier: TraceCarrier = request.state.trace_carrier
        result = lookup_package(telemetry.tracer, carrier, package_id)

        request.state.span.add_event("Obtaining package", {
            "destination": carrier.get_baggage("destination", ""),
            "transportation": carrier.get_baggage("transportation", ""),
        })

        return f"package is {result} (id {package_id})\n"

    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 8080,
    settings: Optional[TelemetrySettings] = None,
) -> None:
    """Serve the example application with uvicorn until interrupted."""
    app = create_app(settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        timeout_graceful_shutdown=5,
        log_level="warning",
    )

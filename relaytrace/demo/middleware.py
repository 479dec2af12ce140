"""
relaytrace Tracing Middleware

Starlette middleware that continues the caller's trace for every request.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable, List

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from relaytrace.tracing.accumulator import CANCELLED_MESSAGE
from relaytrace.tracing.carrier import TraceCarrier
from relaytrace.tracing.span import SpanKind, SpanStatus

if TYPE_CHECKING:
    from relaytrace.provider import TelemetryProvider

logger = structlog.get_logger(__name__)


def route_template(request: Request) -> str:
    """Matched route path (e.g. /packages/{package_id}), else the raw path."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Per-request SERVER span.

    The extracted carrier and the span handle are stored on
    request.state.trace_carrier and request.state.span for handlers.
    A malformed traceparent starts a new trace.
    """

    def __init__(
        self,
        app: ASGIApp,
        telemetry: "TelemetryProvider",
        exclude_paths: List[str] = None,
    ):
        super().__init__(app)
        self.telemetry = telemetry
        self.exclude_paths = exclude_paths or ["/health", "/favicon.ico"]

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        inbound = self.telemetry.propagator.extract(dict(request.headers))
        if inbound is None:
            inbound = TraceCarrier()

        carrier, span = self.telemetry.tracer.start_span(
            inbound,
            name=f"{request.method} {request.url.path}",
            kind=SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.url": str(request.url),
                "http.scheme": request.url.scheme,
                "http.host": request.url.hostname or "",
                "http.user_agent": request.headers.get("user-agent", ""),
                "net.peer.ip": request.client.host if request.client else "",
            },
        )
        request.state.trace_carrier = carrier
        request.state.span = span

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
            span.set_status(SpanStatus.ERROR, CANCELLED_MESSAGE)
            raise

        except Exception as e:
            span.record_exception(e, escaped=True)
            raise

        finally:
            route = route_template(request)
            span.update_name(f"{request.method} {route}")
            span.set_attribute("http.route", route)
            span.set_attribute("http.status_code", status_code)

            if span.status == SpanStatus.UNSET:
                if status_code >= 500:
                    span.set_status(SpanStatus.ERROR, f"HTTP {status_code}")
                else:
                    span.set_status(SpanStatus.OK)
            span.end()

            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                trace_id=carrier.trace_id,
            )

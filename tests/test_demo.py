"""
relaytrace Example Application Tests

Tests cover: the traced package server, the tracing httpx transport,
the example client and the CLI.
"""

import httpx
import pytest

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
PARENT_SPAN_ID = "00f067aa0ba902b7"


def make_settings(service_name: str):
    from relaytrace.config import ExporterSettings, TelemetrySettings

    return TelemetrySettings(
        service_name=service_name,
        exporter=ExporterSettings(kind="memory"),
    )


# =============================================================================
# Server Tests
# =============================================================================

class TestPackageServer:
    """Test the example FastAPI server."""

    def _get(self, path: str, headers: dict = None):
        from fastapi.testclient import TestClient

        from relaytrace.demo.server import create_app
        from relaytrace.export.transport import InMemoryTransmitter

        transmitter = InMemoryTransmitter()
        app = create_app(make_settings("otel-example-server"), transmitter=transmitter)

        with TestClient(app) as client:
            response = client.get(path, headers=headers or {})

        # Leaving the client runs the lifespan shutdown, which drains the sink
        return response, {s.name: s for s in transmitter.get_spans()}

    def test_known_package(self):
        response, spans = self._get(
            "/packages/123",
            headers={
                "traceparent": f"00-{TRACE_ID}-{PARENT_SPAN_ID}-01",
                "baggage": "destination=newyork,transportation=truck",
            },
        )

        assert response.status_code == 200
        assert response.text == "package is found package (id 123)\n"

        server = spans["GET /packages/{package_id}"]
        lookup = spans["getPackage"]

        assert server.trace_id == TRACE_ID
        assert server.parent_span_id == PARENT_SPAN_ID
        assert server.kind.value == "server"
        assert server.attributes["http.status_code"] == 200
        assert server.attributes["http.route"] == "/packages/{package_id}"

        obtaining = [e for e in server.events if e.name == "Obtaining package"][0]
        assert obtaining.attributes == {"destination": "newyork", "transportation": "truck"}

        assert lookup.trace_id == TRACE_ID
        assert lookup.parent_span_id == server.span_id
        assert [e.name for e in lookup.events] == ["getPackage", "found package"]
        assert lookup.events[0].attributes["package"] == "123"
        assert lookup.status.value == "ok"

    def test_unknown_package(self):
        response, spans = self._get("/packages/999")

        assert response.text == "package is unknown (id 999)\n"

        lookup = spans["getPackage"]
        assert lookup.status.value == "error"
        assert lookup.status_message == "package not found"
        assert lookup.events[-1].name == "exception"

    def test_missing_baggage(self):
        """Without baggage the event carries empty values."""
        _, spans = self._get("/packages/123")

        server = spans["GET /packages/{package_id}"]
        obtaining = [e for e in server.events if e.name == "Obtaining package"][0]
        assert obtaining.attributes == {"destination": "", "transportation": ""}
        assert server.is_root

    def test_non_numeric_id(self):
        response, spans = self._get("/packages/abc")

        assert response.status_code == 404
        assert "getPackage" not in spans

        server = spans["GET /packages/{package_id}"]
        assert server.attributes["http.status_code"] == 404
        assert server.status.value == "ok"

    def test_malformed_traceparent_starts_new_trace(self):
        _, spans = self._get(
            "/packages/123",
            headers={"traceparent": "not-a-traceparent", "baggage": "destination=newyork"},
        )

        server = spans["GET /packages/{package_id}"]
        assert server.trace_id != TRACE_ID
        assert server.is_root

        obtaining = [e for e in server.events if e.name == "Obtaining package"][0]
        assert obtaining.attributes["destination"] == ""

    def test_unsampled_caller(self):
        """A caller's 00 flag suppresses the server's spans."""
        _, spans = self._get(
            "/packages/123",
            headers={"traceparent": f"00-{TRACE_ID}-{PARENT_SPAN_ID}-00"},
        )

        assert spans == {}


class TestLookupPackage:
    """Test the package lookup directly."""

    def test_lookup(self):
        from relaytrace.demo.server import lookup_package
        from relaytrace.tracing.accumulator import SpanTreeAccumulator
        from relaytrace.tracing.carrier import TraceCarrier
        from relaytrace.tracing.tracer import Tracer

        tracer = Tracer(SpanTreeAccumulator())

        assert lookup_package(tracer, TraceCarrier(), "123") == "found package"
        assert lookup_package(tracer, TraceCarrier(), "124") == "unknown"
        assert tracer.get_stats()["open_spans"] == 0


# =============================================================================
# Client Tests
# =============================================================================

class TestTracingTransport:
    """Test the tracing httpx transport."""

    @pytest.mark.asyncio
    async def test_injects_headers(self):
        from relaytrace.demo.client import TracingTransport
        from relaytrace.provider import TelemetryProvider
        from relaytrace.tracing.propagation import parse_baggage

        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, text="ok")

        telemetry = TelemetryProvider(make_settings("otel-example-client"))
        transport = TracingTransport(
            telemetry.tracer,
            propagator=telemetry.propagator,
            transport=httpx.MockTransport(handler),
        )
        carrier = parse_baggage("destination=newyork,transportation=truck")

        async with telemetry:
            async with httpx.AsyncClient(transport=transport) as client:
                await client.get(
                    "http://server/packages/123",
                    extensions={"trace_carrier": carrier},
                )

        span = telemetry.transmitter.get_by_name("HTTP GET")[0]
        assert seen["traceparent"] == f"00-{span.trace_id}-{span.span_id}-01"
        assert seen["baggage"] == "destination=newyork,transportation=truck"
        assert span.kind.value == "client"
        assert span.attributes["http.status_code"] == 200
        assert span.status.value == "ok"

    @pytest.mark.asyncio
    async def test_error_status(self):
        from relaytrace.demo.client import TracingTransport
        from relaytrace.provider import TelemetryProvider

        telemetry = TelemetryProvider(make_settings("otel-example-client"))
        transport = TracingTransport(
            telemetry.tracer,
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        async with telemetry:
            async with httpx.AsyncClient(transport=transport) as client:
                await client.get("http://server/packages/123")

        span = telemetry.transmitter.get_by_name("HTTP GET")[0]
        assert span.is_root
        assert span.status.value == "error"
        assert span.status_message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        from relaytrace.demo.client import TracingTransport
        from relaytrace.provider import TelemetryProvider

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        telemetry = TelemetryProvider(make_settings("otel-example-client"))
        transport = TracingTransport(telemetry.tracer, transport=httpx.MockTransport(handler))

        async with telemetry:
            async with httpx.AsyncClient(transport=transport) as client:
                with pytest.raises(httpx.ConnectError):
                    await client.get("http://server/packages/123")

        span = telemetry.transmitter.get_by_name("HTTP GET")[0]
        assert span.status.value == "error"
        assert span.events[0].attributes["exception.type"] == "ConnectError"


class TestRunClient:
    """Test the example client end to end."""

    @pytest.mark.asyncio
    async def test_client_against_server(self):
        """Client and server spans join into one trace."""
        from relaytrace.demo.client import ROOT_SPAN_NAME, run_client
        from relaytrace.demo.server import create_app
        from relaytrace.export.transport import InMemoryTransmitter
        from relaytrace.provider import TelemetryProvider

        server_spans = InMemoryTransmitter()
        app = create_app(make_settings("otel-example-server"), transmitter=server_spans)
        telemetry = TelemetryProvider(make_settings("otel-example-client"))

        body = await run_client(
            "http://testserver/packages/123",
            telemetry=telemetry,
            transport=httpx.ASGITransport(app=app),
        )
        await app.state.telemetry.shutdown()

        assert body == "package is found package (id 123)\n"

        root = telemetry.transmitter.get_by_name(ROOT_SPAN_NAME)[0]
        request_span = telemetry.transmitter.get_by_name("HTTP GET")[0]
        server = server_spans.get_by_name("GET /packages/{package_id}")[0]
        lookup = server_spans.get_by_name("getPackage")[0]

        assert root.is_root
        assert root.attributes["peer.service"] == "otel-example-server"
        assert [e.name for e in root.events] == ["Sending request...", "Request received"]

        assert request_span.parent_span_id == root.span_id
        assert server.parent_span_id == request_span.span_id
        assert lookup.parent_span_id == server.span_id
        assert {root.trace_id, request_span.trace_id, server.trace_id, lookup.trace_id} == {
            root.trace_id
        }

        obtaining = [e for e in server.events if e.name == "Obtaining package"][0]
        assert obtaining.attributes == {"destination": "newyork", "transportation": "truck"}


# =============================================================================
# CLI Tests
# =============================================================================

class TestCLI:
    """Test the command line interface."""

    def test_no_command_prints_help(self, capsys):
        from relaytrace.cli import main

        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_load_settings_default_name(self, monkeypatch):
        from relaytrace.cli import load_settings

        monkeypatch.delenv("RELAYTRACE_SERVICE_NAME", raising=False)

        assert load_settings("otel-example-client").service_name == "otel-example-client"

    def test_load_settings_env_name_kept(self, monkeypatch):
        from relaytrace.cli import load_settings

        monkeypatch.setenv("RELAYTRACE_SERVICE_NAME", "custom")

        assert load_settings("otel-example-client").service_name == "custom"

    @pytest.mark.asyncio
    async def test_client_failure_exit_code(self):
        from unittest.mock import AsyncMock, patch

        from relaytrace.cli import cmd_client

        request = httpx.Request("GET", "http://localhost:8080/packages/123")
        failing = AsyncMock(side_effect=httpx.ConnectError("refused", request=request))

        with patch("relaytrace.demo.client.run_client", new=failing):
            assert await cmd_client(request.url, make_settings("otel-example-client")) == 1

    @pytest.mark.asyncio
    async def test_client_success_prints_reply(self, capsys):
        from unittest.mock import AsyncMock, patch

        from relaytrace.cli import cmd_client

        reply = AsyncMock(return_value="package is found package (id 123)\n")

        with patch("relaytrace.demo.client.run_client", new=reply):
            assert await cmd_client("http://server", make_settings("c")) == 0

        assert "Response Received: package is found package (id 123)" in capsys.readouterr().out

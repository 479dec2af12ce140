"""
relaytrace Command Line Interface

Runs the example server and client pair.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import httpx

from relaytrace.config import TelemetrySettings
from relaytrace.logging_config import setup_logging


def load_settings(service_name: str, config_path: Optional[str] = None) -> TelemetrySettings:
    """Load settings, defaulting the service name when none is configured."""
    if config_path:
        settings = TelemetrySettings.from_file(Path(config_path))
    else:
        settings = TelemetrySettings()

    if "service_name" not in settings.model_fields_set:
        settings = settings.model_copy(update={"service_name": service_name})
    return settings


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="relaytrace",
        description="relaytrace - trace propagation example server and client",
    )
    parser.add_argument("--config", help="JSON settings file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start the example server")
    server_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    server_parser.add_argument("--port", type=int, default=8080, help="Port")

    # Client command
    client_parser = subparsers.add_parser("client", help="Send a traced request")
    client_parser.add_argument(
        "--server",
        default="http://localhost:8080/packages/123",
        help="Server URL",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "server":
        from relaytrace.demo.server import SERVER_NAME, run_server

        settings = load_settings(SERVER_NAME, args.config)
        setup_logging(settings.log_level.value, settings.log_json)
        run_server(host=args.host, port=args.port, settings=settings)
        return 0

    elif args.command == "client":
        from relaytrace.demo.client import CLIENT_NAME

        settings = load_settings(CLIENT_NAME, args.config)
        setup_logging(settings.log_level.value, settings.log_json)
        return asyncio.run(cmd_client(args.server, settings))

    return 0


async def cmd_client(url: str, settings: TelemetrySettings) -> int:
    """Send one traced request and print the reply."""
    from relaytrace.demo.client import run_client

    try:
        body = await run_client(url, settings)
    except httpx.HTTPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Response Received: {body}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Resource Detection.

Describes the process emitting spans: service identity, host, process,
telemetry SDK and anything listed in OTEL_RESOURCE_ATTRIBUTES.
"""

from __future__ import annotations

import getpass
import os
import platform
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import unquote

import structlog

if TYPE_CHECKING:
    from relaytrace.config import TelemetrySettings

logger = structlog.get_logger(__name__)


class ResourceAttributes:
    """Semantic convention keys for resources."""
    SERVICE_NAME = "service.name"
    SERVICE_VERSION = "service.version"

    TELEMETRY_SDK_NAME = "telemetry.sdk.name"
    TELEMETRY_SDK_LANGUAGE = "telemetry.sdk.language"
    TELEMETRY_SDK_VERSION = "telemetry.sdk.version"

    HOST_ID = "host.id"
    HOST_NAME = "host.name"
    HOST_ARCH = "host.arch"

    PROCESS_PID = "process.pid"
    PROCESS_PARENT_PID = "process.parent_pid"
    PROCESS_EXECUTABLE_NAME = "process.executable.name"
    PROCESS_EXECUTABLE_PATH = "process.executable.path"
    PROCESS_OWNER = "process.owner"
    PROCESS_RUNTIME_NAME = "process.runtime.name"
    PROCESS_RUNTIME_VERSION = "process.runtime.version"

    DEPLOYMENT_ENVIRONMENT = "deployment.environment"


@dataclass
class Resource:
    """Represents a resource with attributes."""
    attributes: Dict[str, Any] = field(default_factory=dict)
    schema_url: str = ""

    def merge(self, other: "Resource") -> "Resource":
        """Merge with another resource (other takes precedence)."""
        merged = dict(self.attributes)
        merged.update(other.attributes)
        return Resource(attributes=merged, schema_url=other.schema_url or self.schema_url)

    @property
    def service_name(self) -> str:
        return self.attributes.get(ResourceAttributes.SERVICE_NAME, "unknown_service")


class ResourceDetector(ABC):
    """Base class for resource detectors."""

    @abstractmethod
    def detect(self) -> Resource:
        """Detect resource attributes."""
        pass


class ServiceResourceDetector(ResourceDetector):
    """Service identity from settings, falling back to the environment."""

    def __init__(
        self,
        service_name: str = None,
        service_version: str = None,
        environment: str = None,
    ):
        self.service_name = service_name
        self.service_version = service_version
        self.environment = environment

    def detect(self) -> Resource:
        attrs = {
            ResourceAttributes.SERVICE_NAME: (
                self.service_name
                or os.environ.get("OTEL_SERVICE_NAME")
                or os.environ.get("SERVICE_NAME")
                or "unknown_service"
            ),
        }

        if self.service_version:
            attrs[ResourceAttributes.SERVICE_VERSION] = self.service_version

        if self.environment:
            attrs[ResourceAttributes.DEPLOYMENT_ENVIRONMENT] = self.environment
            attrs["environment"] = self.environment

        return Resource(attributes=attrs)


class HostResourceDetector(ResourceDetector):
    """Detect host resource attributes."""

    def detect(self) -> Resource:
        attrs = {}
        try:
            attrs[ResourceAttributes.HOST_NAME] = socket.gethostname()
            attrs[ResourceAttributes.HOST_ARCH] = platform.machine()

            if os.path.exists("/etc/machine-id"):
                with open("/etc/machine-id") as f:
                    attrs[ResourceAttributes.HOST_ID] = f.read().strip()
        except OSError as e:
            logger.debug(f"Host detection error: {e}")

        return Resource(attributes=attrs)


class ProcessResourceDetector(ResourceDetector):
    """Detect process resource attributes."""

    def detect(self) -> Resource:
        attrs = {
            ResourceAttributes.PROCESS_PID: os.getpid(),
            ResourceAttributes.PROCESS_PARENT_PID: os.getppid(),
            ResourceAttributes.PROCESS_EXECUTABLE_NAME: os.path.basename(sys.executable),
            ResourceAttributes.PROCESS_EXECUTABLE_PATH: sys.executable,
            ResourceAttributes.PROCESS_RUNTIME_NAME: platform.python_implementation(),
            ResourceAttributes.PROCESS_RUNTIME_VERSION: platform.python_version(),
        }

        try:
            attrs[ResourceAttributes.PROCESS_OWNER] = getpass.getuser()
        except (KeyError, OSError):
            pass

        return Resource(attributes=attrs)


class TelemetrySdkResourceDetector(ResourceDetector):
    """Identify this library as the telemetry SDK."""

    def detect(self) -> Resource:
        from relaytrace import __version__

        return Resource(attributes={
            ResourceAttributes.TELEMETRY_SDK_NAME: "relaytrace",
            ResourceAttributes.TELEMETRY_SDK_LANGUAGE: "python",
            ResourceAttributes.TELEMETRY_SDK_VERSION: __version__,
        })


class EnvResourceDetector(ResourceDetector):
    """Parse OTEL_RESOURCE_ATTRIBUTES (key1=value1,key2=value2)."""

    ENV_VAR = "OTEL_RESOURCE_ATTRIBUTES"

    def detect(self) -> Resource:
        attrs = {}
        raw = os.environ.get(self.ENV_VAR, "")
        for item in raw.split(","):
            key, sep, value = item.partition("=")
            if not sep or not key.strip():
                if item.strip():
                    logger.warning("Ignoring malformed resource attribute", item=item)
                continue
            attrs[key.strip()] = unquote(value.strip())
        return Resource(attributes=attrs)


class CompositeResourceDetector(ResourceDetector):
    """Combines multiple resource detectors; later detectors win."""

    def __init__(self, detectors: List[ResourceDetector] = None):
        self.detectors = detectors or [
            TelemetrySdkResourceDetector(),
            HostResourceDetector(),
            ProcessResourceDetector(),
            EnvResourceDetector(),
            ServiceResourceDetector(),
        ]

    def detect(self) -> Resource:
        result = Resource()
        for detector in self.detectors:
            try:
                detected = detector.detect()
                result = result.merge(detected)
            except Exception as e:
                logger.debug(f"Resource detection error: {e}")
        return result


def detect_resource(settings: Optional["TelemetrySettings"] = None) -> Resource:
    """Get resource with automatic detection."""
    service = ServiceResourceDetector()
    if settings is not None:
        service = ServiceResourceDetector(
            service_name=settings.service_name,
            service_version=settings.service_version or None,
            environment=settings.environment or None,
        )

    return CompositeResourceDetector([
        TelemetrySdkResourceDetector(),
        HostResourceDetector(),
        ProcessResourceDetector(),
        EnvResourceDetector(),
        service,
    ]).detect()

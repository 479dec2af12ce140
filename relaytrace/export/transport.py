"""
Span transmitters.

The sink only relies on send(batch) -> bool. Transmitters report network
problems by raising TransmissionFailure; the sink decides about retries.
"""

from __future__ import annotations

import gzip
import json
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import httpx
import structlog

from relaytrace.errors import TransmissionFailure
from relaytrace.export.otlp import OTLPSerializer
from relaytrace.resource import Resource
from relaytrace.tracing.span import SpanRecord

logger = structlog.get_logger(__name__)


class SpanTransmitter(ABC):
    """Base class for span transmitters."""

    @abstractmethod
    async def send(self, batch: Sequence[SpanRecord]) -> bool:
        """Deliver a batch. Returns True on success."""
        pass

    async def close(self) -> None:
        """Release the transmission channel."""
        pass


class OTLPHTTPTransmitter(SpanTransmitter):
    """OTLP/HTTP JSON transmitter posting to {endpoint}/v1/traces."""

    TRACES_PATH = "/v1/traces"

    def __init__(
        self,
        endpoint: str = "http://localhost:4318",
        resource: Optional[Resource] = None,
        headers: Dict[str, str] = None,
        timeout: float = 10.0,
        compression: str = "gzip",
        client: Optional[httpx.AsyncClient] = None,
    ):
        if "://" not in endpoint:
            # Bare host:port, as commonly set in OTEL_EXPORTER_OTLP_ENDPOINT
            endpoint = f"http://{endpoint}"
        self.endpoint = endpoint.rstrip("/")
        self.resource = resource or Resource()
        self.headers = headers or {}
        self.timeout = timeout
        self.compression = compression
        self.serializer = OTLPSerializer()
        self._client = client
        self._owns_client = client is None

    @property
    def url(self) -> str:
        if self.endpoint.endswith(self.TRACES_PATH):
            return self.endpoint
        return f"{self.endpoint}{self.TRACES_PATH}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def encode(self, batch: Sequence[SpanRecord]) -> bytes:
        payload = self.serializer.serialize_traces(batch, self.resource)
        body = json.dumps(payload).encode("utf-8")
        if self.compression == "gzip":
            body = gzip.compress(body)
        return body

    async def send(self, batch: Sequence[SpanRecord]) -> bool:
        if not batch:
            return True

        headers = {"Content-Type": "application/json", **self.headers}
        if self.compression == "gzip":
            headers["Content-Encoding"] = "gzip"

        body = self.encode(batch)
        try:
            response = await self._get_client().post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransmissionFailure(
                f"Collector unreachable at {self.url}: {e}", batch_size=len(batch)
            ) from e

        if response.status_code >= 300:
            logger.warning(
                "Collector rejected batch",
                url=self.url,
                status_code=response.status_code,
                batch_size=len(batch),
            )
            return False

        logger.debug(f"Exported {len(batch)} spans", url=self.url, bytes=len(body))
        return True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class ConsoleTransmitter(SpanTransmitter):
    """Log spans instead of sending them (for debugging)."""

    async def send(self, batch: Sequence[SpanRecord]) -> bool:
        for span in batch:
            logger.info(
                "span",
                name=span.name,
                trace_id=span.trace_id,
                span_id=span.span_id,
                parent_span_id=span.parent_span_id,
                duration_ms=round(span.duration_ms, 3),
                status=span.status.value,
                events=[e.name for e in span.events],
            )
        return True


class InMemoryTransmitter(SpanTransmitter):
    """
    In-memory transmitter for testing.

    Stores spans in memory for inspection.
    """

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._spans: List[SpanRecord] = []
        self.batches = 0

    async def send(self, batch: Sequence[SpanRecord]) -> bool:
        self._spans.extend(batch)
        self.batches += 1

        if len(self._spans) > self.max_size:
            self._spans = self._spans[-self.max_size:]

        return True

    def get_spans(self) -> List[SpanRecord]:
        return list(self._spans)

    def get_by_name(self, name: str) -> List[SpanRecord]:
        return [s for s in self._spans if s.name == name]

    def clear(self) -> None:
        self._spans.clear()

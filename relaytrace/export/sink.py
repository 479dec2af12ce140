"""
relaytrace Exporter Sink

Batches closed spans and ships them to the collector from a background
task:
- Non-blocking enqueue from any thread, oldest-drop on overflow
- Flush on size threshold or timer, whichever comes first
- Bounded retry with exponential backoff, then drop
- Deadline-bounded drain on shutdown
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from relaytrace.errors import TransmissionFailure
from relaytrace.export.queue import BoundedQueue
from relaytrace.export.transport import SpanTransmitter
from relaytrace.tracing.span import SpanRecord

logger = structlog.get_logger(__name__)


@dataclass
class SinkStats:
    """Statistics for the sink."""
    spans_enqueued: int = 0
    spans_exported: int = 0
    spans_dropped_export: int = 0
    spans_dropped_after_shutdown: int = 0
    spans_dropped_shutdown: int = 0

    flush_count: int = 0
    export_success: int = 0
    export_failures: int = 0
    export_retries: int = 0

    last_flush_time: Optional[datetime] = None
    last_export_duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "spans_enqueued": self.spans_enqueued,
            "spans_exported": self.spans_exported,
            "spans_dropped_export": self.spans_dropped_export,
            "spans_dropped_after_shutdown": self.spans_dropped_after_shutdown,
            "spans_dropped_shutdown": self.spans_dropped_shutdown,
            "flush_count": self.flush_count,
            "export_success": self.export_success,
            "export_failures": self.export_failures,
            "export_retries": self.export_retries,
            "last_flush_time": self.last_flush_time.isoformat() if self.last_flush_time else None,
            "last_export_duration_ms": self.last_export_duration_ms,
        }


class BatchExportSink:
    """
    Batching span exporter.

    enqueue() may be called from any thread. The flush task runs on the
    event loop that called start().
    """

    def __init__(
        self,
        transmitter: SpanTransmitter,
        queue_capacity: int = 2048,
        max_batch_size: int = 512,
        flush_interval: float = 5.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        max_backoff: float = 5.0,
        export_timeout: float = 30.0,
        shutdown_timeout: float = 30.0,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if max_batch_size > queue_capacity:
            raise ValueError("max_batch_size cannot exceed queue_capacity")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.transmitter = transmitter
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self.export_timeout = export_timeout
        self.shutdown_timeout = shutdown_timeout

        self._queue: BoundedQueue[SpanRecord] = BoundedQueue(queue_capacity)
        self._inflight: List[SpanRecord] = []
        self._stats = SinkStats()
        self._stats_lock = threading.Lock()

        # Background task
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._flush_lock: Optional[asyncio.Lock] = None

        # Guards _accepting together with the put that follows the check
        self._accept_lock = threading.Lock()
        self._accepting = True
        self._closing = False
        self._closed = False

    @property
    def queue_capacity(self) -> int:
        return self._queue.capacity

    @property
    def is_running(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def start(self) -> None:
        """Start the background flush task on the running loop."""
        if self._flush_task is not None or self._closed:
            return

        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._flush_task = asyncio.create_task(self._flush_loop())

        logger.info(
            "Export sink started",
            queue_capacity=self._queue.capacity,
            max_batch_size=self.max_batch_size,
            flush_interval=self.flush_interval,
        )

    # === Producer side ===

    def enqueue(self, span: SpanRecord) -> bool:
        """
        Queue a closed span for export without blocking.

        Returns False only when the sink is shutting down. A full queue
        evicts its oldest span instead.
        """
        with self._accept_lock:
            if not self._accepting:
                with self._stats_lock:
                    self._stats.spans_dropped_after_shutdown += 1
                return False
            self._queue.put(span)

        with self._stats_lock:
            self._stats.spans_enqueued += 1

        if len(self._queue) >= self.max_batch_size:
            self._request_flush()
        return True

    def _request_flush(self) -> None:
        loop = self._loop
        if loop is None or self._wakeup is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    # === Consumer side ===

    async def _flush_loop(self) -> None:
        """Flush whenever woken or when the interval elapses."""
        while not self._closing:
            try:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.flush_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
                await self._flush_pending()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Flush error: {e}")

    def _ensure_async_primitives(self) -> None:
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()

    async def _flush_pending(self) -> None:
        """Export everything currently queued, one batch at a time."""
        self._ensure_async_primitives()
        async with self._flush_lock:
            start_time = time.perf_counter()
            flushed = False

            while True:
                batch = self._queue.pop_batch(self.max_batch_size)
                if not batch:
                    break
                flushed = True
                await self._export_batch(batch)

            if flushed:
                with self._stats_lock:
                    self._stats.flush_count += 1
                    self._stats.last_flush_time = datetime.now(timezone.utc)
                    self._stats.last_export_duration_ms = (time.perf_counter() - start_time) * 1000

    async def _export_batch(self, batch: List[SpanRecord]) -> None:
        self._inflight = batch
        success = await self._export_with_retry(batch)
        self._inflight = []

        with self._stats_lock:
            if success:
                self._stats.spans_exported += len(batch)
                self._stats.export_success += 1
            else:
                self._stats.spans_dropped_export += len(batch)
                self._stats.export_failures += 1

    async def _export_with_retry(self, batch: List[SpanRecord]) -> bool:
        """Export with retry logic."""
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            try:
                sent = await asyncio.wait_for(
                    self.transmitter.send(batch),
                    timeout=self.export_timeout,
                )
                if sent:
                    return True
                logger.warning(
                    "Export rejected",
                    attempt=attempt + 1,
                    batch_size=len(batch),
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Export timeout",
                    attempt=attempt + 1,
                    batch_size=len(batch),
                )
            except TransmissionFailure as e:
                logger.warning(
                    f"Export failed: {e}",
                    attempt=attempt + 1,
                    batch_size=len(batch),
                )
            except Exception as e:
                logger.warning(
                    f"Unexpected export error: {e}",
                    attempt=attempt + 1,
                    batch_size=len(batch),
                )

            if attempt < attempts - 1:
                with self._stats_lock:
                    self._stats.export_retries += 1
                delay = min(self.retry_backoff * (2 ** attempt), self.max_backoff)
                await asyncio.sleep(delay)

        logger.error(
            f"Dropping batch after {attempts} attempts",
            batch_size=len(batch),
        )
        return False

    async def force_flush(self) -> None:
        """Force immediate export of all queued spans."""
        await self._flush_pending()

    # === Shutdown ===

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting spans and drain the queue within timeout seconds.

        Spans still queued or in flight when the deadline passes are
        counted as dropped. The transmitter is closed on every path.
        """
        if self._closed:
            return

        timeout = self.shutdown_timeout if timeout is None else timeout
        logger.info("Shutting down export sink", timeout=timeout, queued=len(self._queue))

        with self._accept_lock:
            self._accepting = False
        self._closing = True
        self._request_flush()

        try:
            await asyncio.wait_for(self._drain(), timeout=timeout)
        except asyncio.TimeoutError:
            leftover = len(self._inflight) + len(self._queue.drain())
            self._inflight = []
            with self._stats_lock:
                self._stats.spans_dropped_shutdown += leftover
            logger.warning("Shutdown drain timed out", spans_dropped=leftover)
        finally:
            if self._flush_task is not None and not self._flush_task.done():
                self._flush_task.cancel()
                try:
                    await self._flush_task
                except asyncio.CancelledError:
                    pass

            try:
                await self.transmitter.close()
            except Exception as e:
                logger.error(f"Error closing transmitter: {e}")

            self._closed = True
            logger.info("Export sink shutdown complete", stats=self.get_stats())

    async def _drain(self) -> None:
        if self._flush_task is not None:
            # The loop performs a final flush, then sees _closing and exits
            await self._flush_task
        await self._flush_pending()

    async def __aenter__(self) -> "BatchExportSink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # === Statistics ===

    @property
    def dropped_count(self) -> int:
        """All spans lost for any reason: overflow, failed export, shutdown."""
        with self._stats_lock:
            return (
                self._queue.dropped_count
                + self._stats.spans_dropped_export
                + self._stats.spans_dropped_after_shutdown
                + self._stats.spans_dropped_shutdown
            )

    @property
    def overflow_count(self) -> int:
        return self._queue.dropped_count

    def get_stats(self) -> Dict[str, Any]:
        """Get sink statistics."""
        with self._stats_lock:
            stats = self._stats.to_dict()
        return {
            **stats,
            "queue_size": len(self._queue),
            "spans_dropped_overflow": self._queue.dropped_count,
            "dropped_total": self.dropped_count,
        }

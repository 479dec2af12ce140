"""
Bounded span queue shared by producers and the sink's flush task.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Generic, List, TypeVar

T = TypeVar("T")


class BoundedQueue(Generic[T]):
    """
    Thread-safe multi-producer queue with a fixed capacity.

    put() never blocks: when the queue is full the oldest item is evicted
    and counted in dropped_count, which only ever grows.
    """

    def __init__(self, capacity: int = 2048):
        if capacity < 1:
            raise ValueError("Queue capacity must be at least 1")
        self.capacity = capacity
        self._buffer: Deque[T] = deque()
        self._lock = threading.Lock()
        self._dropped = 0

    def put(self, item: T) -> bool:
        """Add item. Returns False if an older item was evicted to make room."""
        with self._lock:
            evicted = False
            if len(self._buffer) >= self.capacity:
                self._buffer.popleft()
                self._dropped += 1
                evicted = True
            self._buffer.append(item)
            return not evicted

    def pop_batch(self, max_items: int) -> List[T]:
        """Remove and return up to max_items from the front."""
        with self._lock:
            count = min(max_items, len(self._buffer))
            return [self._buffer.popleft() for _ in range(count)]

    def drain(self) -> List[T]:
        """Remove and return everything."""
        with self._lock:
            items = list(self._buffer)
            self._buffer.clear()
            return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def dropped_count(self) -> int:
        return self._dropped

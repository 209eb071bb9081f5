"""
Bounded per-connection delivery queue.

SubscriberQueue is the unit both broadcasters fan out into. It is owned by the
connection handler that created it; broadcasters only hold a reference in
their registry. It never blocks the producer: offer() either accepts the item
or reports that the queue is full and leaves the decision (drop or evict) to
the caller.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

# Pending items per subscriber, shared by audio and log fan-out
SUBSCRIBER_CAPACITY = 100


@dataclass
class SubscriberStats:
    """
    Statistics for SubscriberQueue.

    Attributes:
        capacity: Maximum number of pending items
        pending: Items currently queued
        accepted: Total items accepted by offer()
        rejected: Total items refused because the queue was full
        closed: Whether the queue has been closed
    """
    capacity: int
    pending: int
    accepted: int
    rejected: int
    closed: bool


class SubscriberQueue:
    """
    Thread-safe bounded FIFO with close semantics.

    - offer() never blocks; a full queue refuses the NEW item (earlier items
      are preserved).
    - get() blocks until an item is available, the queue is closed, or the
      timeout expires.
    - close() wakes every waiter. After close, get() returns None at once and
      pending items are discarded.
    """

    def __init__(self, capacity: int = SUBSCRIBER_CAPACITY) -> None:
        """
        Initialize subscriber queue.

        Args:
            capacity: Maximum pending items (must be > 0)

        Raises:
            ValueError: If capacity <= 0
        """
        if capacity <= 0:
            raise ValueError(f"SubscriberQueue capacity must be > 0, got {capacity}")

        self._capacity = capacity
        self._items: deque[Any] = deque()
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._closed = False
        self._accepted = 0
        self._rejected = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def offer(self, item: Any) -> bool:
        """
        Enqueue item without blocking.

        Returns:
            True if the item was queued, False if the queue is full or closed
        """
        with self._condition:
            if self._closed:
                return False
            if len(self._items) >= self._capacity:
                self._rejected += 1
                return False
            self._items.append(item)
            self._accepted += 1
            self._condition.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Take the oldest item.

        Args:
            timeout: Seconds to wait (None waits until an item or close)

        Returns:
            The item, or None if the queue is closed or the wait timed out
        """
        with self._condition:
            if not self._items and not self._closed:
                self._condition.wait_for(
                    lambda: self._items or self._closed, timeout=timeout
                )
            if self._closed or not self._items:
                return None
            return self._items.popleft()

    def close(self) -> bool:
        """
        Close the queue and release pending items.

        Returns:
            True if this call closed the queue, False if it was already closed
        """
        with self._condition:
            if self._closed:
                return False
            self._closed = True
            self._items.clear()
            self._condition.notify_all()
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def stats(self) -> SubscriberStats:
        with self._lock:
            return SubscriberStats(
                capacity=self._capacity,
                pending=len(self._items),
                accepted=self._accepted,
                rejected=self._rejected,
                closed=self._closed,
            )

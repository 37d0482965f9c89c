"""
Batching queue between logging call sites and the flush scheduler.

Many producers, one consumer. Producers only hold a short lock around a
deque operation and never wait on the consumer or on I/O.
"""

import threading
from collections import deque
from typing import Callable, Deque, List, Optional

import structlog

from ..models.record import LogRecord
from .metrics import ShipperMetrics

logger = structlog.get_logger(__name__)

DROP_OLDEST = "drop_oldest"
DROP_NEWEST = "drop_newest"


class BatchingQueue:
    """
    Thread-safe FIFO of log records.

    Unbounded by default. With a capacity, a full queue either evicts its
    oldest record (drop_oldest) or rejects the incoming one (drop_newest);
    either way the loss is counted, never raised.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        overflow_policy: str = DROP_OLDEST,
        metrics: Optional[ShipperMetrics] = None,
    ) -> None:
        if capacity is not None and capacity < 1:
            raise ValueError("capacity must be positive")
        if overflow_policy not in (DROP_OLDEST, DROP_NEWEST):
            raise ValueError(f"unknown overflow policy: {overflow_policy}")

        self.capacity = capacity
        self.overflow_policy = overflow_policy
        self.metrics = metrics
        self.dropped = 0

        self._items: Deque[LogRecord] = deque()
        self._lock = threading.Lock()
        self._closed = False
        self._threshold: Optional[int] = None
        self._listener: Optional[Callable[[], None]] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def set_listener(self, threshold: int, callback: Callable[[], None]) -> None:
        """
        Register the consumer wake-up hook.

        `callback` runs in the producer's thread, outside the lock, whenever a
        put brings the buffered count to `threshold`, and once on close.
        """
        self._threshold = threshold
        self._listener = callback

    def put(self, record: LogRecord) -> bool:
        """
        Enqueue a record without blocking.

        Returns True if the record was accepted.
        """
        evicted = False
        with self._lock:
            if self._closed:
                self.dropped += 1
                accepted = False
                reason = "closed"
            elif self.capacity is not None and len(self._items) >= self.capacity:
                self.dropped += 1
                reason = "queue_full"
                if self.overflow_policy == DROP_OLDEST:
                    self._items.popleft()
                    self._items.append(record)
                    evicted = accepted = True
                else:
                    accepted = False
            else:
                self._items.append(record)
                accepted = True
                reason = ""
            depth = len(self._items)

        if self.metrics:
            if accepted:
                self.metrics.record_enqueued(depth)
            if evicted or not accepted:
                self.metrics.record_dropped(reason)

        if accepted and not evicted and depth == self._threshold:
            self._notify()
        return accepted

    def drain(self, max_items: Optional[int] = None) -> List[LogRecord]:
        """Remove and return up to `max_items` records (all if None), oldest first."""
        with self._lock:
            if max_items is None or max_items >= len(self._items):
                drained = list(self._items)
                self._items.clear()
            else:
                drained = [self._items.popleft() for _ in range(max_items)]
            depth = len(self._items)

        if self.metrics:
            self.metrics.update_queue_depth(depth)
        return drained

    def close(self) -> None:
        """Stop accepting records. Buffered records stay drainable."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            remaining = len(self._items)

        logger.debug("Batching queue closed", buffered=remaining, dropped=self.dropped)
        self._notify()

    def _notify(self) -> None:
        listener = self._listener
        if listener is not None:
            listener()

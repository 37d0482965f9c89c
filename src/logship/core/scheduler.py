"""
Flush scheduler: the single consumer of the batching queue.

Flushes when either:
- the buffered count reaches batch_size (full batches go out immediately), or
- flush_interval_seconds has passed since the last flush (everything goes out)

Each batch is sent with exponential backoff on retryable failures. A batch is
retried as-is: never re-split, never reordered.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

import structlog

from ..config import ShipperSettings
from ..models.record import Batch, LogRecord
from .backoff import BackoffPolicy
from .encoding import PayloadEncoder
from .exceptions import ShipperStateError
from .metrics import ShipperMetrics
from .queue import BatchingQueue
from .reporting import DeliveryFailure, FailureKind, FailureReporter
from .transport import SendResult

logger = structlog.get_logger(__name__)

# Pause after an unexpected loop error before the next iteration
LOOP_ERROR_PAUSE_SECONDS = 1.0


class BatchSender(Protocol):
    async def send(self, batch: Batch) -> SendResult: ...


class SchedulerState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    FLUSHING = "flushing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class FlushResult:
    """Totals for one flush."""
    batches_sent: int = 0
    batches_failed: int = 0
    records_delivered: int = 0
    records_dropped: int = 0

    def add(self, other: "FlushResult") -> None:
        self.batches_sent += other.batches_sent
        self.batches_failed += other.batches_failed
        self.records_delivered += other.records_delivered
        self.records_dropped += other.records_dropped

    @property
    def success(self) -> bool:
        return self.batches_failed == 0 and self.records_dropped == 0


class FlushScheduler:
    """
    Drains the queue into batches and delivers them.

    `run()` is the consumer loop and must be the only coroutine draining the
    queue. `flush()` may be awaited on the same event loop; both paths share a
    lock so batches leave in enqueue order.
    """

    def __init__(
        self,
        settings: ShipperSettings,
        queue: BatchingQueue,
        transport: BatchSender,
        reporter: Optional[FailureReporter] = None,
        metrics: Optional[ShipperMetrics] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.transport = transport
        self.metrics = metrics
        self.reporter = reporter or FailureReporter(metrics)
        self.backoff = backoff or BackoffPolicy(settings.retry)
        self.encoder = PayloadEncoder(settings)

        self.state = SchedulerState.IDLE
        # Records drained by the current flush and not yet delivered or dropped
        self.pending = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._stopping = False
        self._last_flush = 0.0

    @property
    def running(self) -> bool:
        return self._loop is not None and self.state is not SchedulerState.STOPPED

    async def run(self) -> FlushResult:
        """
        Consumer loop. Returns the result of the final flush after stop().
        """
        if self._loop is not None:
            raise ShipperStateError("Flush scheduler already ran", state=self.state.value)

        self._loop = asyncio.get_running_loop()
        self._last_flush = self._loop.time()
        self.queue.set_listener(self.settings.batch_size, self._on_queue_ready)
        self._update_idle_state()

        logger.info(
            "Flush scheduler started",
            batch_size=self.settings.batch_size,
            interval_seconds=self.settings.flush_interval_seconds,
            max_attempts=self.backoff.max_attempts,
        )

        try:
            while not self._stopping:
                try:
                    await self._step()
                except Exception as e:
                    logger.error("Flush loop error", error=str(e))
                    await asyncio.sleep(LOOP_ERROR_PAUSE_SECONDS)

            logger.info("Flush scheduler stopping", buffered=len(self.queue))
            final = await self._flush(full_batches_only=False)
            logger.info(
                "Final flush completed",
                records_delivered=final.records_delivered,
                records_dropped=final.records_dropped,
            )
            return final
        finally:
            self.state = SchedulerState.STOPPED

    async def _step(self) -> None:
        if len(self.queue) >= self.settings.batch_size:
            await self._flush(full_batches_only=True)
        elif self._interval_remaining() <= 0:
            await self._flush(full_batches_only=False)
        else:
            await self._wait(self._interval_remaining())

    def stop(self) -> None:
        """
        Stop accepting records and triggers; run() does one final flush.

        Must be called on the scheduler's event loop.
        """
        if self._stopping:
            return
        self._stopping = True
        self.queue.close()
        self._wakeup.set()

    async def flush(self) -> FlushResult:
        """Deliver everything buffered now."""
        if self._loop is None:
            raise ShipperStateError("Flush scheduler is not running", state=self.state.value)
        return await self._flush(full_batches_only=False)

    def _on_queue_ready(self) -> None:
        # Called from producer threads
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Loop closed after the check; records stay buffered
            return

    def _interval_remaining(self) -> float:
        return self._last_flush + self.settings.flush_interval_seconds - self._running_loop().time()

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._loop
        if loop is None:
            raise ShipperStateError("Flush scheduler is not running", state=self.state.value)
        return loop

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    def _update_idle_state(self) -> None:
        self.state = SchedulerState.COLLECTING if len(self.queue) else SchedulerState.IDLE

    async def _flush(self, full_batches_only: bool) -> FlushResult:
        result = FlushResult()
        loop = self._running_loop()
        async with self._flush_lock:
            started = loop.time()
            batch_size = self.settings.batch_size
            # A full flush only takes what is buffered now, so busy producers cannot extend it
            remaining = len(self.queue)

            while remaining > 0:
                if full_batches_only and len(self.queue) < batch_size:
                    break
                records = self.queue.drain(batch_size if full_batches_only else min(batch_size, remaining))
                if not records:
                    break
                if not full_batches_only:
                    remaining -= len(records)
                batches = self._assemble(records, result)
                self.pending = sum(len(batch) for batch in batches)
                try:
                    for batch in batches:
                        result.add(await self._deliver(batch))
                        self.pending -= len(batch)
                finally:
                    self.pending = 0

            self._last_flush = loop.time()
            if result.batches_sent or result.batches_failed:
                if self.metrics:
                    self.metrics.observe_flush(self._last_flush - started)
                logger.debug(
                    "Flush completed",
                    batches_sent=result.batches_sent,
                    batches_failed=result.batches_failed,
                    records_delivered=result.records_delivered,
                )
            self._update_idle_state()
        return result

    def _assemble(self, records: List[LogRecord], result: FlushResult) -> List[Batch]:
        """
        Split drained records into batches that fit the intake size limits.

        Oversized and unencodable records are dropped; order is otherwise
        preserved.
        """
        batches: List[Batch] = []
        current: List[LogRecord] = []
        size = PayloadEncoder.array_size([])
        max_payload = self.settings.max_payload_bytes

        for record in records:
            try:
                entry_size = self.encoder.entry_size(record)
            except ValueError as e:
                logger.warning("Log record cannot be encoded, not sending", error=str(e))
                result.records_dropped += 1
                if self.metrics:
                    self.metrics.record_dropped("unencodable")
                continue

            if entry_size > self.settings.max_entry_bytes:
                logger.warning(
                    "Log record too large, not sending",
                    entry_bytes=entry_size,
                    max_entry_bytes=self.settings.max_entry_bytes,
                )
                result.records_dropped += 1
                if self.metrics:
                    self.metrics.record_dropped("oversized")
                continue

            added = entry_size + (1 if current else 0)
            if current and size + added > max_payload:
                batches.append(Batch.of(current))
                current = []
                size = PayloadEncoder.array_size([])
                added = entry_size
            current.append(record)
            size += added

        if current:
            batches.append(Batch.of(current))
        return batches

    async def _deliver(self, batch: Batch) -> FlushResult:
        """Send one batch, retrying retryable failures with backoff."""
        attempts = 0
        while True:
            attempts += 1
            self.state = SchedulerState.FLUSHING
            if self.metrics:
                self.metrics.record_send_attempt()

            try:
                outcome = await self.transport.send(batch)
            except Exception as e:
                outcome = SendResult.retryable_failure(f"{type(e).__name__}: {e}")

            if outcome.ok:
                if self.metrics:
                    self.metrics.record_batch_delivered(len(batch))
                return FlushResult(batches_sent=1, records_delivered=len(batch))

            if not outcome.retryable:
                return self._fail(batch, FailureKind.NON_RETRYABLE, attempts, outcome)

            if attempts >= self.backoff.max_attempts:
                return self._fail(batch, FailureKind.RETRIES_EXHAUSTED, attempts, outcome)

            delay = self.backoff.delay(attempts)
            self.state = SchedulerState.BACKOFF
            logger.info(
                "Retrying batch",
                attempt=attempts,
                max_attempts=self.backoff.max_attempts,
                delay_seconds=round(delay, 3),
                error=outcome.error,
            )
            await asyncio.sleep(delay)

    def _fail(
        self,
        batch: Batch,
        kind: FailureKind,
        attempts: int,
        outcome: SendResult,
    ) -> FlushResult:
        self.reporter.report(
            DeliveryFailure(
                kind=kind,
                records=len(batch),
                attempts=attempts,
                status=outcome.status,
                error=outcome.error,
            )
        )
        return FlushResult(batches_failed=1, records_dropped=len(batch))

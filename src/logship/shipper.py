"""
Log shipper: wires the pipeline together and owns its lifecycle.

The flush scheduler runs either on the caller's event loop (`await start()`)
or on a dedicated background thread with its own loop (`start_background()`).
"""

import asyncio
import atexit
import concurrent.futures
import logging
import threading
from typing import Optional

import structlog

from .adapter import DataDogHandler, DataDogLogger
from .config import ShipperSettings
from .core.exceptions import ShipperStateError
from .core.metrics import ShipperMetrics
from .core.queue import BatchingQueue
from .core.reporting import DeliveryFailure, FailureCallback, FailureKind, FailureReporter
from .core.scheduler import BatchSender, FlushResult, FlushScheduler
from .core.transport import DataDogTransport

logger = structlog.get_logger(__name__)


class LogShipper:
    """
    Log shipping pipeline: adapter → queue → scheduler → transport.

    Features:
    - Non-blocking `logger.log(...)` from any thread
    - Background delivery on an event loop or a dedicated thread
    - Bounded best-effort final flush on shutdown
    """

    def __init__(
        self,
        settings: ShipperSettings,
        transport: Optional[BatchSender] = None,
        metrics: Optional[ShipperMetrics] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or ShipperMetrics()
        self.queue = BatchingQueue(
            capacity=settings.queue_capacity,
            overflow_policy=settings.overflow_policy,
            metrics=self.metrics,
        )
        self.transport = transport if transport is not None else DataDogTransport(settings)
        self.reporter = FailureReporter(self.metrics, on_failure)
        self.scheduler = FlushScheduler(
            settings,
            self.queue,
            self.transport,
            reporter=self.reporter,
            metrics=self.metrics,
        )
        self.logger = DataDogLogger(
            settings.service,
            settings.hostname,
            self.queue,
            metrics=self.metrics,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional["asyncio.Task[FlushResult]"] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_requested: Optional[asyncio.Event] = None
        self._delivered_all = False
        self._started = threading.Event()
        self._startup_error: Optional[BaseException] = None

        logger.info(
            "Log shipper initialized",
            service=settings.service,
            hostname=settings.hostname,
            endpoint=settings.endpoint_url,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def handler(self, level: int = logging.NOTSET) -> DataDogHandler:
        """A stdlib logging handler feeding this shipper."""
        return DataDogHandler(
            self.logger,
            level=level,
            flush_timeout=self.settings.shutdown_timeout_seconds,
            flusher=self,
        )

    # Event-loop mode

    async def start(self) -> None:
        """Start delivering on the running event loop."""
        if self._task is not None:
            raise ShipperStateError("Log shipper already started")

        self._loop = asyncio.get_running_loop()
        start = getattr(self.transport, "start", None)
        if start is not None:
            await start()
        self._task = asyncio.create_task(self.scheduler.run())
        logger.info("Log shipper started")

    async def flush(self) -> FlushResult:
        """Deliver everything buffered and wait for the result."""
        if not self.running:
            raise ShipperStateError("Log shipper is not running")
        return await self.scheduler.flush()

    async def stop(self) -> bool:
        """
        Stop the shipper, attempting one final flush.

        Bounded by shutdown_timeout_seconds. Returns True if every buffered
        record was delivered; failures are reported, never raised.
        """
        if self._task is None:
            return True

        task = self._task
        self.scheduler.stop()
        timeout = self.settings.shutdown_timeout_seconds
        delivered_all = False

        try:
            final = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            delivered_all = final.success
        except asyncio.TimeoutError:
            # Drained by the abandoned flush but not yet delivered
            pending = self.scheduler.pending
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            lost = pending + len(self.queue.drain())
            self.reporter.report(
                DeliveryFailure(
                    kind=FailureKind.SHUTDOWN_TIMEOUT,
                    records=lost,
                    error=f"Final flush did not finish within {timeout}s",
                )
            )
        finally:
            close = getattr(self.transport, "close", None)
            if close is not None:
                await close()

        logger.info("Log shipper stopped", delivered_all=delivered_all)
        return delivered_all

    # Background-thread mode

    def start_background(self, startup_timeout: float = 10.0) -> None:
        """Run the pipeline on a daemon thread with its own event loop."""
        if self._thread is not None or self._task is not None:
            raise ShipperStateError("Log shipper already started")

        self._thread = threading.Thread(
            target=self._thread_main,
            name="logship-flush",
            daemon=True,
        )
        self._thread.start()
        if not self._started.wait(startup_timeout):
            raise ShipperStateError("Log shipper background thread did not start")
        if self._startup_error is not None:
            raise ShipperStateError(f"Log shipper failed to start: {self._startup_error}")

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._serve())
        finally:
            loop.close()

    async def _serve(self) -> None:
        self._stop_requested = asyncio.Event()
        try:
            await self.start()
        except Exception as e:
            self._startup_error = e
            self._started.set()
            return
        self._started.set()
        await self._stop_requested.wait()
        self._delivered_all = await self.stop()

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop a background shipper from any other thread.

        Waits at most `timeout` (default: shutdown timeout plus one second).
        Returns True if every buffered record was delivered.
        """
        thread = self._thread
        if thread is None:
            return True
        if threading.current_thread() is thread:
            raise ShipperStateError("shutdown() cannot be called from the flush thread")

        loop = self._loop
        stop_requested = self._stop_requested
        if loop is not None and stop_requested is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(stop_requested.set)
            except RuntimeError:
                # Loop closed after the check
                pass

        wait = timeout if timeout is not None else self.settings.shutdown_timeout_seconds + 1.0
        thread.join(wait)
        if thread.is_alive():
            logger.error("Log shipper shutdown timed out", timeout_seconds=wait)
            return False
        return self._delivered_all

    def flush_blocking(self, timeout: Optional[float] = None) -> bool:
        """
        Flush a background shipper from another thread.

        Returns False instead of raising if the shipper is not running, the
        flush fails, or it does not finish within `timeout`.
        """
        loop = self._loop
        if self._thread is None or loop is None or not self.running:
            return False
        if threading.current_thread() is self._thread:
            return False

        try:
            future = asyncio.run_coroutine_threadsafe(self.flush(), loop)
        except RuntimeError:
            return False
        try:
            return future.result(timeout).success
        except concurrent.futures.TimeoutError:
            logger.warning("Log shipper flush timed out", timeout_seconds=timeout)
            return False
        except ShipperStateError:
            return False


def init_logger(
    settings: ShipperSettings,
    level: int = logging.INFO,
    target: Optional[logging.Logger] = None,
    transport: Optional[BatchSender] = None,
    metrics: Optional[ShipperMetrics] = None,
    on_failure: Optional[FailureCallback] = None,
) -> LogShipper:
    """
    Start a background shipper and attach its handler to `target`.

    `target` defaults to the root logger. The shipper is shut down at
    interpreter exit.
    """
    shipper = LogShipper(settings, transport=transport, metrics=metrics, on_failure=on_failure)
    shipper.start_background()
    atexit.register(shipper.shutdown)

    target_logger = target if target is not None else logging.getLogger()
    target_logger.addHandler(shipper.handler())
    if target_logger.level == logging.NOTSET or target_logger.level > level:
        target_logger.setLevel(level)
    return shipper


async def spawn_logger(
    settings: ShipperSettings,
    transport: Optional[BatchSender] = None,
    metrics: Optional[ShipperMetrics] = None,
    on_failure: Optional[FailureCallback] = None,
) -> LogShipper:
    """Create a shipper and start it on the running event loop."""
    shipper = LogShipper(settings, transport=transport, metrics=metrics, on_failure=on_failure)
    await shipper.start()
    return shipper

"""
Logger adapter: the integration point for the host logging frontend.

DataDogLogger turns one log call into one record and enqueues it. It never
performs I/O and never raises into the caller. DataDogHandler bridges the
standard library logging module onto it.
"""

import logging
import math
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Union

import structlog

from .core.metrics import ShipperMetrics
from .core.queue import BatchingQueue
from .models.record import AttributeValue, LogLevel, LogRecord

logger = structlog.get_logger(__name__)

# Internal loggers are never shipped, otherwise diagnostics would feed back into the queue
INTERNAL_LOGGER_PREFIX = "logship"

# Attributes every stdlib LogRecord carries; anything else came from extra=
_STDLIB_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class LogSink(Protocol):
    """Anything that accepts log events."""

    def log(
        self,
        level: Union[LogLevel, str],
        message: str,
        attributes: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool: ...


def coerce_attributes(attributes: Optional[Mapping[Any, Any]]) -> Dict[str, AttributeValue]:
    """Stringify keys, non-finite floats and any value that is not str/int/float/bool."""
    if not attributes:
        return {}
    coerced: Dict[str, AttributeValue] = {}
    for key, value in attributes.items():
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        elif isinstance(value, float) and not math.isfinite(value):
            value = str(value)
        coerced[str(key)] = value
    return coerced


class Flushable(Protocol):
    def flush_blocking(self, timeout: Optional[float] = None) -> bool: ...


class DataDogLogger:
    """
    Log sink feeding the batching queue.

    Safe to call from any thread or task. Returns True when the record was
    enqueued and False when it was dropped.
    """

    def __init__(
        self,
        service: str,
        hostname: str,
        queue: BatchingQueue,
        metrics: Optional[ShipperMetrics] = None,
    ) -> None:
        self.service = service
        self.hostname = hostname
        self.queue = queue
        self.metrics = metrics

    def log(
        self,
        level: Union[LogLevel, str],
        message: str,
        attributes: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        try:
            record = LogRecord.capture(
                level=level,
                message=str(message),
                service=self.service,
                hostname=self.hostname,
                attributes=coerce_attributes(attributes),
                timestamp=timestamp,
            )
        except Exception as e:
            if self.metrics:
                self.metrics.record_dropped("invalid")
            logger.warning("Unable to build log record", error=str(e))
            return False
        return self.queue.put(record)


class DataDogHandler(logging.Handler):
    """
    Standard library logging handler that forwards records to a LogSink.

    Extra fields passed via ``extra=`` become record attributes.
    """

    def __init__(
        self,
        sink: LogSink,
        level: int = logging.NOTSET,
        flush_timeout: Optional[float] = None,
        flusher: Optional["Flushable"] = None,
    ) -> None:
        super().__init__(level)
        self.sink = sink
        self.flush_timeout = flush_timeout
        self._flusher = flusher

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == INTERNAL_LOGGER_PREFIX or name.startswith(INTERNAL_LOGGER_PREFIX + "."):
            return False
        return bool(super().filter(record))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            self.sink.log(
                LogLevel.from_stdlib(record.levelno),
                message,
                self.attributes_for(record),
                datetime.fromtimestamp(record.created, tz=timezone.utc),
            )
        except Exception:
            self.handleError(record)

    def attributes_for(self, record: logging.LogRecord) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "logger.name": record.name,
            "logger.thread_name": record.threadName,
            "code.module": record.module,
            "code.function": record.funcName,
            "code.lineno": record.lineno,
        }
        for key, value in vars(record).items():
            if key not in _STDLIB_RECORD_FIELDS and not key.startswith("_"):
                attributes[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            attributes["error.kind"] = record.exc_info[0].__name__
            attributes["error.stack"] = "".join(traceback.format_exception(*record.exc_info))
        return attributes

    def flush(self) -> None:
        """Ask the shipper for a bounded flush of buffered records."""
        if self._flusher is not None:
            self._flusher.flush_blocking(self.flush_timeout)

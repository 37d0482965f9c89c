"""
Failure reporting side channel.

Logging calls are fire-and-forget, so delivery failures surface here for
operators: a structured log event, a metric, and an optional callback.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from .metrics import ShipperMetrics

logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    """Why records were lost."""

    NON_RETRYABLE = "non_retryable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    SHUTDOWN_TIMEOUT = "shutdown_timeout"


@dataclass(frozen=True)
class DeliveryFailure:
    """A batch (or the shutdown backlog) that could not be delivered."""
    kind: FailureKind
    records: int
    attempts: int = 0
    status: Optional[int] = None
    error: Optional[str] = None


FailureCallback = Callable[[DeliveryFailure], None]


class FailureReporter:
    """Routes delivery failures to logs, metrics and an optional callback."""

    def __init__(
        self,
        metrics: Optional[ShipperMetrics] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.metrics = metrics
        self.on_failure = on_failure
        self.failures = 0

    def report(self, failure: DeliveryFailure) -> None:
        self.failures += 1

        logger.error(
            "Log records dropped",
            kind=failure.kind.value,
            records=failure.records,
            attempts=failure.attempts,
            status=failure.status,
            error=failure.error,
        )

        if self.metrics:
            if failure.kind is FailureKind.SHUTDOWN_TIMEOUT:
                self.metrics.record_dropped("shutdown", failure.records)
            else:
                self.metrics.record_batch_failed(failure.kind.value, failure.records)

        if self.on_failure is not None:
            try:
                self.on_failure(failure)
            except Exception as e:
                logger.error("Failure callback raised", error=str(e))

"""
Async HTTP transport for posting batches to a DataDog-compatible intake.

Features:
- One pooled aiohttp session per transport
- Per-request timeout so a hung connection cannot stall the scheduler
- Result classification: success, retryable, non-retryable
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from .. import __version__
from ..config import ShipperSettings
from ..models.record import Batch
from .encoding import PayloadEncoder

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single send attempt."""
    ok: bool
    retryable: bool = False
    status: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, status: int) -> "SendResult":
        return cls(ok=True, status=status)

    @classmethod
    def retryable_failure(cls, error: str, status: Optional[int] = None) -> "SendResult":
        return cls(ok=False, retryable=True, status=status, error=error)

    @classmethod
    def fatal_failure(cls, error: str, status: Optional[int] = None) -> "SendResult":
        return cls(ok=False, retryable=False, status=status, error=error)


def classify_status(status: int, body: str = "") -> SendResult:
    """Map an HTTP status to a send result."""
    if 200 <= status < 300:
        return SendResult.success(status)
    error = f"HTTP {status}"
    if body:
        error = f"{error}: {body[:256]}"
    if status >= 500:
        return SendResult.retryable_failure(error, status)
    # 4xx (bad request, auth, too large): resending the same body will not help
    return SendResult.fatal_failure(error, status)


class DataDogTransport:
    """
    Posts batches to the log intake.

    Holds no per-batch state; the scheduler may call `send` repeatedly,
    including for retries of the same batch.
    """

    def __init__(self, settings: ShipperSettings) -> None:
        self.settings = settings
        self.encoder = PayloadEncoder(settings)
        self.session: Optional[aiohttp.ClientSession] = None

        logger.info(
            "DataDog transport initialized",
            endpoint=settings.endpoint_url,
            gzip=settings.gzip,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def _headers(self) -> dict:
        headers = {
            "DD-API-KEY": self.settings.api_key.get_secret_value(),
            "Content-Type": "application/json",
            "User-Agent": f"logship/{__version__}",
        }
        if self.settings.gzip:
            headers["Content-Encoding"] = "gzip"
        return headers

    async def start(self) -> None:
        """Open the HTTP session. Must run on the loop that will call send."""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
        )
        logger.debug("DataDog transport started")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.debug("DataDog transport closed")

    async def send(self, batch: Batch) -> SendResult:
        """
        POST one batch.

        Never raises for transport problems: network errors, timeouts and 5xx
        responses come back as retryable results, other non-2xx as fatal ones.
        """
        if not self.session:
            return SendResult.fatal_failure("Transport not started")

        body = self.encoder.encode(batch)

        try:
            async with self.session.post(
                self.settings.endpoint_url,
                data=body,
                headers=self._headers(),
            ) as response:
                text = "" if 200 <= response.status < 300 else await response.text()
                result = classify_status(response.status, text)
        except asyncio.TimeoutError:
            result = SendResult.retryable_failure(
                f"Request timed out after {self.settings.request_timeout_seconds}s"
            )
        except aiohttp.ClientError as e:
            result = SendResult.retryable_failure(f"{type(e).__name__}: {e}")

        if result.ok:
            logger.debug("Batch accepted by intake", records=len(batch), status=result.status)
        else:
            logger.warning(
                "Intake send failed",
                records=len(batch),
                status=result.status,
                retryable=result.retryable,
                error=result.error,
            )
        return result

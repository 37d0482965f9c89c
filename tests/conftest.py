"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import asyncio
import os
import time
from typing import Any, Awaitable, Callable, List, Optional

import pytest

from logship.config import ShipperSettings, build_settings
from logship.core.transport import SendResult
from logship.models.record import Batch

TEST_ENDPOINT = "http://127.0.0.1:9/api/v2/logs"


class StubTransport:
    """In-memory transport that records every send attempt."""

    def __init__(self, results: Optional[List[SendResult]] = None, delay: float = 0.0) -> None:
        self.results = list(results or [])
        self.delay = delay
        self.sent: List[Batch] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def send(self, batch: Batch) -> SendResult:
        self.sent.append(batch)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return SendResult.success(202)

    @property
    def attempts(self) -> int:
        return len(self.sent)

    def messages(self) -> List[List[str]]:
        """Messages per attempted batch."""
        return [[record.message for record in batch] for batch in self.sent]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def make_settings() -> Callable[..., ShipperSettings]:
    """Factory for settings with fast, test-friendly defaults."""
    def _make(**overrides: Any) -> ShipperSettings:
        values: dict = {
            "service": "test-service",
            "hostname": "test-host",
            "api_key": "test-api-key-0123456789",
            "endpoint_url": TEST_ENDPOINT,
            "gzip": False,
            "flush_interval_seconds": 60.0,
            "shutdown_timeout_seconds": 2.0,
            "retry": {
                "max_attempts": 3,
                "initial_backoff_seconds": 0.01,
                "max_backoff_seconds": 0.05,
                "jitter": 0.0,
            },
        }
        values.update(overrides)
        return build_settings(**values)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., ShipperSettings]) -> ShipperSettings:
    return make_settings()


@pytest.fixture
def stub_transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def make_stub_transport() -> Callable[..., StubTransport]:
    return StubTransport


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[bool]]:
    """Poll a predicate until it holds or the timeout passes."""
    return _wait_until


@pytest.fixture(autouse=True)
def clean_logship_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep LOGSHIP_* variables from the outer environment out of tests."""
    for key in list(os.environ):
        if key.upper().startswith("LOGSHIP_"):
            monkeypatch.delenv(key, raising=False)

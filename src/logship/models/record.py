"""
Log record data models.

- LogRecord: one immutable log event, stamped when the log call fires
- Batch: a non-empty ordered group of records sent in one request
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Dict, Iterator, Optional, Sequence, Tuple, Union

from pydantic import (
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictInt,
    StrictStr,
    field_validator,
)

# NaN and Infinity have no JSON representation
FiniteFloat = Annotated[float, Strict(), AllowInfNan(False)]

AttributeValue = Union[StrictStr, StrictBool, StrictInt, FiniteFloat]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_LEVEL_ALIASES = {
    "warning": "warn",
    "critical": "error",
    "fatal": "error",
}


class LogLevel(str, Enum):
    """Severity levels accepted by the pipeline."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Union["LogLevel", str]) -> "LogLevel":
        """Parse a level name, case-insensitively, accepting common aliases."""
        if isinstance(value, LogLevel):
            return value
        name = str(value).strip().lower()
        return cls(_LEVEL_ALIASES.get(name, name))

    @classmethod
    def from_stdlib(cls, levelno: int) -> "LogLevel":
        """Map a stdlib logging level number."""
        if levelno < logging.DEBUG:
            return cls.TRACE
        if levelno < logging.INFO:
            return cls.DEBUG
        if levelno < logging.WARNING:
            return cls.INFO
        if levelno < logging.ERROR:
            return cls.WARN
        return cls.ERROR


class LogRecord(BaseModel):
    """
    A single log event.

    Immutable once created. `timestamp` is wall-clock UTC for the ingestion
    service; `monotonic_ns` is read at the same moment and orders records
    safely if the wall clock steps backwards.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(description="When the log call fired (UTC)")
    monotonic_ns: int = Field(description="Monotonic clock reading at capture time")
    level: LogLevel
    message: str
    service: str = Field(min_length=1)
    hostname: str = Field(min_length=1)
    attributes: Dict[str, AttributeValue] = Field(default_factory=dict)

    @field_validator("level", mode="before")
    def parse_level(cls, v: Union[LogLevel, str]) -> LogLevel:
        return LogLevel.parse(v)

    @field_validator("timestamp")
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @classmethod
    def capture(
        cls,
        level: Union[LogLevel, str],
        message: str,
        service: str,
        hostname: str,
        attributes: Optional[Dict[str, AttributeValue]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "LogRecord":
        """Create a record stamped with the current clocks."""
        monotonic_ns = time.monotonic_ns()
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            monotonic_ns=monotonic_ns,
            level=level,
            message=message,
            service=service,
            hostname=hostname,
            attributes=dict(attributes or {}),
        )

    @property
    def epoch_millis(self) -> int:
        return (self.timestamp - _EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True)
class Batch:
    """Ordered, non-empty group of records delivered in one request."""

    records: Tuple[LogRecord, ...]

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("Batch must contain at least one record")

    @classmethod
    def of(cls, records: Sequence[LogRecord]) -> "Batch":
        return cls(tuple(records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[LogRecord]:
        return iter(self.records)

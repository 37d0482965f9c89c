"""
DataDog intake payload encoding.

DataDog's v2 intake takes a JSON array of log objects:

    [
        {
            "ddsource": "python",
            "ddtags": "env:prod,team:core",
            "hostname": "web-1",
            "service": "checkout",
            "message": "order placed",
            "level": "info",
            "timestamp": 1727000000000,
            "attributes": {"order_id": 42}
        }
    ]

Size limits are measured on the uncompressed JSON. Non-finite floats are
rejected: NaN and Infinity are not valid JSON.
"""

import gzip
import json
from typing import Any, Dict, Iterable

from ..config import ShipperSettings
from ..models.record import LogRecord

_SEPARATORS = (",", ":")


class PayloadEncoder:
    """Turns records into intake entries and request bodies."""

    def __init__(self, settings: ShipperSettings) -> None:
        self.source = settings.source
        self.ddtags = settings.ddtags
        self.gzip = settings.gzip

    def entry(self, record: LogRecord) -> Dict[str, Any]:
        """Intake entry for a single record."""
        entry: Dict[str, Any] = {"ddsource": self.source}
        if self.ddtags:
            entry["ddtags"] = self.ddtags
        entry.update(
            hostname=record.hostname,
            service=record.service,
            message=record.message,
            level=record.level.value,
            timestamp=record.epoch_millis,
            attributes=dict(record.attributes),
        )
        return entry

    def entry_bytes(self, record: LogRecord) -> bytes:
        """Compact UTF-8 JSON for one entry. Raises ValueError for NaN or infinite values."""
        body = json.dumps(self.entry(record), separators=_SEPARATORS, ensure_ascii=False, allow_nan=False)
        return body.encode("utf-8")

    def entry_size(self, record: LogRecord) -> int:
        return len(self.entry_bytes(record))

    @staticmethod
    def array_size(entry_sizes: Iterable[int]) -> int:
        """Size of a JSON array holding entries of the given sizes."""
        sizes = list(entry_sizes)
        return 2 + sum(sizes) + max(0, len(sizes) - 1)

    def encode(self, records: Iterable[LogRecord]) -> bytes:
        """Request body for a batch, gzip-compressed when enabled."""
        body = b"[" + b",".join(self.entry_bytes(r) for r in records) + b"]"
        if self.gzip:
            return gzip.compress(body)
        return body

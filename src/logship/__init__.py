"""
logship - batched, non-blocking log shipping to DataDog.

Log calls are turned into records and buffered in memory; a background
flush scheduler batches them and posts them over HTTPS to a
DataDog-compatible log intake, retrying transient failures with backoff.
"""

__version__ = "0.1.0"

from .adapter import DataDogHandler, DataDogLogger, LogSink
from .config import RetrySettings, ShipperSettings, build_settings, load_settings
from .core.exceptions import ConfigurationError, LogShipException, ShipperStateError
from .core.reporting import DeliveryFailure, FailureKind
from .models import Batch, LogLevel, LogRecord
from .shipper import LogShipper, init_logger, spawn_logger

__all__ = [
    "Batch",
    "ConfigurationError",
    "DataDogHandler",
    "DataDogLogger",
    "DeliveryFailure",
    "FailureKind",
    "LogLevel",
    "LogRecord",
    "LogShipException",
    "LogShipper",
    "LogSink",
    "RetrySettings",
    "ShipperSettings",
    "ShipperStateError",
    "build_settings",
    "init_logger",
    "load_settings",
    "spawn_logger",
]

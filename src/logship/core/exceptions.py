"""
Custom exceptions for the log shipper.

Only configuration and operator-facing lifecycle misuse raise. Nothing in
this package raises into a logging call site; delivery problems are routed
to the failure reporter instead.
"""

from typing import Any, Dict, Optional


class LogShipException(Exception):
    """Base exception for the log shipper."""

    def __init__(
        self,
        message: str,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class ConfigurationError(LogShipException):
    """Raised when shipper settings are missing or invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            error_code="configuration_error",
            details=details,
        )


class ShipperStateError(LogShipException):
    """Raised when a lifecycle operation is called in the wrong state."""

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        super().__init__(
            message=message,
            error_code="invalid_state",
            details={"state": state} if state else None,
        )

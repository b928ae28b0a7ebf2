"""Exceptions raised by streamgate.

Policy mismatches are never exceptions: they come back as verdicts from the
decision engine. Exceptions cover rejected writes, missing entities and a
state store that cannot be reached.
"""

from typing import Any, Optional


class StreamGateError(Exception):
    """Base exception for all streamgate errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: str = "STREAMGATE_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for display or API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(StreamGateError):
    """Raised when a write is rejected before touching stored state."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotFoundError(StreamGateError):
    """Raised when a write targets a device or rule that does not exist."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, code="NOT_FOUND", details=details)


class StoreUnavailableError(StreamGateError):
    """Raised when the state store cannot be read or written."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, code="STORE_UNAVAILABLE", details=details)


class ConfigurationError(StreamGateError):
    """Raised when configuration values are invalid."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, code="CONFIG_ERROR", details=details)

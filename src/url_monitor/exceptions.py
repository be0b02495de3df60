"""
Exception classes for the URL monitor.

All exceptions inherit from MonitorError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class MonitorError(Exception):
    """Base exception for all URL monitor errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(MonitorError):
    """Raised when configuration is missing or invalid (e.g. no endpoint)."""

    pass


class NetworkError(MonitorError):
    """Raised when a network operation fails (timeout, DNS, refused, HTTP status)."""

    pass


class FormatError(MonitorError):
    """Raised when a remote payload does not have an accepted shape."""

    pass


class ValidationError(MonitorError):
    """Raised when an item list fails the integrity gate."""

    pass


class StoreError(MonitorError):
    """Raised when persistence operations fail (file I/O, encoding)."""

    pass


class TamperingError(StoreError):
    """Raised when HMAC validation of the state file fails."""

    pass

"""
Custom exceptions for the Gatekeeper service.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses.
"""

from typing import Any, Dict, Optional


class GatekeeperException(Exception):
    """Base exception for Gatekeeper."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class StoreUnavailable(GatekeeperException):
    """Raised when a cache or rate-window backing store cannot be reached."""

    def __init__(self, store: str, message: str = "Backing store unavailable") -> None:
        super().__init__(
            message=message,
            status_code=503,
            error_code="store_unavailable",
        )
        self.store = store


class ProducerFailure(GatekeeperException):
    """Raised when the computation behind a cache key fails."""

    def __init__(self, key: str, message: str = "Upstream computation failed") -> None:
        # Key and cause stay on the instance; they are not rendered to clients
        super().__init__(
            message=message,
            status_code=502,
            error_code="upstream_error",
        )
        self.key = key


class ComputationTimeout(GatekeeperException):
    """Raised when a caller stops waiting for an in-flight computation."""

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(
            message="Timed out waiting for computation",
            status_code=504,
            error_code="computation_timeout",
            details={"timeout_seconds": timeout},
        )
        self.key = key


class SinkError(GatekeeperException):
    """Raised by a log sink that failed to write a record."""

    def __init__(self, sink: str, message: str) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="sink_error",
            details={"sink": sink},
        )
        self.sink = sink


class AuthenticationError(GatekeeperException):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Invalid or missing authentication token") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="authentication_error",
        )


class RateLimitError(GatekeeperException):
    """Raised when rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Too many requests",
        retry_after: Optional[int] = None,
    ) -> None:
        details = {}
        if retry_after:
            details["retry_after"] = retry_after

        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limit_exceeded",
            details=details,
        )

"""
Errors raised by the EarnKit SDK.
Catch EarnKitError to handle every SDK failure.
"""

from typing import Any


class EarnKitError(Exception):
    """Base exception for all SDK errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"[EarnKitError] {message}")


class EarnKitInitializationError(EarnKitError):
    """Raised when the client is constructed with invalid configuration."""
    pass


class EarnKitInputError(EarnKitError):
    """Raised when a method is called with invalid or missing parameters."""
    pass


class EarnKitApiError(EarnKitError):
    """
    Raised when a call to the EarnKit backend fails.
    status is the HTTP status, or 0 for network-level failures.
    """

    def __init__(self, message: str, status: int, response_body: Any = None):
        super().__init__(f"API Error: {message}")
        self.status = status
        self.response_body = response_body

    @property
    def is_retryable(self) -> bool:
        """Server errors and request timeouts are transient; client errors are not."""
        return self.status == 408 or 500 <= self.status <= 599


class EarnKitTimeoutError(EarnKitApiError):
    """Raised when a call exceeds the client's request timeout."""

    def __init__(self, message: str, response_body: Any = None):
        super().__init__(message, 408, response_body)

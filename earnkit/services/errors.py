"""
Typed failures raised by the usage ledger and top-up services.
Each carries the HTTP status the API boundary responds with.
"""


class LedgerError(Exception):
    """Base exception for ledger errors."""

    status_code: int = 400

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class AgentNotFound(LedgerError):
    """Raised when the agent does not exist."""
    status_code = 404

    def __init__(self, message: str = "Agent not found"):
        super().__init__(message)


class InsufficientFunds(LedgerError):
    """Raised when the user's ETH balance cannot cover the fee."""
    status_code = 402

    def __init__(self, message: str = "Insufficient funds. Please top up your balance."):
        super().__init__(message)


class InsufficientCredits(LedgerError):
    """Raised when the user's credit balance cannot cover the charge."""
    status_code = 402

    def __init__(self, message: str = "Insufficient credits. Please buy more."):
        super().__init__(message)


class EventNotCapturable(LedgerError):
    """Raised when the event is missing or no longer pending."""
    status_code = 404

    def __init__(self, message: str = "Event not found or not in a capturable state."):
        super().__init__(message)


class EventNotReleasable(LedgerError):
    """Raised when the event is missing or no longer pending."""
    status_code = 404

    def __init__(self, message: str = "Event not found or not in a releasable state."):
        super().__init__(message)


class IdempotencyConflict(LedgerError):
    """Raised when an idempotency key cannot be resolved to a single event."""
    status_code = 409

    def __init__(self, message: str = "Idempotency key conflict."):
        super().__init__(message)


class DuplicateTransaction(LedgerError):
    """Raised when a top-up transaction hash was already submitted."""
    status_code = 409

    def __init__(self, message: str = "This transaction hash has already been submitted."):
        super().__init__(message)


class FeeModelConfigError(RuntimeError):
    """
    Stored fee model config does not match its declared type.
    Never expected once writes are validated; not a user-facing error.
    """
    pass

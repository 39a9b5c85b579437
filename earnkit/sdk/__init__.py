"""
EarnKit SDK - per-use billing for AI agents.
"""

from .client import EarnKit, TopUpOption, UserBalance
from .errors import (
    EarnKitApiError,
    EarnKitError,
    EarnKitInitializationError,
    EarnKitInputError,
    EarnKitTimeoutError,
)

__all__ = [
    "EarnKit",
    "TopUpOption",
    "UserBalance",
    "EarnKitError",
    "EarnKitApiError",
    "EarnKitInitializationError",
    "EarnKitInputError",
    "EarnKitTimeoutError",
]

"""
Error Classification

Error types for the transaction queue. Caller contract violations raise;
adapter failures are recoverable and only ever feed retry accounting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories of errors recorded on transactions."""

    NETWORK = "network"                # Network/connectivity issues
    RATE_LIMIT = "rate_limit"          # RPC rate limits
    TIMEOUT = "timeout"                # Resolution window elapsed
    TRANSACTION_REVERTED = "transaction_reverted"  # On-chain revert
    SUBMISSION = "submission"          # Submitter reported a failed broadcast
    PROVIDER = "provider"              # Adapter returned an error object
    UNKNOWN = "unknown"                # Unclassified error


@dataclass(frozen=True)
class TransactionErrorInfo:
    """Structured failure description stored on a transaction."""

    code: str
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionErrorInfo":
        try:
            category = ErrorCategory(data.get("category") or ErrorCategory.UNKNOWN.value)
        except ValueError:
            category = ErrorCategory.UNKNOWN
        return cls(
            code=str(data.get("code") or "UNKNOWN"),
            message=str(data.get("message") or ""),
            category=category,
            details=dict(data.get("details") or {}),
        )


class QueueError(Exception):
    """Base class for transaction queue errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransactionInput(QueueError, ValueError):
    """The caller supplied a transaction the queue cannot track."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class InvalidTransitionError(QueueError):
    """Raised when a status transition is not in the state graph."""

    def __init__(self, from_status: Any, to_status: Any, message: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message
            or f"Cannot transition from {getattr(from_status, 'value', from_status)} "
            f"to {getattr(to_status, 'value', to_status)}"
        )


class StoreError(QueueError):
    """The durable store could not read or write its medium."""


class ChainAdapterError(QueueError):
    """
    Base class for chain adapter failures.

    These are always transient from the queue's point of view:
    the record stays pending and its retry count goes up.
    """

    category: ErrorCategory = ErrorCategory.PROVIDER

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        retry_after: Optional[float] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        if category is not None:
            self.category = category
        self.retry_after = retry_after
        self.provider = provider


class NetworkError(ChainAdapterError):
    """Network connectivity error."""

    category = ErrorCategory.NETWORK

    def __init__(self, message: str = "Network error", provider: Optional[str] = None):
        super().__init__(message, retry_after=5.0, provider=provider)


class RateLimitError(ChainAdapterError):
    """RPC rate limit exceeded."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float = 60.0,
        provider: Optional[str] = None,
    ):
        super().__init__(message, retry_after=retry_after, provider=provider)


def classify_adapter_error(exc: BaseException) -> TransactionErrorInfo:
    """Turn an exception raised by a chain adapter into error info."""
    if isinstance(exc, ChainAdapterError):
        details: Dict[str, Any] = {}
        if exc.provider:
            details["provider"] = exc.provider
        if exc.retry_after is not None:
            details["retryAfterSeconds"] = exc.retry_after
        return TransactionErrorInfo(
            code=exc.category.value.upper(),
            message=exc.message,
            category=exc.category,
            details=details,
        )

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if "rate limit" in lowered or "429" in lowered or "too many requests" in lowered:
        category = ErrorCategory.RATE_LIMIT
    elif isinstance(exc, OSError) or "timeout" in lowered or "connection" in lowered:
        category = ErrorCategory.NETWORK
    else:
        category = ErrorCategory.UNKNOWN
    return TransactionErrorInfo(
        code=category.value.upper(),
        message=message,
        category=category,
        details={"exception": exc.__class__.__name__},
    )

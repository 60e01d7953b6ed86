"""
Transaction Queue Models

Defines statuses, tracked transaction snapshots, and the resolved
outcomes the reconciliation worker feeds back into the queue.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .errors import ErrorCategory, TransactionErrorInfo


class TransactionStatus(str, Enum):
    """Lifecycle status of a tracked transaction."""

    PENDING = "pending"          # Submitted, not yet resolved on chain
    CONFIRMED = "confirmed"      # Mined with a successful receipt
    FAILED = "failed"            # Reverted on chain or failed to submit
    CANCELLED = "cancelled"      # Cancelled by the caller before resolution
    REPLACED = "replaced"        # Another transaction was mined at the same nonce
    TIMEOUT = "timeout"          # Resolution window elapsed without an answer


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.CONFIRMED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.REPLACED,
        TransactionStatus.TIMEOUT,
    }
)


class TransactionType(str, Enum):
    """What the submitter intended; opaque to the queue."""

    TRANSFER = "transfer"
    APPROVAL = "approval"
    SWAP = "swap"
    DISPOSE = "dispose"
    DONATE = "donate"
    UNKNOWN = "unknown"


@dataclass
class TransactionInput:
    """The submitter-supplied part of a tracked transaction."""

    hash: str = ""
    chain_id: Optional[int] = None
    type: TransactionType = TransactionType.UNKNOWN
    title: str = ""
    description: str = ""
    value: Optional[int] = None
    to: Optional[str] = None
    from_address: Optional[str] = None
    data: Optional[str] = None
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    nonce: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueuedTransaction:
    """
    Immutable snapshot of one tracked transaction.

    Receipt fields (confirmed_at, receipt, block_number, block_hash) exist
    only on confirmed records, resolved_at only on terminal ones. The
    constructor rejects any other combination.
    """

    id: str
    hash: str
    chain_id: int
    type: TransactionType
    status: TransactionStatus
    title: str
    description: str
    submitted_at: datetime
    retry_count: int = 0

    # Submitter data
    value: Optional[int] = None
    to: Optional[str] = None
    from_address: Optional[str] = None
    data: Optional[str] = None
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    nonce: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Resolution
    resolved_at: Optional[datetime] = None
    error: Optional[TransactionErrorInfo] = None
    replaced_by: Optional[str] = None

    # Chain data
    confirmed_at: Optional[datetime] = None
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    receipt: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ValueError("retry_count cannot be negative")

        receipt_fields = {
            "confirmed_at": self.confirmed_at,
            "block_number": self.block_number,
            "receipt": self.receipt,
        }
        if self.status == TransactionStatus.CONFIRMED:
            missing = [name for name, value in receipt_fields.items() if value is None]
            if missing:
                raise ValueError(f"confirmed transaction missing {', '.join(missing)}")
        else:
            present = [name for name, value in receipt_fields.items() if value is not None]
            if self.block_hash is not None:
                present.append("block_hash")
            if present:
                raise ValueError(
                    f"{self.status.value} transaction cannot carry {', '.join(present)}"
                )

        if self.status == TransactionStatus.PENDING:
            if self.resolved_at is not None or self.error is not None:
                raise ValueError("pending transaction cannot carry resolution fields")
        elif self.resolved_at is None:
            raise ValueError(f"{self.status.value} transaction missing resolved_at")

        if self.error is not None and self.status not in (
            TransactionStatus.FAILED,
            TransactionStatus.TIMEOUT,
        ):
            raise ValueError(f"{self.status.value} transaction cannot carry an error")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def age_ms(self, now: datetime) -> float:
        return (now - self.submitted_at).total_seconds() * 1000

    def copy(self) -> "QueuedTransaction":
        """Independent copy; mutable members are not shared."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe camelCase view; large integers become decimal strings."""
        return {
            "id": self.id,
            "hash": self.hash,
            "chainId": self.chain_id,
            "type": self.type.value,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "submittedAt": self.submitted_at.isoformat(),
            "retryCount": self.retry_count,
            "value": _int_str(self.value),
            "to": self.to,
            "from": self.from_address,
            "data": self.data,
            "gasLimit": _int_str(self.gas_limit),
            "gasPrice": _int_str(self.gas_price),
            "nonce": self.nonce,
            "metadata": copy.deepcopy(self.metadata),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "error": self.error.to_dict() if self.error else None,
            "replacedBy": self.replaced_by,
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "blockNumber": _int_str(self.block_number),
            "blockHash": self.block_hash,
            "gasUsed": _int_str(self.gas_used),
            "effectiveGasPrice": _int_str(self.effective_gas_price),
            "receipt": copy.deepcopy(self.receipt),
        }


def _int_str(value: Optional[int]) -> Optional[str]:
    return str(value) if value is not None else None


# =============================================================================
# Resolved outcomes
# =============================================================================


@dataclass(frozen=True)
class Confirmed:
    """The adapter reported a successful receipt."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.CONFIRMED

    block_number: int
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    receipt: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Reverted:
    """The adapter reported a receipt with a failed status."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.FAILED

    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubmissionFailed:
    """The submitter reported that the transaction never made it on chain."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.FAILED

    message: str = "Transaction submission failed"


@dataclass(frozen=True)
class Cancelled:
    """The caller cancelled tracking before resolution."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.CANCELLED

    reason: Optional[str] = None


@dataclass(frozen=True)
class Replaced:
    """A different transaction was mined at the same nonce."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.REPLACED

    replaced_by: Optional[str] = None


@dataclass(frozen=True)
class TimedOut:
    """The resolution window elapsed without an adapter answer."""

    target_status: ClassVar[TransactionStatus] = TransactionStatus.TIMEOUT

    elapsed_ms: float = 0.0
    last_error: Optional[TransactionErrorInfo] = None


TransactionOutcome = Union[Confirmed, Reverted, SubmissionFailed, Cancelled, Replaced, TimedOut]


def outcome_error(outcome: TransactionOutcome, retry_count: int) -> Optional[TransactionErrorInfo]:
    """Structured error for outcomes that land in failed or timeout."""
    if isinstance(outcome, Reverted):
        details: Dict[str, Any] = {}
        if outcome.block_number is not None:
            details["blockNumber"] = str(outcome.block_number)
        if outcome.block_hash:
            details["blockHash"] = outcome.block_hash
        return TransactionErrorInfo(
            code="TRANSACTION_REVERTED",
            message=outcome.reason or "Transaction reverted",
            category=ErrorCategory.TRANSACTION_REVERTED,
            details=details,
        )
    if isinstance(outcome, SubmissionFailed):
        return TransactionErrorInfo(
            code="SUBMISSION_FAILED",
            message=outcome.message,
            category=ErrorCategory.SUBMISSION,
        )
    if isinstance(outcome, TimedOut):
        details = {"elapsedMs": int(outcome.elapsed_ms), "retryCount": retry_count}
        if outcome.last_error is not None:
            details["lastError"] = outcome.last_error.to_dict()
        return TransactionErrorInfo(
            code="CONFIRMATION_TIMEOUT",
            message="Transaction confirmation timeout",
            category=ErrorCategory.TIMEOUT,
            details=details,
        )
    return None


# =============================================================================
# Queries
# =============================================================================


@dataclass
class TransactionFilter:
    """Optional predicate for queue queries; unset fields match anything."""

    chain_id: Optional[int] = None
    status: Optional[TransactionStatus] = None
    type: Optional[TransactionType] = None

    def matches(self, tx: QueuedTransaction) -> bool:
        if self.chain_id is not None and tx.chain_id != self.chain_id:
            return False
        if self.status is not None and tx.status != self.status:
            return False
        if self.type is not None and tx.type != self.type:
            return False
        return True


@dataclass
class QueueStatistics:
    """Counts by status, derived from the registry on demand."""

    total: int = 0
    by_status: Dict[TransactionStatus, int] = field(
        default_factory=lambda: {status: 0 for status in TransactionStatus}
    )

    @classmethod
    def from_transactions(cls, transactions: List[QueuedTransaction]) -> "QueueStatistics":
        stats = cls()
        for tx in transactions:
            stats.total += 1
            stats.by_status[tx.status] += 1
        return stats

    @property
    def pending(self) -> int:
        return self.by_status[TransactionStatus.PENDING]

    @property
    def confirmed(self) -> int:
        return self.by_status[TransactionStatus.CONFIRMED]

    @property
    def failed(self) -> int:
        """Failed and timed-out transactions, as surfaced to users."""
        return self.by_status[TransactionStatus.FAILED] + self.by_status[TransactionStatus.TIMEOUT]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"total": self.total}
        data.update({status.value: count for status, count in self.by_status.items()})
        return data

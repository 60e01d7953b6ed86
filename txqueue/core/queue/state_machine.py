"""
Transaction State Machine

Transition table for tracked transactions and the pure function that
turns a pending snapshot plus a resolved outcome into its terminal
snapshot. The queue is the only caller that applies the result.
"""

import dataclasses
from datetime import datetime
from typing import Dict, FrozenSet

from .errors import InvalidTransitionError
from .models import (
    Cancelled,
    Confirmed,
    QueuedTransaction,
    Replaced,
    Reverted,
    TransactionOutcome,
    TransactionStatus,
    outcome_error,
)


# Every edge leaves pending; terminal states have none.
TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.CONFIRMED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
            TransactionStatus.REPLACED,
            TransactionStatus.TIMEOUT,
        }
    ),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REPLACED: frozenset(),
    TransactionStatus.TIMEOUT: frozenset(),
}


def allowed_transitions(from_status: TransactionStatus) -> FrozenSet[TransactionStatus]:
    """Get all statuses reachable in one step from the given status."""
    return TRANSITIONS.get(from_status, frozenset())


def can_transition(from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
    """Check if the edge is in the state graph."""
    return to_status in allowed_transitions(from_status)


def ensure_transition(from_status: TransactionStatus, to_status: TransactionStatus) -> None:
    """
    Validate an edge.

    Raises:
        InvalidTransitionError: If the edge is not in the state graph
    """
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(
            from_status=from_status,
            to_status=to_status,
            message=f"Invalid transition from {from_status.value} to {to_status.value}. "
                    f"Allowed: {sorted(s.value for s in allowed_transitions(from_status))}",
        )


def resolve(
    tx: QueuedTransaction,
    outcome: TransactionOutcome,
    now: datetime,
) -> QueuedTransaction:
    """
    Build the terminal snapshot for a pending transaction.

    Args:
        tx: Current snapshot, expected to be pending
        outcome: What the adapter or caller reported
        now: Resolution timestamp

    Returns:
        New snapshot; the input is left untouched

    Raises:
        InvalidTransitionError: If tx is not allowed to reach the outcome's status
    """
    to_status = outcome.target_status
    ensure_transition(tx.status, to_status)

    changes = {
        "status": to_status,
        "resolved_at": now,
        "error": outcome_error(outcome, tx.retry_count),
    }

    if isinstance(outcome, Confirmed):
        changes.update(
            confirmed_at=now,
            block_number=outcome.block_number,
            block_hash=outcome.block_hash,
            gas_used=outcome.gas_used,
            effective_gas_price=outcome.effective_gas_price,
            receipt=dict(outcome.receipt),
        )
    elif isinstance(outcome, Reverted):
        changes.update(
            gas_used=outcome.gas_used,
            effective_gas_price=outcome.effective_gas_price,
        )
    elif isinstance(outcome, Replaced):
        changes["replaced_by"] = outcome.replaced_by
    elif isinstance(outcome, Cancelled) and outcome.reason:
        metadata = dict(tx.metadata)
        metadata["cancelReason"] = outcome.reason
        changes["metadata"] = metadata

    return dataclasses.replace(tx, **changes)

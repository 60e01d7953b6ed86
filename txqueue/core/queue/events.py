"""
Queue Event Bus

In-process publish/subscribe for queue mutations. Listeners only ever see
snapshots; a failing listener is logged and skipped.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import QueuedTransaction, TransactionStatus

logger = logging.getLogger(__name__)


class QueueEventType(str, Enum):
    """Types of events published by the transaction queue."""

    TRANSACTION_ADDED = "TRANSACTION_ADDED"
    TRANSACTION_UPDATED = "TRANSACTION_UPDATED"      # Non-terminal change (retry count)
    TRANSACTION_CONFIRMED = "TRANSACTION_CONFIRMED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    TRANSACTION_CANCELLED = "TRANSACTION_CANCELLED"
    TRANSACTION_REPLACED = "TRANSACTION_REPLACED"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    TRANSACTION_REMOVED = "TRANSACTION_REMOVED"
    QUEUE_CLEARED = "QUEUE_CLEARED"


TERMINAL_EVENT_TYPES: Dict[TransactionStatus, QueueEventType] = {
    TransactionStatus.CONFIRMED: QueueEventType.TRANSACTION_CONFIRMED,
    TransactionStatus.FAILED: QueueEventType.TRANSACTION_FAILED,
    TransactionStatus.CANCELLED: QueueEventType.TRANSACTION_CANCELLED,
    TransactionStatus.REPLACED: QueueEventType.TRANSACTION_REPLACED,
    TransactionStatus.TIMEOUT: QueueEventType.TRANSACTION_TIMEOUT,
}


@dataclass(frozen=True)
class QueueEvent:
    """A single queue mutation as seen by listeners."""

    type: QueueEventType
    transaction: Optional[QueuedTransaction] = None
    transaction_id: Optional[str] = None
    chain_id: Optional[int] = None
    removed_ids: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_transaction(cls, event_type: QueueEventType, tx: QueuedTransaction) -> "QueueEvent":
        return cls(
            type=event_type,
            transaction=tx.copy(),
            transaction_id=tx.id,
            chain_id=tx.chain_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "transactionId": self.transaction_id,
            "chainId": self.chain_id,
            "removedIds": list(self.removed_ids),
            "createdAt": self.created_at.isoformat(),
        }


QueueEventListener = Callable[[QueueEvent], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """
    Synchronous fan-out of queue events.

    Delivery follows subscription order. Subscribing or unsubscribing
    while a publish is in progress only affects later publishes.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._listeners: List[Tuple[int, QueueEventListener]] = []
        self._tokens = count()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: QueueEventListener) -> Unsubscribe:
        """Register a listener; returns a handle that removes it again."""
        token = next(self._tokens)
        self._listeners.append((token, listener))

        def unsubscribe() -> None:
            self._listeners = [entry for entry in self._listeners if entry[0] != token]

        return unsubscribe

    def publish(self, event: QueueEvent) -> None:
        for _, listener in list(self._listeners):
            try:
                listener(_private_copy(event))
            except Exception:  # noqa: BLE001
                self.logger.exception(
                    "Queue event listener failed for %s (%s)",
                    event.type.value,
                    event.transaction_id,
                )

    def clear(self) -> None:
        self._listeners = []


def _private_copy(event: QueueEvent) -> QueueEvent:
    # Each listener gets its own record; metadata and receipt dicts are mutable.
    if event.transaction is None:
        return event
    return dataclasses.replace(event, transaction=event.transaction.copy())

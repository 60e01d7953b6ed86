"""
Read-only view over a transaction queue, optionally scoped to one chain.

Each property reads fresh snapshots, so a view never goes stale. Callback
registrations made through the view are released by close().
"""

from typing import Callable, List, Optional

from .events import QueueEvent, QueueEventType, Unsubscribe
from .models import QueuedTransaction, TransactionStatus, TransactionType
from .queue import TransactionQueue

TransactionCallback = Callable[[QueuedTransaction], None]


class TransactionQueueView:
    def __init__(self, queue: TransactionQueue, chain_id: Optional[int] = None):
        self.queue = queue
        self.chain_id = chain_id
        self._unsubscribers: List[Unsubscribe] = []

    # ---------------------------
    # Snapshots
    # ---------------------------
    @property
    def transactions(self) -> List[QueuedTransaction]:
        return self.queue.get_transactions(chain_id=self.chain_id)

    @property
    def pending_transactions(self) -> List[QueuedTransaction]:
        return self.queue.get_transactions(chain_id=self.chain_id, status=TransactionStatus.PENDING)

    @property
    def confirmed_transactions(self) -> List[QueuedTransaction]:
        return self.queue.get_transactions(chain_id=self.chain_id, status=TransactionStatus.CONFIRMED)

    @property
    def failed_transactions(self) -> List[QueuedTransaction]:
        """Failed and timed-out transactions."""
        return [
            tx
            for tx in self.transactions
            if tx.status in (TransactionStatus.FAILED, TransactionStatus.TIMEOUT)
        ]

    def get_transaction(self, transaction_id: str) -> Optional[QueuedTransaction]:
        tx = self.queue.get_transaction(transaction_id)
        if tx is None or (self.chain_id is not None and tx.chain_id != self.chain_id):
            return None
        return tx

    def get_by_chain(self, chain_id: int) -> List[QueuedTransaction]:
        if self.chain_id is not None and chain_id != self.chain_id:
            return []
        return self.queue.get_transactions(chain_id=chain_id)

    def get_by_status(self, status: TransactionStatus) -> List[QueuedTransaction]:
        return self.queue.get_transactions(chain_id=self.chain_id, status=status)

    def get_by_type(self, type: TransactionType) -> List[QueuedTransaction]:
        return self.queue.get_transactions(chain_id=self.chain_id, type=type)

    # ---------------------------
    # Counts and flags
    # ---------------------------
    @property
    def total_count(self) -> int:
        return len(self.transactions)

    @property
    def pending_count(self) -> int:
        return len(self.pending_transactions)

    @property
    def confirmed_count(self) -> int:
        return len(self.confirmed_transactions)

    @property
    def failed_count(self) -> int:
        return len(self.failed_transactions)

    @property
    def has_pending(self) -> bool:
        return self.pending_count > 0

    @property
    def has_failed(self) -> bool:
        return self.failed_count > 0

    @property
    def is_processing(self) -> bool:
        return self.has_pending

    # ---------------------------
    # Callbacks
    # ---------------------------
    def on_transaction_added(self, callback: TransactionCallback) -> Unsubscribe:
        return self._on(QueueEventType.TRANSACTION_ADDED, callback)

    def on_transaction_confirmed(self, callback: TransactionCallback) -> Unsubscribe:
        return self._on(QueueEventType.TRANSACTION_CONFIRMED, callback)

    def on_transaction_failed(self, callback: TransactionCallback) -> Unsubscribe:
        return self._on(QueueEventType.TRANSACTION_FAILED, callback)

    def _on(self, event_type: QueueEventType, callback: TransactionCallback) -> Unsubscribe:
        def listener(event: QueueEvent) -> None:
            if event.type != event_type or event.transaction is None:
                return
            if self.chain_id is not None and event.chain_id != self.chain_id:
                return
            callback(event.transaction)

        unsubscribe = self.queue.subscribe(listener)
        self._unsubscribers.append(unsubscribe)

        def release() -> None:
            unsubscribe()
            if unsubscribe in self._unsubscribers:
                self._unsubscribers.remove(unsubscribe)

        return release

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

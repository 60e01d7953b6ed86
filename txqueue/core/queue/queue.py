"""
Transaction Queue

Authoritative in-memory registry of tracked transactions. Every mutation
is written through to the durable store before its event is published.
Status changes arrive only through the internal transition methods used
by the reconciliation worker, or through the explicit cancel and
submission-failure calls.
"""

import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .config import QueueConfig
from .errors import InvalidTransactionInput, InvalidTransitionError
from .events import (
    TERMINAL_EVENT_TYPES,
    EventBus,
    QueueEvent,
    QueueEventListener,
    QueueEventType,
    Unsubscribe,
)
from .models import (
    Cancelled,
    QueuedTransaction,
    QueueStatistics,
    SubmissionFailed,
    TransactionFilter,
    TransactionInput,
    TransactionOutcome,
    TransactionStatus,
    TransactionType,
)
from .state_machine import ensure_transition, resolve
from .store import DurableStore, create_store


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionQueue:
    """
    Tracks submitted transactions from pending to a terminal status.

    Features:
    - Loads persisted records on construction, resuming pending ones
    - Writes through to the store on every mutation (degraded, in-memory
      mode when the store fails)
    - Publishes one event per mutation; terminal events exactly once
    - Returns independent snapshots only
    """

    def __init__(
        self,
        store: Optional[DurableStore] = None,
        *,
        config: Optional[QueueConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QueueConfig()
        self.store = store if store is not None else create_store(self.config)
        self.bus = bus or EventBus()
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or utcnow
        self._id_factory = id_factory or (lambda: uuid4().hex)

        # Insertion ordered; dict order is the query order
        self._transactions: Dict[str, QueuedTransaction] = {}
        self._issued_ids: set[str] = set()
        self.is_durable = True

        self._load()

    # =========================================================================
    # Consumer API
    # =========================================================================

    def add_transaction(self, transaction: TransactionInput) -> QueuedTransaction:
        """
        Start tracking a submitted transaction.

        Returns:
            The new pending snapshot

        Raises:
            InvalidTransactionInput: If hash or chain_id is missing, or the
                chain is outside this queue's chain filter
        """
        self._validate_input(transaction)

        record = QueuedTransaction(
            id=self._new_id(),
            hash=transaction.hash,
            chain_id=transaction.chain_id,
            type=TransactionType(transaction.type),
            status=TransactionStatus.PENDING,
            title=transaction.title,
            description=transaction.description,
            submitted_at=self._clock(),
            retry_count=0,
            value=transaction.value,
            to=transaction.to,
            from_address=transaction.from_address,
            data=transaction.data,
            gas_limit=transaction.gas_limit,
            gas_price=transaction.gas_price,
            nonce=transaction.nonce,
            metadata=dict(transaction.metadata or {}),
        )

        evicted = self._evict_for_capacity()
        self._transactions[record.id] = record
        self._persist()

        for old in evicted:
            self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_REMOVED, old))
        self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_ADDED, record))

        self._trace("Transaction added to queue: %s (%s on chain %s)", record.id, record.hash, record.chain_id)
        return record.copy()

    def remove_transaction(self, transaction_id: str) -> bool:
        """Stop tracking a transaction regardless of status."""
        record = self._transactions.pop(transaction_id, None)
        if record is None:
            return False

        self._persist()
        self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_REMOVED, record))
        self._trace("Transaction removed from queue: %s", transaction_id)
        return True

    def clear_queue(self, chain_id: Optional[int] = None) -> int:
        """
        Remove every record, or every record on one chain.

        Publishes one TRANSACTION_REMOVED per record, then QUEUE_CLEARED.

        Returns:
            Number of records removed
        """
        removed = [
            record
            for record in self._transactions.values()
            if chain_id is None or record.chain_id == chain_id
        ]
        for record in removed:
            del self._transactions[record.id]

        self._persist()

        for record in removed:
            self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_REMOVED, record))
        self.bus.publish(
            QueueEvent(
                type=QueueEventType.QUEUE_CLEARED,
                chain_id=chain_id,
                removed_ids=tuple(record.id for record in removed),
            )
        )

        self._trace(
            "Transaction queue cleared%s (%d removed)",
            f" for chain {chain_id}" if chain_id is not None else "",
            len(removed),
        )
        return len(removed)

    def cancel_transaction(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
    ) -> Optional[QueuedTransaction]:
        """
        Cancel a pending transaction before it resolves.

        Returns:
            The cancelled snapshot, or None if the id is unknown

        Raises:
            InvalidTransitionError: If the transaction already reached a terminal status
        """
        return self._explicit_outcome(transaction_id, Cancelled(reason=reason))

    def mark_submission_failed(
        self,
        transaction_id: str,
        message: str = "Transaction submission failed",
    ) -> Optional[QueuedTransaction]:
        """
        Record that a pending transaction never made it on chain.

        Raises:
            InvalidTransitionError: If the transaction already reached a terminal status
        """
        return self._explicit_outcome(transaction_id, SubmissionFailed(message=message))

    def get_transaction(self, transaction_id: str) -> Optional[QueuedTransaction]:
        record = self._transactions.get(transaction_id)
        return record.copy() if record is not None else None

    def get_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
        *,
        chain_id: Optional[int] = None,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
    ) -> List[QueuedTransaction]:
        """Snapshots in insertion order, optionally filtered."""
        predicate = filter or TransactionFilter(chain_id=chain_id, status=status, type=type)
        return [record.copy() for record in self._transactions.values() if predicate.matches(record)]

    def get_pending(self) -> List[QueuedTransaction]:
        return self.get_transactions(status=TransactionStatus.PENDING)

    def get_statistics(self) -> QueueStatistics:
        return QueueStatistics.from_transactions(list(self._transactions.values()))

    def subscribe(self, listener: QueueEventListener) -> Unsubscribe:
        return self.bus.subscribe(listener)

    def prune(self, now: Optional[datetime] = None) -> int:
        """
        Drop terminal records resolved longer ago than the retention window.

        Returns:
            Number of records pruned (always 0 when retention is unset)
        """
        if not self.config.pruning_enabled:
            return 0

        cutoff = (now or self._clock()) - timedelta(milliseconds=self.config.retention_ms)
        expired = [
            record
            for record in self._transactions.values()
            if record.is_terminal and record.resolved_at is not None and record.resolved_at <= cutoff
        ]
        if not expired:
            return 0

        for record in expired:
            del self._transactions[record.id]
        self._persist()
        for record in expired:
            self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_REMOVED, record))

        self._trace("Pruned %d terminal transactions", len(expired))
        return len(expired)

    def close(self) -> None:
        """Detach every listener. Persisted records are left as they are."""
        self.bus.clear()

    def __len__(self) -> int:
        return len(self._transactions)

    def __contains__(self, transaction_id: object) -> bool:
        return transaction_id in self._transactions

    @property
    def clock(self) -> Clock:
        return self._clock

    # =========================================================================
    # Worker API
    # =========================================================================

    def _apply_outcome(
        self,
        transaction_id: str,
        outcome: TransactionOutcome,
    ) -> Optional[QueuedTransaction]:
        """
        Apply a resolved outcome to a pending record.

        A removed record is a silent no-op. An edge outside the state graph
        is logged and dropped; the first resolution of a record wins.
        """
        current = self._transactions.get(transaction_id)
        if current is None:
            self.logger.debug(
                "Ignoring %s outcome for removed transaction %s",
                outcome.target_status.value,
                transaction_id,
            )
            return None

        try:
            updated = resolve(current, outcome, self._clock())
        except InvalidTransitionError as exc:
            self.logger.warning("Rejected transition for transaction %s: %s", transaction_id, exc.message)
            return None

        return self._commit_transition(updated)

    def _record_unresolved(self, transaction_id: str) -> Optional[QueuedTransaction]:
        """Count one more unresolved check against a still-pending record."""
        current = self._transactions.get(transaction_id)
        if current is None or not current.is_pending:
            return None

        updated = dataclasses.replace(current, retry_count=current.retry_count + 1)
        self._transactions[transaction_id] = updated
        self._persist()
        self.bus.publish(QueueEvent.for_transaction(QueueEventType.TRANSACTION_UPDATED, updated))
        return updated.copy()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _explicit_outcome(
        self,
        transaction_id: str,
        outcome: TransactionOutcome,
    ) -> Optional[QueuedTransaction]:
        current = self._transactions.get(transaction_id)
        if current is None:
            return None
        ensure_transition(current.status, outcome.target_status)
        return self._commit_transition(resolve(current, outcome, self._clock()))

    def _commit_transition(self, updated: QueuedTransaction) -> QueuedTransaction:
        self._transactions[updated.id] = updated
        self._persist()
        self.bus.publish(QueueEvent.for_transaction(TERMINAL_EVENT_TYPES[updated.status], updated))

        self.logger.info(
            "Transaction %s: pending -> %s (retries=%d)",
            updated.id,
            updated.status.value,
            updated.retry_count,
        )
        return updated.copy()

    def _validate_input(self, transaction: TransactionInput) -> None:
        if not transaction.hash:
            raise InvalidTransactionInput("Transaction hash is required", field_name="hash")
        if transaction.chain_id is None:
            raise InvalidTransactionInput("Transaction chain_id is required", field_name="chain_id")
        if isinstance(transaction.chain_id, bool) or not isinstance(transaction.chain_id, int):
            raise InvalidTransactionInput("Transaction chain_id must be an integer", field_name="chain_id")

        chain_filter = self.config.chain_id_filter
        if chain_filter is not None and transaction.chain_id != chain_filter:
            raise InvalidTransactionInput(
                f"This queue only tracks chain {chain_filter}, got {transaction.chain_id}",
                field_name="chain_id",
            )

        try:
            TransactionType(transaction.type)
        except ValueError:
            raise InvalidTransactionInput(
                f"Unknown transaction type {transaction.type!r}",
                field_name="type",
            ) from None

    def _new_id(self) -> str:
        while True:
            candidate = self._id_factory()
            if candidate not in self._issued_ids and candidate not in self._transactions:
                self._issued_ids.add(candidate)
                return candidate
            self.logger.warning("Generated duplicate transaction id %s; regenerating", candidate)

    def _evict_for_capacity(self) -> List[QueuedTransaction]:
        """Make room for one record by dropping the oldest terminal ones."""
        evicted: List[QueuedTransaction] = []
        while len(self._transactions) >= self.config.max_queue_size:
            terminal = [record for record in self._transactions.values() if record.is_terminal]
            if not terminal:
                self.logger.warning(
                    "Transaction queue over capacity (%d >= %d) with only pending records",
                    len(self._transactions),
                    self.config.max_queue_size,
                )
                break
            oldest = min(terminal, key=lambda record: record.submitted_at)
            del self._transactions[oldest.id]
            evicted.append(oldest)
        return evicted

    def _load(self) -> None:
        try:
            records = self.store.load()
        except Exception as exc:  # noqa: BLE001
            self.is_durable = False
            self.logger.error(
                "Failed to load persisted transactions; continuing in memory: %s",
                exc,
                exc_info=True,
            )
            return

        chain_filter = self.config.chain_id_filter
        for record in records:
            if chain_filter is not None and record.chain_id != chain_filter:
                self.logger.warning(
                    "Skipping persisted transaction %s on chain %s (queue tracks chain %s)",
                    record.id,
                    record.chain_id,
                    chain_filter,
                )
                continue
            self._transactions[record.id] = record
            self._issued_ids.add(record.id)

        self._trace(
            "Loaded %d persisted transactions (%d pending)",
            len(self._transactions),
            sum(1 for record in self._transactions.values() if record.is_pending),
        )

    def _persist(self) -> bool:
        try:
            self.store.save(list(self._transactions.values()))
        except Exception as exc:  # noqa: BLE001
            if self.is_durable:
                self.logger.error(
                    "Failed to persist transactions; continuing in memory: %s",
                    exc,
                    exc_info=True,
                )
            self.is_durable = False
            return False

        if not self.is_durable:
            self.logger.info("Transaction store writable again; queue is durable")
        self.is_durable = True
        return True

    def _trace(self, message: str, *args: object) -> None:
        if self.config.debug:
            self.logger.info(message, *args)

"""
Transaction lifecycle queue.

Tracks submitted blockchain transactions from pending to a terminal
status, persists them across restarts, and notifies listeners of every
change.
"""

from .config import QueueConfig
from .errors import (
    ChainAdapterError,
    ErrorCategory,
    InvalidTransactionInput,
    InvalidTransitionError,
    NetworkError,
    QueueError,
    RateLimitError,
    StoreError,
    TransactionErrorInfo,
    classify_adapter_error,
)
from .events import EventBus, QueueEvent, QueueEventType
from .factories import (
    create_approval_transaction,
    create_disposal_transaction,
    create_donation_transaction,
    create_transfer_transaction,
)
from .models import (
    TERMINAL_STATUSES,
    Cancelled,
    Confirmed,
    QueuedTransaction,
    QueueStatistics,
    Replaced,
    Reverted,
    SubmissionFailed,
    TimedOut,
    TransactionFilter,
    TransactionInput,
    TransactionOutcome,
    TransactionStatus,
    TransactionType,
)
from .queue import TransactionQueue
from .state_machine import TRANSITIONS, can_transition, ensure_transition
from .store import DurableStore, JsonFileStore, MemoryStore, create_store
from .views import TransactionQueueView
from .worker import (
    BackoffSchedule,
    CycleReport,
    FixedIntervalSchedule,
    PollResult,
    ReconciliationWorker,
)

__all__ = [
    # Config
    "QueueConfig",
    # Errors
    "ChainAdapterError",
    "ErrorCategory",
    "InvalidTransactionInput",
    "InvalidTransitionError",
    "NetworkError",
    "QueueError",
    "RateLimitError",
    "StoreError",
    "TransactionErrorInfo",
    "classify_adapter_error",
    # Events
    "EventBus",
    "QueueEvent",
    "QueueEventType",
    # Factories
    "create_approval_transaction",
    "create_disposal_transaction",
    "create_donation_transaction",
    "create_transfer_transaction",
    # Models
    "TERMINAL_STATUSES",
    "Cancelled",
    "Confirmed",
    "QueuedTransaction",
    "QueueStatistics",
    "Replaced",
    "Reverted",
    "SubmissionFailed",
    "TimedOut",
    "TransactionFilter",
    "TransactionInput",
    "TransactionOutcome",
    "TransactionStatus",
    "TransactionType",
    # State machine
    "TRANSITIONS",
    "can_transition",
    "ensure_transition",
    # Queue
    "TransactionQueue",
    "TransactionQueueView",
    # Store
    "DurableStore",
    "JsonFileStore",
    "MemoryStore",
    "create_store",
    # Worker
    "BackoffSchedule",
    "CycleReport",
    "FixedIntervalSchedule",
    "PollResult",
    "ReconciliationWorker",
]

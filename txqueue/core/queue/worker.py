from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import QueueConfig
from .errors import TransactionErrorInfo, classify_adapter_error
from .events import TERMINAL_EVENT_TYPES, QueueEvent, QueueEventType
from .models import Confirmed, Replaced, Reverted, TimedOut, TransactionOutcome
from .queue import Clock, TransactionQueue
from ...providers.base import ChainAdapter, ChainState, ChainTransactionStatus


class PollResult(str, Enum):
    RESOLVED = "resolved"        # Terminal outcome applied
    UNRESOLVED = "unresolved"    # Still not found / pending on chain
    ERROR = "error"              # Adapter failed; counted as a retry
    TIMED_OUT = "timed_out"      # Forced into timeout
    SKIPPED = "skipped"          # Removed or resolved while in flight


class FixedIntervalSchedule:
    """Constant polling cadence."""

    def __init__(self, interval_ms: int) -> None:
        self.interval_ms = interval_ms

    def next_delay(self, consecutive_errors: int = 0) -> float:
        return self.interval_ms / 1000


class BackoffSchedule(FixedIntervalSchedule):
    """Stretches the cadence while the adapter keeps failing."""

    def __init__(self, interval_ms: int, max_multiplier: int = 5) -> None:
        super().__init__(interval_ms)
        self.max_multiplier = max_multiplier

    def next_delay(self, consecutive_errors: int = 0) -> float:
        multiplier = min(max(1, consecutive_errors), self.max_multiplier)
        return self.interval_ms * multiplier / 1000


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    polled: int = 0
    skipped_in_flight: int = 0
    results: Dict[PollResult, int] = field(default_factory=lambda: {result: 0 for result in PollResult})
    pruned: int = 0

    def count(self, result: PollResult) -> int:
        return self.results[result]


class ReconciliationWorker:
    """
    Polls the chain adapter for every pending transaction.

    At most one adapter call is outstanding per transaction id; chains are
    throttled independently so a slow chain never holds up another.
    """

    def __init__(
        self,
        queue: TransactionQueue,
        adapter: ChainAdapter,
        *,
        config: Optional[QueueConfig] = None,
        clock: Optional[Clock] = None,
        schedule: Optional[FixedIntervalSchedule] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.queue = queue
        self.adapter = adapter
        self.config = config or queue.config
        self.schedule = schedule or BackoffSchedule(self.config.poll_interval_ms)
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or queue.clock
        self._sleep = sleep

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._chain_limits: Dict[int, asyncio.Semaphore] = {}
        self._last_errors: Dict[str, TransactionErrorInfo] = {}
        self._loop_task: asyncio.Task | None = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._running = False

        self.cycle_count = 0
        self.consecutive_errors = 0
        self.last_cycle_at: Optional[datetime] = None

        # Per-transaction state on the worker and adapter is dropped once a record leaves pending
        self._detach_cleanup = self.queue.subscribe(self._on_record_settled)

    # ---------------------------
    # Lifecycle
    # ---------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._unsubscribe = self.queue.subscribe(self._on_queue_event)
        self._loop_task = asyncio.create_task(self._run_loop(), name="txqueue-reconciliation-loop")
        self.logger.info(
            "Reconciliation worker starting; interval=%sms timeout=%sms pending=%d",
            self.config.poll_interval_ms,
            self.config.timeout_ms,
            len(self.queue.get_pending()),
        )

    async def stop(self) -> None:
        """Stop the loop and cancel every outstanding poll, on-demand checks included."""
        if self._running:
            self._running = False
            self.logger.info("Reconciliation worker stopping")

            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None

            if self._loop_task:
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass
                self._loop_task = None

        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    async def close(self) -> None:
        """Stop, then stop listening to the queue altogether."""
        await self.stop()
        if self._detach_cleanup:
            self._detach_cleanup()
            self._detach_cleanup = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight_ids(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    # ---------------------------
    # Scheduling
    # ---------------------------
    async def run_cycle(self) -> CycleReport:
        """Poll every pending transaction not already in flight and wait for those polls."""
        report = CycleReport(started_at=self._clock())
        tasks = []
        for tx in self.queue.get_pending():
            task = self._spawn_poll(tx.id)
            if task is None:
                report.skipped_in_flight += 1
                continue
            tasks.append(task)

        report.polled = len(tasks)
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, BaseException):
                self.logger.error("Transaction poll crashed: %s", outcome, exc_info=outcome)
                report.results[PollResult.ERROR] += 1
            else:
                report.results[outcome] += 1

        report.pruned = self.queue.prune()
        self._finish_cycle(report)
        return report

    async def poll_now(self, transaction_id: str) -> bool:
        """
        Check one pending transaction right away and wait for the answer.

        Returns:
            False if the transaction is missing, no longer pending, already
            being checked, or the worker stopped before the answer arrived
        """
        tx = self.queue.get_transaction(transaction_id)
        if tx is None or not tx.is_pending:
            return False
        task = self._spawn_poll(transaction_id)
        if task is None:
            return False
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Worker stopped underneath the check
                return False
            raise
        self.logger.debug("On-demand check of %s: %s", transaction_id, result.value)
        return True

    async def _run_loop(self) -> None:
        try:
            while self._running:
                try:
                    self._tick()
                except Exception as exc:  # noqa: BLE001
                    self.logger.error("Reconciliation tick failed: %s", exc, exc_info=True)
                await self._sleep(self.schedule.next_delay(self.consecutive_errors))
        except asyncio.CancelledError:
            return

    def _tick(self) -> None:
        for tx in self.queue.get_pending():
            task = self._spawn_poll(tx.id)
            if task is not None:
                task.add_done_callback(self._on_poll_done)
        self.queue.prune()
        self.cycle_count += 1
        self.last_cycle_at = self._clock()

    def _spawn_poll(self, transaction_id: str) -> Optional[asyncio.Task]:
        if transaction_id in self._in_flight:
            return None
        task = asyncio.create_task(self._poll(transaction_id), name=f"txqueue-poll-{transaction_id}")
        self._in_flight[transaction_id] = task
        task.add_done_callback(
            lambda t, transaction_id=transaction_id: self._release(transaction_id, t)
        )
        return task

    def _release(self, transaction_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(transaction_id) is task:
            del self._in_flight[transaction_id]

    def _on_poll_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Transaction poll crashed: %s", exc, exc_info=exc)
            self.consecutive_errors += 1
            return
        result = task.result()
        if result == PollResult.ERROR:
            self.consecutive_errors += 1
        elif result in (PollResult.RESOLVED, PollResult.UNRESOLVED, PollResult.TIMED_OUT):
            self.consecutive_errors = 0

    def _on_queue_event(self, event: QueueEvent) -> None:
        if not self._running or event.type != QueueEventType.TRANSACTION_ADDED:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Added from outside the event loop; the next tick picks it up.
            return
        task = self._spawn_poll(event.transaction_id)
        if task is not None:
            task.add_done_callback(self._on_poll_done)

    def _on_record_settled(self, event: QueueEvent) -> None:
        tx = event.transaction
        if tx is None or event.type not in _SETTLED_EVENT_TYPES:
            return
        self._last_errors.pop(tx.id, None)
        still_tracked = any(
            other.chain_id == tx.chain_id and other.hash.lower() == tx.hash.lower()
            for other in self.queue.get_pending()
        )
        if not still_tracked:
            self.adapter.forget(tx.hash, tx.chain_id)

    def _finish_cycle(self, report: CycleReport) -> None:
        self.cycle_count += 1
        self.last_cycle_at = report.started_at
        errors = report.count(PollResult.ERROR)
        if report.polled and errors == report.polled:
            self.consecutive_errors += 1
        elif report.polled:
            self.consecutive_errors = 0

    # ---------------------------
    # Polling
    # ---------------------------
    async def _poll(self, transaction_id: str) -> PollResult:
        tx = self.queue.get_transaction(transaction_id)
        if tx is None or not tx.is_pending:
            return PollResult.SKIPPED

        async with self._chain_limit(tx.chain_id):
            try:
                status = await self.adapter.get_transaction_status(tx.hash, tx.chain_id)
            except Exception as exc:  # noqa: BLE001
                error = classify_adapter_error(exc)
                self._last_errors[transaction_id] = error
                self.logger.warning(
                    "Status check failed for %s on chain %s: %s",
                    tx.hash,
                    tx.chain_id,
                    error.message,
                )
                return self._handle_unresolved(transaction_id, PollResult.ERROR)

        outcome = self._outcome_for(tx.hash, status)
        if outcome is None:
            return self._handle_unresolved(transaction_id, PollResult.UNRESOLVED)

        applied = self.queue._apply_outcome(transaction_id, outcome)
        self._last_errors.pop(transaction_id, None)
        return PollResult.RESOLVED if applied is not None else PollResult.SKIPPED

    def _handle_unresolved(self, transaction_id: str, result: PollResult) -> PollResult:
        updated = self.queue._record_unresolved(transaction_id)
        if updated is None:
            self._last_errors.pop(transaction_id, None)
            return PollResult.SKIPPED

        age_ms = updated.age_ms(self._clock())
        if age_ms > self.config.timeout_ms or updated.retry_count >= self.config.max_retries:
            outcome = TimedOut(
                elapsed_ms=age_ms,
                last_error=self._last_errors.pop(transaction_id, None),
            )
            if self.queue._apply_outcome(transaction_id, outcome) is not None:
                return PollResult.TIMED_OUT
        return result

    def _outcome_for(self, tx_hash: str, status: ChainTransactionStatus) -> Optional[TransactionOutcome]:
        state = ChainState(status.state)
        if state == ChainState.CONFIRMED:
            if status.block_number is None:
                self.logger.warning("Adapter confirmed %s without a block number; retrying", tx_hash)
                return None
            return Confirmed(
                block_number=status.block_number,
                block_hash=status.block_hash,
                gas_used=status.gas_used,
                effective_gas_price=status.effective_gas_price,
                receipt=dict(status.receipt or {}),
            )
        if state == ChainState.REVERTED:
            return Reverted(
                block_number=status.block_number,
                block_hash=status.block_hash,
                gas_used=status.gas_used,
                effective_gas_price=status.effective_gas_price,
            )
        if state == ChainState.REPLACED:
            return Replaced(replaced_by=status.replaced_by)
        return None

    def _chain_limit(self, chain_id: int) -> asyncio.Semaphore:
        limiter = self._chain_limits.get(chain_id)
        if limiter is None:
            limiter = asyncio.Semaphore(self.config.max_concurrent_polls_per_chain)
            self._chain_limits[chain_id] = limiter
        return limiter

    # ---------------------------
    # Introspection
    # ---------------------------
    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "adapter": self.adapter.name,
            "inflight": len(self._in_flight),
            "cycle_count": self.cycle_count,
            "last_cycle_at": _iso(self.last_cycle_at),
            "consecutive_errors": self.consecutive_errors,
            "next_delay_seconds": self.schedule.next_delay(self.consecutive_errors),
        }


_SETTLED_EVENT_TYPES = frozenset(TERMINAL_EVENT_TYPES.values()) | {QueueEventType.TRANSACTION_REMOVED}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None

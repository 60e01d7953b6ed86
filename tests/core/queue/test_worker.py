"""
Tests for the Reconciliation Worker

Drives the worker with a scripted chain adapter and a fake clock.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from txqueue.core.queue import (
    BackoffSchedule,
    ErrorCategory,
    FixedIntervalSchedule,
    NetworkError,
    PollResult,
    QueueConfig,
    QueueEventType,
    ReconciliationWorker,
    TransactionStatus,
)
from txqueue.providers import ChainAdapter, ChainState, ChainTransactionStatus

HASH_A = "0x" + "a" * 64
HASH_B = "0x" + "b" * 64


async def settle(predicate, attempts: int = 100) -> bool:
    """Yield to the event loop until predicate holds or attempts run out."""
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def status_of(queue, tx_id):
    return queue.get_transaction(tx_id).status


# =============================================================================
# Outcome mapping
# =============================================================================

class TestOutcomes:
    @pytest.mark.asyncio
    async def test_confirms_pending_transaction(self, queue, worker, adapter, tx_input, events):
        tx = queue.add_transaction(tx_input())
        adapter.confirm(HASH_A, block_number=123)

        report = await worker.run_cycle()

        confirmed = queue.get_transaction(tx.id)
        assert confirmed.status == TransactionStatus.CONFIRMED
        assert confirmed.block_number == 123
        assert confirmed.gas_used == 21_000
        assert confirmed.receipt["status"] == "0x1"
        assert report.polled == 1
        assert report.count(PollResult.RESOLVED) == 1
        assert events[-1].type == QueueEventType.TRANSACTION_CONFIRMED
        assert adapter.calls == [(HASH_A, 1)]

    @pytest.mark.asyncio
    async def test_revert_becomes_failed(self, queue, worker, adapter, tx_input, events):
        tx = queue.add_transaction(tx_input())
        adapter.revert(HASH_A, block_number=77)

        await worker.run_cycle()

        failed = queue.get_transaction(tx.id)
        assert failed.status == TransactionStatus.FAILED
        assert failed.error.category == ErrorCategory.TRANSACTION_REVERTED
        assert failed.error.details["blockNumber"] == "77"
        assert failed.block_number is None
        assert events[-1].type == QueueEventType.TRANSACTION_FAILED

    @pytest.mark.asyncio
    async def test_replacement_recorded(self, queue, worker, adapter, tx_input, events):
        tx = queue.add_transaction(tx_input())
        adapter.script(HASH_A, ChainTransactionStatus(state=ChainState.REPLACED, replaced_by=HASH_B))

        await worker.run_cycle()

        replaced = queue.get_transaction(tx.id)
        assert replaced.status == TransactionStatus.REPLACED
        assert replaced.replaced_by == HASH_B
        assert len(queue) == 1
        assert events[-1].type == QueueEventType.TRANSACTION_REPLACED

    @pytest.mark.asyncio
    async def test_confirmation_without_block_number_is_not_trusted(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.script(HASH_A, ChainTransactionStatus(state=ChainState.CONFIRMED))

        report = await worker.run_cycle()

        assert status_of(queue, tx.id) == TransactionStatus.PENDING
        assert report.count(PollResult.UNRESOLVED) == 1

    @pytest.mark.asyncio
    async def test_adapter_receives_hash_and_chain(self, queue, clock, tx_input):
        adapter = MagicMock(spec=ChainAdapter)
        adapter.name = "mock"
        adapter.get_transaction_status = AsyncMock(
            return_value=ChainTransactionStatus(state=ChainState.PENDING)
        )
        worker = ReconciliationWorker(queue, adapter, clock=clock)
        queue.add_transaction(tx_input(chain_id=8453))

        await worker.run_cycle()

        adapter.get_transaction_status.assert_awaited_once_with(HASH_A, 8453)

    @pytest.mark.asyncio
    async def test_terminal_records_are_not_polled(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        queue.cancel_transaction(tx.id)

        report = await worker.run_cycle()

        assert report.polled == 0
        assert adapter.calls == []


# =============================================================================
# Retries and timeout
# =============================================================================

class TestRetriesAndTimeout:
    @pytest.mark.asyncio
    async def test_not_found_counts_a_retry(self, queue, worker, tx_input, events):
        tx = queue.add_transaction(tx_input())

        await worker.run_cycle()
        await worker.run_cycle()

        pending = queue.get_transaction(tx.id)
        assert pending.status == TransactionStatus.PENDING
        assert pending.retry_count == 2
        assert [e.type for e in events[1:]] == [QueueEventType.TRANSACTION_UPDATED] * 2

    @pytest.mark.asyncio
    async def test_adapter_error_never_fails_a_transaction(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.script(HASH_A, RuntimeError("boom"))

        for _ in range(3):
            report = await worker.run_cycle()
            assert report.count(PollResult.ERROR) == 1

        pending = queue.get_transaction(tx.id)
        assert pending.status == TransactionStatus.PENDING
        assert pending.retry_count == 3

    @pytest.mark.asyncio
    async def test_timeout_only_after_window_elapses(self, queue, worker, clock, tx_input, events):
        tx = queue.add_transaction(tx_input())

        clock.advance(ms=60_000)
        await worker.run_cycle()
        assert status_of(queue, tx.id) == TransactionStatus.PENDING

        clock.advance(ms=1)
        report = await worker.run_cycle()

        timed_out = queue.get_transaction(tx.id)
        assert timed_out.status == TransactionStatus.TIMEOUT
        assert timed_out.error.code == "CONFIRMATION_TIMEOUT"
        assert timed_out.error.details["elapsedMs"] == 60_001
        assert report.count(PollResult.TIMED_OUT) == 1
        assert events[-1].type == QueueEventType.TRANSACTION_TIMEOUT

    @pytest.mark.asyncio
    async def test_timeout_carries_last_adapter_error(self, queue, worker, adapter, clock, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.script(HASH_A, NetworkError("rpc down"))
        clock.advance(ms=60_001)

        await worker.run_cycle()

        error = queue.get_transaction(tx.id).error
        assert error.details["lastError"]["category"] == "network"
        assert error.details["lastError"]["message"] == "rpc down"

    @pytest.mark.asyncio
    async def test_late_confirmation_still_wins(self, queue, worker, adapter, clock, tx_input):
        tx = queue.add_transaction(tx_input())
        clock.advance(seconds=600)
        adapter.confirm(HASH_A)

        await worker.run_cycle()

        assert status_of(queue, tx.id) == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_max_retries_forces_timeout_inside_window(self, queue, adapter, clock, tx_input):
        worker = ReconciliationWorker(
            queue,
            adapter,
            config=QueueConfig(timeout_ms=60_000, max_retries=3),
            clock=clock,
        )
        tx = queue.add_transaction(tx_input())

        await worker.run_cycle()
        await worker.run_cycle()
        assert status_of(queue, tx.id) == TransactionStatus.PENDING

        await worker.run_cycle()
        timed_out = queue.get_transaction(tx.id)
        assert timed_out.status == TransactionStatus.TIMEOUT
        assert timed_out.error.details["retryCount"] == 3


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_call_in_flight_per_transaction(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        gate = adapter.hold(HASH_A)
        adapter.confirm(HASH_A)

        first = asyncio.create_task(worker.run_cycle())
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)
        assert worker.in_flight_ids == {tx.id}

        second = await worker.run_cycle()
        assert second.skipped_in_flight == 1
        assert second.polled == 0
        assert adapter.calls_for(HASH_A) == 1

        gate.set()
        report = await first
        assert report.count(PollResult.RESOLVED) == 1
        assert worker.in_flight_ids == frozenset()

    @pytest.mark.asyncio
    async def test_removed_while_in_flight_is_dropped(self, queue, worker, adapter, tx_input, events):
        tx = queue.add_transaction(tx_input())
        gate = adapter.hold(HASH_A)
        adapter.confirm(HASH_A)

        cycle = asyncio.create_task(worker.run_cycle())
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)
        queue.remove_transaction(tx.id)
        gate.set()
        report = await cycle

        assert report.count(PollResult.SKIPPED) == 1
        assert len(queue) == 0
        assert QueueEventType.TRANSACTION_CONFIRMED not in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_cancelled_while_in_flight_keeps_first_resolution(self, queue, worker, adapter, tx_input, events):
        tx = queue.add_transaction(tx_input())
        gate = adapter.hold(HASH_A)
        adapter.confirm(HASH_A)

        cycle = asyncio.create_task(worker.run_cycle())
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)
        queue.cancel_transaction(tx.id)
        gate.set()
        await cycle

        assert status_of(queue, tx.id) == TransactionStatus.CANCELLED
        terminal = [e.type for e in events if e.type != QueueEventType.TRANSACTION_ADDED]
        assert terminal == [QueueEventType.TRANSACTION_CANCELLED]

    @pytest.mark.asyncio
    async def test_slow_chain_does_not_block_another(self, queue, worker, adapter, tx_input):
        slow = queue.add_transaction(tx_input(hash=HASH_A, chain_id=1))
        fast = queue.add_transaction(tx_input(hash=HASH_B, chain_id=10))
        gate = adapter.hold(HASH_A)
        adapter.confirm(HASH_B)

        cycle = asyncio.create_task(worker.run_cycle())

        assert await settle(lambda: status_of(queue, fast.id) == TransactionStatus.CONFIRMED)
        assert status_of(queue, slow.id) == TransactionStatus.PENDING

        gate.set()
        report = await cycle
        assert report.count(PollResult.RESOLVED) == 1
        assert report.count(PollResult.UNRESOLVED) == 1

    @pytest.mark.asyncio
    async def test_per_chain_concurrency_limit(self, queue, adapter, clock, tx_input):
        worker = ReconciliationWorker(
            queue,
            adapter,
            config=QueueConfig(max_concurrent_polls_per_chain=1),
            clock=clock,
        )
        queue.add_transaction(tx_input(hash=HASH_A, chain_id=1))
        queue.add_transaction(tx_input(hash=HASH_B, chain_id=1))
        gate = adapter.hold(HASH_A)

        cycle = asyncio.create_task(worker.run_cycle())
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)
        for _ in range(10):
            await asyncio.sleep(0)
        assert adapter.calls_for(HASH_B) == 0

        gate.set()
        await cycle
        assert adapter.calls_for(HASH_B) == 1


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    @staticmethod
    def parked_sleep(delays):
        """Sleep that records the delay and then never wakes up."""

        async def sleep(delay):
            delays.append(delay)
            await asyncio.Event().wait()

        return sleep

    @pytest.mark.asyncio
    async def test_start_polls_existing_pending(self, queue, adapter, clock, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.confirm(HASH_A)
        delays = []
        worker = ReconciliationWorker(queue, adapter, clock=clock, sleep=self.parked_sleep(delays))

        await worker.start()
        assert worker.is_running
        assert await settle(lambda: status_of(queue, tx.id) == TransactionStatus.CONFIRMED)
        assert delays == [1.0]

        await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_new_transactions_polled_immediately(self, queue, adapter, clock, tx_input):
        worker = ReconciliationWorker(queue, adapter, clock=clock, sleep=self.parked_sleep([]))
        await worker.start()
        await asyncio.sleep(0)

        adapter.confirm(HASH_A)
        tx = queue.add_transaction(tx_input())

        assert await settle(lambda: status_of(queue, tx.id) == TransactionStatus.CONFIRMED)
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_polls(self, queue, adapter, clock, tx_input):
        worker = ReconciliationWorker(queue, adapter, clock=clock, sleep=self.parked_sleep([]))
        tx = queue.add_transaction(tx_input())
        adapter.hold(HASH_A)

        await worker.start()
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)

        await worker.stop()

        assert worker.in_flight_ids == frozenset()
        pending = queue.get_transaction(tx.id)
        assert pending.status == TransactionStatus.PENDING
        assert pending.retry_count == 0

    @pytest.mark.asyncio
    async def test_stopped_worker_ignores_new_transactions(self, queue, adapter, clock, tx_input):
        worker = ReconciliationWorker(queue, adapter, clock=clock, sleep=self.parked_sleep([]))
        await worker.start()
        await worker.stop()

        queue.add_transaction(tx_input())
        for _ in range(5):
            await asyncio.sleep(0)

        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, queue, adapter, clock):
        worker = ReconciliationWorker(queue, adapter, clock=clock, sleep=self.parked_sleep([]))
        await worker.stop()
        await worker.start()
        await worker.start()
        assert queue.bus.listener_count == 2
        await worker.stop()
        await worker.stop()
        assert queue.bus.listener_count == 1

        await worker.close()
        assert queue.bus.listener_count == 0


# =============================================================================
# On-demand checks, schedules, status
# =============================================================================

class TestPollNow:
    @pytest.mark.asyncio
    async def test_poll_now_resolves_one_transaction(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.confirm(HASH_A)

        assert await worker.poll_now(tx.id) is True
        assert status_of(queue, tx.id) == TransactionStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_poll_now_refuses_missing_or_terminal(self, queue, worker, tx_input):
        tx = queue.add_transaction(tx_input())
        queue.cancel_transaction(tx.id)

        assert await worker.poll_now("missing") is False
        assert await worker.poll_now(tx.id) is False

    @pytest.mark.asyncio
    async def test_stop_during_check_answers_false(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        adapter.hold(HASH_A)

        check = asyncio.create_task(worker.poll_now(tx.id))
        assert await settle(lambda: adapter.calls_for(HASH_A) == 1)
        await worker.stop()

        assert await check is False
        assert worker.in_flight_ids == frozenset()
        assert status_of(queue, tx.id) == TransactionStatus.PENDING


class TestSchedules:
    def test_fixed_interval(self):
        schedule = FixedIntervalSchedule(2500)
        assert schedule.next_delay() == 2.5
        assert schedule.next_delay(10) == 2.5

    @pytest.mark.parametrize("errors,expected", [(0, 1.0), (1, 1.0), (3, 3.0), (5, 5.0), (50, 5.0)])
    def test_backoff_multiplier_is_capped(self, errors, expected):
        assert BackoffSchedule(1000).next_delay(errors) == expected


class TestStatus:
    @pytest.mark.asyncio
    async def test_consecutive_errors_track_adapter_health(self, queue, worker, adapter, clock, tx_input):
        queue.add_transaction(tx_input())
        adapter.script(HASH_A, NetworkError(), NetworkError(), ChainTransactionStatus(state=ChainState.PENDING))

        await worker.run_cycle()
        await worker.run_cycle()
        assert worker.consecutive_errors == 2
        assert worker.status()["next_delay_seconds"] == 2.0

        await worker.run_cycle()
        status = worker.status()
        assert worker.consecutive_errors == 0
        assert status["cycle_count"] == 3
        assert status["last_cycle_at"] == clock.now.isoformat()
        assert status["adapter"] == "scripted"
        assert status["running"] is False
        assert status["inflight"] == 0


class TestForgetting:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("leave", ["remove", "cancel", "clear"])
    async def test_settled_transaction_is_forgotten(self, queue, worker, adapter, tx_input, leave):
        tx = queue.add_transaction(tx_input())
        adapter.script(HASH_A, NetworkError("down"))
        await worker.run_cycle()
        assert tx.id in worker._last_errors

        if leave == "remove":
            queue.remove_transaction(tx.id)
        elif leave == "cancel":
            queue.cancel_transaction(tx.id)
        else:
            queue.clear_queue()

        assert worker._last_errors == {}
        assert adapter.forgotten == [(HASH_A, 1)]

    @pytest.mark.asyncio
    async def test_duplicate_hash_still_pending_is_remembered(self, queue, worker, adapter, tx_input):
        first = queue.add_transaction(tx_input())
        queue.add_transaction(tx_input())

        queue.remove_transaction(first.id)

        assert adapter.forgotten == []

    @pytest.mark.asyncio
    async def test_closed_worker_stops_listening(self, queue, worker, adapter, tx_input):
        tx = queue.add_transaction(tx_input())
        await worker.close()

        queue.remove_transaction(tx.id)

        assert adapter.forgotten == []

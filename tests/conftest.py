"""
Shared fixtures for transaction queue tests.

FakeClock drives every time-dependent decision; ScriptedChainAdapter
answers status queries from per-hash scripts and can hold a call open
until the test releases it.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Tuple, Union

import pytest

from txqueue.core.queue import (
    EventBus,
    MemoryStore,
    QueueConfig,
    QueueEvent,
    ReconciliationWorker,
    TransactionInput,
    TransactionQueue,
    TransactionType,
)
from txqueue.providers import ChainAdapter, ChainState, ChainTransactionStatus


HASH_A = "0x" + "a" * 64
HASH_B = "0x" + "b" * 64
HASH_C = "0x" + "c" * 64
SENDER = "0x1234567890123456789012345678901234567890"
RECIPIENT = "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"


class FakeClock:
    """Mutable clock; call it to read the current time."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(milliseconds=ms, seconds=seconds)
        return self.now


ScriptedResponse = Union[ChainTransactionStatus, Exception]


class ScriptedChainAdapter(ChainAdapter):
    """Chain adapter answering from per-hash scripts; unscripted hashes are not found."""

    name = "scripted"

    def __init__(self):
        self.scripts: Dict[str, List[ScriptedResponse]] = {}
        self.calls: List[Tuple[str, int]] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.forgotten: List[Tuple[str, int]] = []
        self.closed = False

    def script(self, tx_hash: str, *responses: ScriptedResponse) -> None:
        """Queue responses; the last one repeats once the others are used up."""
        self.scripts.setdefault(tx_hash, []).extend(responses)

    def confirm(self, tx_hash: str, block_number: int = 19_000_000) -> None:
        self.script(
            tx_hash,
            ChainTransactionStatus(
                state=ChainState.CONFIRMED,
                block_number=block_number,
                block_hash="0x" + "f" * 64,
                gas_used=21_000,
                effective_gas_price=30_000_000_000,
                receipt={"status": "0x1", "blockNumber": hex(block_number)},
            ),
        )

    def revert(self, tx_hash: str, block_number: int = 19_000_000) -> None:
        self.script(
            tx_hash,
            ChainTransactionStatus(
                state=ChainState.REVERTED,
                block_number=block_number,
                block_hash="0x" + "e" * 64,
                gas_used=45_000,
            ),
        )

    def hold(self, tx_hash: str) -> asyncio.Event:
        """Block calls for tx_hash until the returned event is set."""
        gate = asyncio.Event()
        self.gates[tx_hash] = gate
        return gate

    def calls_for(self, tx_hash: str) -> int:
        return sum(1 for called_hash, _ in self.calls if called_hash == tx_hash)

    async def get_transaction_status(self, tx_hash: str, chain_id: int) -> ChainTransactionStatus:
        self.calls.append((tx_hash, chain_id))
        gate = self.gates.get(tx_hash)
        if gate is not None:
            await gate.wait()

        script = self.scripts.get(tx_hash)
        if not script:
            response: ScriptedResponse = ChainTransactionStatus(state=ChainState.NOT_FOUND)
        elif len(script) > 1:
            response = script.pop(0)
        else:
            response = script[0]

        if isinstance(response, Exception):
            raise response
        return response

    def forget(self, tx_hash: str, chain_id: int) -> None:
        self.forgotten.append((tx_hash, chain_id))

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter() -> ScriptedChainAdapter:
    return ScriptedChainAdapter()


@pytest.fixture
def config() -> QueueConfig:
    """Queue config with a one-minute timeout and retries out of the way."""
    return QueueConfig(
        poll_interval_ms=1000,
        timeout_ms=60_000,
        max_retries=1000,
        max_queue_size=100,
        enable_persistence=False,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def queue(store: MemoryStore, config: QueueConfig, clock: FakeClock) -> TransactionQueue:
    return TransactionQueue(store, config=config, bus=EventBus(), clock=clock)


@pytest.fixture
def events(queue: TransactionQueue) -> List[QueueEvent]:
    """Every event the queue publishes, in order."""
    received: List[QueueEvent] = []
    queue.subscribe(received.append)
    return received


@pytest.fixture
def worker(
    queue: TransactionQueue,
    adapter: ScriptedChainAdapter,
    clock: FakeClock,
) -> ReconciliationWorker:
    return ReconciliationWorker(queue, adapter, clock=clock)


@pytest.fixture
def tx_input() -> Callable[..., TransactionInput]:
    """Factory for valid transaction inputs."""

    def build(**overrides) -> TransactionInput:
        values = dict(
            hash=HASH_A,
            chain_id=1,
            type=TransactionType.TRANSFER,
            title="Transfer USDC",
            description="Transferring USDC to 0xabcd...abcd",
            value=10**24,
            to=RECIPIENT,
            from_address=SENDER,
            metadata={"token": "USDC"},
        )
        values.update(overrides)
        return TransactionInput(**values)

    return build

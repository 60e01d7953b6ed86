from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ChainState(str, Enum):
    """What the chain currently says about a transaction hash."""

    NOT_FOUND = "not_found"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    REPLACED = "replaced"


@dataclass
class ChainTransactionStatus:
    """Adapter answer for one transaction hash."""

    state: ChainState
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    receipt: Optional[Dict[str, Any]] = None
    replaced_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.state in (ChainState.CONFIRMED, ChainState.REVERTED, ChainState.REPLACED)


class ChainAdapter(ABC):
    """Reports on-chain status; transport, signing and retries are its own business"""

    name: str = "chain"

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str, chain_id: int) -> ChainTransactionStatus:
        """Current status of a transaction. Raises on transient failures."""
        pass

    def forget(self, tx_hash: str, chain_id: int) -> None:
        """Drop anything remembered about a transaction the queue no longer tracks."""
        return None

    async def close(self) -> None:
        """Release transport resources."""
        return None

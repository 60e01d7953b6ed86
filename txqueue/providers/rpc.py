"""
JSON-RPC Chain Adapter

Answers transaction status questions against EVM JSON-RPC endpoints,
one URL per chain. Transient failures are raised as recoverable adapter
errors; retrying is the reconciliation worker's job.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..core.queue.errors import ChainAdapterError, NetworkError, RateLimitError
from .base import ChainAdapter, ChainState, ChainTransactionStatus

logger = logging.getLogger(__name__)


def _hex_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    return int(value, 16)


class JsonRpcChainAdapter(ChainAdapter):
    """
    Chain adapter backed by eth_getTransactionReceipt.

    Features:
    - Receipt status 0x0 reported as reverted
    - Remembers sender and nonce of transactions seen in the mempool, and
      reports replaced once such a transaction disappears while the
      sender's confirmed nonce has moved past it
    """

    name = "json-rpc"

    def __init__(
        self,
        rpc_urls: Dict[int, str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_urls = dict(rpc_urls)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._request_id = 0

        # (chain_id, hash) -> (from, nonce) for transactions seen pending
        self._seen_pending: Dict[Tuple[int, str], Tuple[str, int]] = {}

    @property
    def chain_ids(self) -> List[int]:
        return sorted(self._rpc_urls)

    async def get_transaction_status(self, tx_hash: str, chain_id: int) -> ChainTransactionStatus:
        receipt = await self._rpc_call(chain_id, "eth_getTransactionReceipt", [tx_hash])
        key = (chain_id, tx_hash.lower())

        if receipt:
            self._seen_pending.pop(key, None)
            return self._status_from_receipt(receipt)

        tx = await self._rpc_call(chain_id, "eth_getTransactionByHash", [tx_hash])
        if tx:
            sender = tx.get("from")
            nonce = _hex_int(tx.get("nonce"))
            if sender and nonce is not None:
                self._seen_pending[key] = (sender, nonce)
            return ChainTransactionStatus(state=ChainState.PENDING)

        remembered = self._seen_pending.get(key)
        if remembered is None:
            return ChainTransactionStatus(state=ChainState.NOT_FOUND)

        sender, nonce = remembered
        confirmed_nonce = _hex_int(
            await self._rpc_call(chain_id, "eth_getTransactionCount", [sender, "latest"])
        )
        if confirmed_nonce is not None and confirmed_nonce > nonce:
            self._seen_pending.pop(key, None)
            logger.info(
                "Transaction %s on chain %s dropped after nonce %d was consumed",
                tx_hash,
                chain_id,
                nonce,
            )
            return ChainTransactionStatus(state=ChainState.REPLACED)

        return ChainTransactionStatus(state=ChainState.NOT_FOUND)

    def forget(self, tx_hash: str, chain_id: int) -> None:
        self._seen_pending.pop((chain_id, tx_hash.lower()), None)

    @property
    def remembered_count(self) -> int:
        return len(self._seen_pending)

    def _status_from_receipt(self, receipt: Dict[str, Any]) -> ChainTransactionStatus:
        # Pre-Byzantium receipts carry no status (null or absent); inclusion means success
        status = _hex_int(receipt.get("status"))
        succeeded = status is None or status == 1
        return ChainTransactionStatus(
            state=ChainState.CONFIRMED if succeeded else ChainState.REVERTED,
            block_number=_hex_int(receipt.get("blockNumber")),
            block_hash=receipt.get("blockHash"),
            gas_used=_hex_int(receipt.get("gasUsed")),
            effective_gas_price=_hex_int(receipt.get("effectiveGasPrice")),
            receipt=receipt,
        )

    async def _rpc_call(
        self,
        chain_id: int,
        method: str,
        params: List[Any],
    ) -> Any:
        """Make an RPC call to the chain."""
        rpc_url = self._rpc_urls.get(chain_id)
        if not rpc_url:
            raise ChainAdapterError(
                f"No RPC URL configured for chain {chain_id}",
                provider=self.name,
            )

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            response = await self._client.post(rpc_url, json=payload)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} on chain {chain_id}: {exc}", provider=self.name) from exc

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError(
                f"{method} on chain {chain_id} rate limited",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else 60.0,
                provider=self.name,
            )
        if response.status_code >= 500:
            raise NetworkError(
                f"{method} on chain {chain_id}: HTTP {response.status_code}",
                provider=self.name,
            )
        if response.status_code >= 400:
            raise ChainAdapterError(
                f"{method} on chain {chain_id}: HTTP {response.status_code}",
                provider=self.name,
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise ChainAdapterError(
                f"{method} on chain {chain_id}: invalid JSON response",
                provider=self.name,
            ) from exc

        if "error" in result:
            raise ChainAdapterError(f"RPC error: {result['error']}", provider=self.name)

        return result.get("result")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client:
            await self._client.aclose()

"""
Transaction Queue API Endpoints

HTTP surface over the process-wide transaction queue held on app.state.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from ..core.queue import (
    InvalidTransactionInput,
    InvalidTransitionError,
    QueueStatistics,
    ReconciliationWorker,
    TransactionInput,
    TransactionQueue,
    TransactionStatus,
    TransactionType,
)

router = APIRouter(prefix="/transactions", tags=["Transactions"])


# =============================================================================
# Request/Response Models
# =============================================================================


class AddTransactionRequest(BaseModel):
    """Body for tracking a submitted transaction. Large integers may be decimal strings."""

    model_config = ConfigDict(populate_by_name=True)

    hash: Optional[str] = Field(None, description="Transaction hash")
    chain_id: Optional[int] = Field(None, alias="chainId", description="Chain id")
    type: TransactionType = TransactionType.UNKNOWN
    title: str = ""
    description: str = ""
    value: Optional[int] = None
    to: Optional[str] = None
    from_address: Optional[str] = Field(None, alias="from")
    data: Optional[str] = None
    gas_limit: Optional[int] = Field(None, alias="gasLimit")
    gas_price: Optional[int] = Field(None, alias="gasPrice")
    nonce: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_input(self) -> TransactionInput:
        return TransactionInput(
            hash=self.hash or "",
            chain_id=self.chain_id,
            type=self.type,
            title=self.title,
            description=self.description,
            value=self.value,
            to=self.to,
            from_address=self.from_address,
            data=self.data,
            gas_limit=self.gas_limit,
            gas_price=self.gas_price,
            nonce=self.nonce,
            metadata=self.metadata,
        )


class CancelTransactionRequest(BaseModel):
    reason: Optional[str] = None


class TransactionListResponse(BaseModel):
    transactions: List[Dict[str, Any]]
    count: int


class ClearQueueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    removed: int
    chain_id: Optional[int] = Field(None, alias="chainId")


class CheckTransactionResponse(BaseModel):
    checked: bool
    transaction: Dict[str, Any]


# =============================================================================
# Dependencies
# =============================================================================


def get_queue(request: Request) -> TransactionQueue:
    return request.app.state.queue


def get_worker(request: Request) -> Optional[ReconciliationWorker]:
    return getattr(request.app.state, "worker", None)


def _not_found(transaction_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", status_code=201)
async def add_transaction(
    request: AddTransactionRequest,
    queue: TransactionQueue = Depends(get_queue),
) -> Dict[str, Any]:
    """Start tracking a submitted transaction."""
    try:
        tx = queue.add_transaction(request.to_input())
    except InvalidTransactionInput as e:
        raise HTTPException(status_code=400, detail=e.message)
    return tx.to_dict()


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    chain_id: Optional[int] = None,
    status: Optional[TransactionStatus] = None,
    type: Optional[TransactionType] = None,
    queue: TransactionQueue = Depends(get_queue),
):
    transactions = queue.get_transactions(chain_id=chain_id, status=status, type=type)
    return TransactionListResponse(
        transactions=[tx.to_dict() for tx in transactions],
        count=len(transactions),
    )


@router.get("/stats")
async def transaction_stats(
    chain_id: Optional[int] = None,
    queue: TransactionQueue = Depends(get_queue),
) -> Dict[str, Any]:
    if chain_id is None:
        return queue.get_statistics().to_dict()
    return QueueStatistics.from_transactions(queue.get_transactions(chain_id=chain_id)).to_dict()


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    queue: TransactionQueue = Depends(get_queue),
) -> Dict[str, Any]:
    tx = queue.get_transaction(transaction_id)
    if tx is None:
        raise _not_found(transaction_id)
    return tx.to_dict()


@router.delete("/{transaction_id}", status_code=204)
async def remove_transaction(
    transaction_id: str,
    queue: TransactionQueue = Depends(get_queue),
) -> None:
    if not queue.remove_transaction(transaction_id):
        raise _not_found(transaction_id)


@router.delete("", response_model=ClearQueueResponse, response_model_by_alias=True)
async def clear_queue(
    chain_id: Optional[int] = None,
    queue: TransactionQueue = Depends(get_queue),
):
    """Remove every tracked transaction, or every one on a chain."""
    removed = queue.clear_queue(chain_id)
    return ClearQueueResponse(removed=removed, chain_id=chain_id)


@router.post("/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: str,
    request: Optional[CancelTransactionRequest] = None,
    queue: TransactionQueue = Depends(get_queue),
) -> Dict[str, Any]:
    try:
        tx = queue.cancel_transaction(transaction_id, reason=request.reason if request else None)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message)
    if tx is None:
        raise _not_found(transaction_id)
    return tx.to_dict()


@router.post("/{transaction_id}/check", response_model=CheckTransactionResponse)
async def check_transaction(
    transaction_id: str,
    queue: TransactionQueue = Depends(get_queue),
    worker: Optional[ReconciliationWorker] = Depends(get_worker),
):
    """Ask the chain about one transaction now instead of waiting for the next cycle."""
    if transaction_id not in queue:
        raise _not_found(transaction_id)
    if worker is None:
        raise HTTPException(status_code=503, detail="Reconciliation worker is not configured")

    checked = await worker.poll_now(transaction_id)
    tx = queue.get_transaction(transaction_id)
    if tx is None:
        raise _not_found(transaction_id)
    return CheckTransactionResponse(checked=checked, transaction=tx.to_dict())

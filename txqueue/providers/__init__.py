from .base import ChainAdapter, ChainState, ChainTransactionStatus
from .rpc import JsonRpcChainAdapter

__all__ = [
    "ChainAdapter",
    "ChainState",
    "ChainTransactionStatus",
    "JsonRpcChainAdapter",
]

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ...config import Settings


class QueueConfig(BaseModel):
    """Configuration shared by the queue, its store, and its worker."""

    debug: bool = Field(default=False, description="Verbose per-mutation diagnostics.")
    poll_interval_ms: int = Field(default=5000, ge=1, description="Worker polling cadence.")
    timeout_ms: int = Field(
        default=300_000,
        ge=1,
        description="Age after which an unresolved pending transaction becomes timeout.",
    )
    max_retries: int = Field(
        default=120,
        ge=1,
        description="Unresolved poll cycles after which timeout is forced inside the window.",
    )
    retention_ms: Optional[int] = Field(
        default=None,
        ge=0,
        description="Terminal transactions older than this are pruned; unset keeps them.",
    )
    chain_id_filter: Optional[int] = Field(
        default=None,
        description="Restrict the queue to one chain.",
    )
    max_queue_size: int = Field(default=100, ge=1, description="Soft cap on tracked transactions.")
    max_concurrent_polls_per_chain: int = Field(default=8, ge=1)
    enable_persistence: bool = Field(default=True)
    storage_dir: Optional[Path] = Field(default=None)
    storage_namespace: str = Field(default="txqueue:transaction-queue")

    @classmethod
    def from_settings(cls, settings: Settings) -> QueueConfig:
        return cls(
            debug=settings.debug,
            poll_interval_ms=settings.poll_interval_ms,
            timeout_ms=settings.timeout_ms,
            max_retries=settings.max_retries,
            retention_ms=settings.retention_ms,
            chain_id_filter=settings.chain_id_filter,
            max_queue_size=settings.max_queue_size,
            max_concurrent_polls_per_chain=settings.max_concurrent_polls_per_chain,
            enable_persistence=settings.enable_persistence,
            storage_dir=settings.storage_dir,
            storage_namespace=settings.storage_namespace,
        )

    @property
    def pruning_enabled(self) -> bool:
        return self.retention_ms is not None

    @property
    def effective_namespace(self) -> str:
        if self.chain_id_filter is not None:
            return f"{self.storage_namespace}:{self.chain_id_filter}"
        return self.storage_namespace

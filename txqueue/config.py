from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_prefix="TXQUEUE_",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Verbose queue diagnostics")

    # Reconciliation
    poll_interval_ms: int = Field(default=5000, ge=1, description="Worker polling cadence")
    timeout_ms: int = Field(
        default=300_000,
        ge=1,
        description="Age after which an unresolved pending transaction becomes timeout",
    )
    max_retries: int = Field(
        default=120,
        ge=1,
        description="Unresolved poll cycles after which timeout is forced inside the window",
    )
    retention_ms: Optional[int] = Field(
        default=None,
        ge=0,
        description="How long terminal transactions are kept before pruning (unset disables pruning)",
    )
    chain_id_filter: Optional[int] = Field(
        default=None,
        description="Restrict this queue instance to a single chain",
    )
    max_queue_size: int = Field(default=100, ge=1, description="Soft cap on tracked transactions")
    max_concurrent_polls_per_chain: int = Field(
        default=8,
        ge=1,
        description="Maximum concurrent adapter calls per chain",
    )
    worker_enabled: bool = Field(
        default=True,
        description="Start the reconciliation worker alongside FastAPI",
    )

    # Persistence
    enable_persistence: bool = Field(default=True, description="Write the queue through to disk")
    storage_dir: Path = Field(
        default=BASE_DIR / ".txqueue",
        description="Directory holding one JSON document per store namespace",
    )
    storage_namespace: str = Field(
        default="txqueue:transaction-queue",
        description="Namespace isolating this application's records",
    )

    # Chain RPC
    rpc_urls: Dict[int, str] = Field(
        default_factory=dict,
        description="JSON-RPC endpoint per chain id",
    )
    rpc_timeout_seconds: float = Field(default=10.0, gt=0, description="RPC request timeout")

    @property
    def has_rpc_urls(self) -> bool:
        return bool(self.rpc_urls)


# Global settings instance
settings = Settings()

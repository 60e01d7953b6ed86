import pytest
from pydantic import ValidationError

from txqueue.config import Settings
from txqueue.core.queue import QueueConfig


def test_defaults(monkeypatch):
    """Defaults match the documented queue behavior."""

    for name in ("TXQUEUE_POLL_INTERVAL_MS", "TXQUEUE_TIMEOUT_MS", "TXQUEUE_RPC_URLS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.poll_interval_ms == 5000
    assert settings.timeout_ms == 300_000
    assert settings.max_queue_size == 100
    assert settings.retention_ms is None
    assert settings.has_rpc_urls is False


def test_environment_overrides(monkeypatch):
    """Prefixed environment variables configure the queue."""

    monkeypatch.setenv("TXQUEUE_POLL_INTERVAL_MS", "250")
    monkeypatch.setenv("TXQUEUE_CHAIN_ID_FILTER", "10")
    monkeypatch.setenv("TXQUEUE_RPC_URLS", '{"1": "https://rpc.example/1", "10": "https://rpc.example/10"}')

    settings = Settings(_env_file=None)

    assert settings.poll_interval_ms == 250
    assert settings.chain_id_filter == 10
    assert settings.rpc_urls == {1: "https://rpc.example/1", 10: "https://rpc.example/10"}


def test_invalid_interval_rejected(monkeypatch):
    monkeypatch.setenv("TXQUEUE_POLL_INTERVAL_MS", "0")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_queue_config_from_settings(tmp_path):
    settings = Settings(
        _env_file=None,
        timeout_ms=1000,
        retention_ms=50,
        chain_id_filter=137,
        storage_dir=tmp_path,
        debug=True,
    )

    config = QueueConfig.from_settings(settings)

    assert config.timeout_ms == 1000
    assert config.pruning_enabled is True
    assert config.debug is True
    assert config.storage_dir == tmp_path
    assert config.effective_namespace == "txqueue:transaction-queue:137"

"""
Durable Store

Serialized mirror of the transaction queue. One JSON document per
namespace, carrying a schema version; large integers travel as decimal
strings. Unreadable entries are dropped rather than failing the load.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import QueueConfig
from .errors import StoreError, TransactionErrorInfo
from .models import QueuedTransaction, TransactionStatus, TransactionType

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1
DEFAULT_NAMESPACE = "txqueue:transaction-queue"


# =============================================================================
# Wire model
# =============================================================================


class StoredTransaction(BaseModel):
    """One persisted entry, validated field by field on load."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    hash: str = Field(min_length=1)
    chain_id: int = Field(alias="chainId")
    type: TransactionType = TransactionType.UNKNOWN
    status: TransactionStatus
    title: str = ""
    description: str = ""
    submitted_at: datetime = Field(alias="submittedAt")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")

    value: Optional[int] = None
    to: Optional[str] = None
    from_address: Optional[str] = Field(default=None, alias="from")
    data: Optional[str] = None
    gas_limit: Optional[int] = Field(default=None, alias="gasLimit")
    gas_price: Optional[int] = Field(default=None, alias="gasPrice")
    nonce: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")
    error: Optional[Dict[str, Any]] = None
    replaced_by: Optional[str] = Field(default=None, alias="replacedBy")

    confirmed_at: Optional[datetime] = Field(default=None, alias="confirmedAt")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    block_hash: Optional[str] = Field(default=None, alias="blockHash")
    gas_used: Optional[int] = Field(default=None, alias="gasUsed")
    effective_gas_price: Optional[int] = Field(default=None, alias="effectiveGasPrice")
    receipt: Optional[Dict[str, Any]] = None

    @field_validator("type", mode="before")
    @classmethod
    def _unknown_type(cls, value: Any) -> Any:
        # Types written by newer clients degrade to unknown instead of dropping the entry.
        if isinstance(value, str) and value not in {t.value for t in TransactionType}:
            return TransactionType.UNKNOWN
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Any:
        return value if value is not None else {}

    def to_transaction(self) -> QueuedTransaction:
        return QueuedTransaction(
            id=self.id,
            hash=self.hash,
            chain_id=self.chain_id,
            type=self.type,
            status=self.status,
            title=self.title,
            description=self.description,
            submitted_at=_aware(self.submitted_at),
            retry_count=self.retry_count,
            value=self.value,
            to=self.to,
            from_address=self.from_address,
            data=self.data,
            gas_limit=self.gas_limit,
            gas_price=self.gas_price,
            nonce=self.nonce,
            metadata=self.metadata,
            resolved_at=_aware(self.resolved_at),
            error=TransactionErrorInfo.from_dict(self.error) if self.error else None,
            replaced_by=self.replaced_by,
            confirmed_at=_aware(self.confirmed_at),
            block_number=self.block_number,
            block_hash=self.block_hash,
            gas_used=self.gas_used,
            effective_gas_price=self.effective_gas_price,
            receipt=self.receipt,
        )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Codec
# =============================================================================


def _default_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def encode_records(
    records: Iterable[QueuedTransaction],
    namespace: str = DEFAULT_NAMESPACE,
    saved_at: Optional[datetime] = None,
) -> str:
    document = {
        "version": SCHEMA_VERSION,
        "namespace": namespace,
        "savedAt": (saved_at or datetime.now(timezone.utc)).isoformat(),
        "transactions": [record.to_dict() for record in records],
    }
    return json.dumps(document, default=_default_serializer)


def decode_records(raw: Optional[str]) -> List[QueuedTransaction]:
    """
    Decode a stored document into snapshots.

    Never raises for bad content: a corrupt document loads as empty and a
    bad entry is skipped, both with a warning.
    """
    if not raw:
        return []

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Discarding unreadable transaction queue document: %s", exc)
        return []

    if isinstance(document, list):
        entries = migrate_legacy_entries(document)
    elif isinstance(document, dict):
        version = document.get("version")
        entries = document.get("transactions")
        if not isinstance(entries, list):
            logger.warning("Transaction queue document has no transaction list; ignoring")
            return []
        if version == LEGACY_SCHEMA_VERSION:
            entries = migrate_legacy_entries(entries)
        elif version != SCHEMA_VERSION:
            logger.warning(
                "Transaction queue schema version %s differs from %s; reading best-effort",
                version,
                SCHEMA_VERSION,
            )
    else:
        logger.warning("Unexpected transaction queue document type %s", type(document).__name__)
        return []

    records: List[QueuedTransaction] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        try:
            record = StoredTransaction.model_validate(entry).to_transaction()
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("Discarding unreadable stored transaction #%d: %s", index, exc)
            continue
        if record.id in seen:
            logger.warning("Discarding duplicate stored transaction %s", record.id)
            continue
        seen.add(record.id)
        records.append(record)
    return records


# =============================================================================
# Legacy (version 1) migration
# =============================================================================


def _untag(value: Any) -> Any:
    """Replace {"__type": "bigint", "value": "..."} tags with decimal strings."""
    if isinstance(value, dict):
        if value.get("__type") == "bigint" and isinstance(value.get("value"), str):
            return value["value"]
        return {key: _untag(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_untag(item) for item in value]
    return value


def _millis_to_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    return value


def migrate_legacy_entries(entries: List[Any]) -> List[Dict[str, Any]]:
    """
    Convert version 1 entries to the current wire shape.

    Version 1 stored a list of [id, transaction] pairs with tagged big
    integers, millisecond timestamps, and error objects that lost their
    message when serialized.
    """
    migrated: List[Dict[str, Any]] = []
    for entry in entries:
        if isinstance(entry, list) and len(entry) == 2 and isinstance(entry[1], dict):
            entry_id, tx = entry
        elif isinstance(entry, dict):
            entry_id, tx = entry.get("id"), entry
        else:
            logger.warning("Discarding malformed legacy transaction entry")
            continue

        tx = _untag(tx)
        status = tx.get("status")
        submitted_at = _millis_to_iso(tx.get("submittedAt"))
        confirmed_at = _millis_to_iso(tx.get("confirmedAt"))

        record = dict(tx)
        record["id"] = tx.get("id") or entry_id
        record["submittedAt"] = submitted_at
        record["metadata"] = tx.get("metadata") or {}

        if status == TransactionStatus.PENDING.value:
            for key in ("confirmedAt", "resolvedAt", "error", "receipt", "blockNumber", "blockHash"):
                record.pop(key, None)
        else:
            record["resolvedAt"] = confirmed_at or submitted_at

        if status == TransactionStatus.CONFIRMED.value:
            record["confirmedAt"] = confirmed_at or submitted_at
            record["error"] = None
        else:
            for key in ("confirmedAt", "receipt", "blockNumber", "blockHash"):
                record.pop(key, None)

        if status in (TransactionStatus.FAILED.value, TransactionStatus.TIMEOUT.value):
            legacy_error = tx.get("error") if isinstance(tx.get("error"), dict) else {}
            record["error"] = {
                "code": "LEGACY_ERROR",
                "message": legacy_error.get("message")
                or (
                    "Transaction confirmation timeout"
                    if status == TransactionStatus.TIMEOUT.value
                    else "Transaction failed"
                ),
                "category": "timeout" if status == TransactionStatus.TIMEOUT.value else "unknown",
                "details": {"migratedFrom": LEGACY_SCHEMA_VERSION},
            }
        elif status != TransactionStatus.CONFIRMED.value:
            record.pop("error", None)

        migrated.append(record)
    return migrated


# =============================================================================
# Stores
# =============================================================================


class DurableStore(ABC):
    """Synchronous load/save surface for the queue's serialized mirror."""

    namespace: str = DEFAULT_NAMESPACE

    @abstractmethod
    def load(self) -> List[QueuedTransaction]:
        """Read all persisted records. Raises StoreError if the medium is unavailable."""

    @abstractmethod
    def save(self, records: List[QueuedTransaction]) -> None:
        """Replace the persisted records. Raises StoreError on write failure."""


class MemoryStore(DurableStore):
    """Keeps the serialized document in memory; same codec as a real medium."""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE, payload: Optional[str] = None):
        self.namespace = namespace
        self.payload = payload
        self.save_count = 0

    def load(self) -> List[QueuedTransaction]:
        return decode_records(self.payload)

    def save(self, records: List[QueuedTransaction]) -> None:
        self.payload = encode_records(records, namespace=self.namespace)
        self.save_count += 1


class JsonFileStore(DurableStore):
    """One JSON file per namespace, replaced atomically on every save."""

    def __init__(self, directory: Path | str, namespace: str = DEFAULT_NAMESPACE):
        self.directory = Path(directory)
        self.namespace = namespace
        self.path = self.directory / f"{_slug(namespace)}.json"

    def load(self) -> List[QueuedTransaction]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StoreError(f"Failed to read {self.path}: {exc}") from exc
        return decode_records(raw)

    def save(self, records: List[QueuedTransaction]) -> None:
        payload = encode_records(records, namespace=self.namespace)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".txqueue-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise StoreError(f"Failed to write {self.path}: {exc}") from exc


def _slug(namespace: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", namespace).strip("_") or "default"


def create_store(config: QueueConfig) -> DurableStore:
    """Build the store the configuration asks for."""
    namespace = config.effective_namespace
    if config.enable_persistence and config.storage_dir is not None:
        return JsonFileStore(config.storage_dir, namespace=namespace)
    return MemoryStore(namespace=namespace)

"""
Ledger store: the durable, capacity-bounded collection of transaction records.

All reads and writes go through a single storage slot holding a JSON array.
The store is synchronous; every mutation is a complete read-modify-write.
"""

import json
from collections import Counter
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from txledger.chain.contracts import get_chain_name
from txledger.config import settings
from txledger.db.models import (
    Transaction,
    TransactionDraft,
    TransactionFilter,
    TransactionStats,
    TransactionStatus,
    event_keys,
    generate_transaction_id,
    hash_key,
    now_ms,
    same_event,
    unique_events,
)
from txledger.db.storage import KeyValueStorage
from txledger.utils.formatting import parse_usd_value
from txledger.utils.logging import LoggerMixin

# Fields update() never touches
_IMMUTABLE_FIELDS = {"id", "timestamp"}


def _sort_newest_first(records: list[Transaction]) -> list[Transaction]:
    return sorted(records, key=lambda tx: tx.timestamp, reverse=True)


def _most_common(counts: Counter) -> Optional[Any]:
    """Key with the highest count; ties go to the smallest key."""
    if not counts:
        return None
    return min(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0]


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class LedgerStore(LoggerMixin):
    """Owner of the persisted transaction collection."""

    STORAGE_KEY = "linkport_transactions"
    LEGACY_STORAGE_KEY = "transactions"

    def __init__(
        self,
        storage: KeyValueStorage,
        max_transactions: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._storage = storage
        self.max_transactions = max_transactions or settings.max_transactions
        self._clock = clock
        self._migrated = False

    # ===================
    # Persistence
    # ===================

    def _migrate_legacy(self) -> None:
        """Move the legacy slot into the current one, once per store."""
        if self._migrated:
            return
        self._migrated = True

        try:
            if self._storage.get_item(self.STORAGE_KEY) is not None:
                return
            legacy = self._storage.get_item(self.LEGACY_STORAGE_KEY)
            if legacy is None:
                return
            self._storage.set_item(self.STORAGE_KEY, legacy)
            self._storage.remove_item(self.LEGACY_STORAGE_KEY)
            self.log.info("Migrated legacy ledger slot", legacy_key=self.LEGACY_STORAGE_KEY)
        except Exception as e:
            # Retry on next access
            self._migrated = False
            self.log.warning("Legacy ledger migration failed", error=str(e))

    def _load(self) -> list[Transaction]:
        self._migrate_legacy()

        try:
            stored = self._storage.get_item(self.STORAGE_KEY)
        except Exception as e:
            self.log.error("Failed to read ledger slot", error=str(e))
            return []

        if not stored:
            return []

        try:
            raw = json.loads(stored)
        except ValueError as e:
            self.log.error("Ledger slot is corrupt", error=str(e))
            return []

        if not isinstance(raw, list):
            self.log.error("Ledger slot is not a list", kind=type(raw).__name__)
            return []

        records = []
        for item in raw:
            try:
                records.append(Transaction.model_validate(item))
            except ValidationError as e:
                self.log.warning("Skipping invalid ledger record", error=str(e))
        return records

    def _save(self, records: list[Transaction]) -> None:
        payload = json.dumps([tx.to_storage() for tx in records])
        self._storage.set_item(self.STORAGE_KEY, payload)

    def _truncate(self, records: list[Transaction]) -> list[Transaction]:
        if len(records) <= self.max_transactions:
            return records
        evicted = records[self.max_transactions:]
        self.log.info(
            "Evicting oldest records",
            count=len(evicted),
            max_transactions=self.max_transactions,
        )
        return records[:self.max_transactions]

    # ===================
    # Reads
    # ===================

    def now(self) -> int:
        """Current time in epoch ms, from the store clock."""
        return self._clock()

    def get_all(self) -> list[Transaction]:
        """All records, newest first. Never raises; unreadable storage reads as empty."""
        return _sort_newest_first(self._load())

    def get(self, tx_id: str) -> Optional[Transaction]:
        return next((tx for tx in self.get_all() if tx.id == tx_id), None)

    def user_transactions(self, user_address: str, chain_id: Optional[int] = None) -> list[Transaction]:
        """Records of one user, optionally on one chain."""
        return [tx for tx in self.get_all() if tx.belongs_to(user_address, chain_id)]

    def filter(
        self,
        criteria: Union[TransactionFilter, dict, None] = None,
        user_address: Optional[str] = None,
    ) -> list[Transaction]:
        """Records matching every supplied criterion, newest first.

        The timeframe is evaluated against the current time on each call.
        """
        if criteria is None:
            criteria = TransactionFilter()
        elif isinstance(criteria, dict):
            criteria = TransactionFilter.model_validate(criteria)

        now = self._clock()
        return [
            tx for tx in self.get_all()
            if tx.belongs_to(user_address) and criteria.matches(tx, now)
        ]

    def stats(self, user_address: Optional[str] = None, chain_id: Optional[int] = None) -> TransactionStats:
        """Aggregate statistics scoped to an optional user and chain."""
        return compute_stats(
            [tx for tx in self.get_all() if tx.belongs_to(user_address, chain_id)]
        )

    def storage_info(self) -> dict:
        """Serialized size in bytes, record count and capacity."""
        try:
            stored = self._storage.get_item(self.STORAGE_KEY) or "[]"
        except Exception:
            stored = "[]"
        return {
            "size": len(stored.encode("utf-8")),
            "count": len(self.get_all()),
            "max_size": self.max_transactions,
        }

    # ===================
    # Writes
    # ===================

    def add(self, draft: Union[TransactionDraft, dict]) -> Transaction:
        """Store a new record and return it.

        A draft whose tx hash is already recorded returns the existing record.
        Raises PersistenceError if the storage medium rejects the write.
        """
        if isinstance(draft, dict):
            draft = TransactionDraft.model_validate(draft)

        records = self.get_all()
        existing_ids = {tx.id for tx in records}

        timestamp = draft.timestamp if draft.timestamp is not None else self._clock()
        tx_id = generate_transaction_id(self._clock())
        while tx_id in existing_ids:
            tx_id = generate_transaction_id(self._clock())

        fields = draft.model_dump(exclude={"status", "timestamp"})
        transaction = Transaction(
            **fields,
            id=tx_id,
            timestamp=timestamp,
            status=draft.resolved_status(),
        )

        duplicate = next((tx for tx in records if same_event(transaction, tx)), None)
        if duplicate is not None:
            self.log.debug("Transaction already recorded", tx_hash=transaction.tx_hash, id=duplicate.id)
            return duplicate

        updated = self._truncate(_sort_newest_first([transaction] + records))
        self._save(updated)

        self.log.info(
            "Transaction added",
            id=transaction.id,
            type=transaction.type.value,
            status=transaction.status.value,
            tx_hash=transaction.tx_hash,
        )
        return transaction

    def _normalize_updates(self, updates: dict) -> dict:
        # Accept both snake_case names and persisted camelCase aliases
        by_alias = {f.alias: name for name, f in Transaction.model_fields.items() if f.alias}
        normalized = {}
        for key, value in updates.items():
            name = by_alias.get(key, key)
            if name in _IMMUTABLE_FIELDS or name not in Transaction.model_fields:
                continue
            normalized[name] = value
        return normalized

    def update(self, tx_id: str, updates: dict) -> Optional[Transaction]:
        """Merge fields into a record. Returns None when no such record exists.

        A settled record keeps its status, and a tx hash already held by
        another record is not taken over; such changes are ignored while the
        other fields still apply.
        """
        records = self.get_all()
        index = next((i for i, tx in enumerate(records) if tx.id == tx_id), None)
        if index is None:
            self.log.debug("Transaction not found for update", id=tx_id)
            return None

        current = records[index]
        changes = self._normalize_updates(updates)

        if current.status != TransactionStatus.PENDING and "status" in changes:
            requested = TransactionStatus(changes.pop("status"))
            if requested != current.status:
                self.log.warning(
                    "Ignoring status change of settled transaction",
                    id=tx_id,
                    status=current.status.value,
                    requested=requested.value,
                )

        new_hash = changes.get("tx_hash")
        if new_hash:
            key = hash_key(new_hash)
            if any(key in event_keys(tx) for i, tx in enumerate(records) if i != index):
                self.log.warning("Ignoring tx hash held by another transaction", id=tx_id, tx_hash=new_hash)
                changes.pop("tx_hash")

        merged = Transaction.model_validate({**current.model_dump(), **changes})
        if merged == current:
            return current

        records[index] = merged
        self._save(records)
        self.log.info("Transaction updated", id=tx_id, status=merged.status.value)
        return merged

    def delete(self, tx_id: str) -> bool:
        """Remove a record. Returns whether it existed."""
        records = self.get_all()
        remaining = [tx for tx in records if tx.id != tx_id]

        if len(remaining) == len(records):
            self.log.debug("Transaction not found for deletion", id=tx_id)
            return False

        self._save(remaining)
        self.log.info("Transaction deleted", id=tx_id)
        return True

    def clear(self) -> None:
        """Remove every record."""
        self._migrate_legacy()
        self._storage.remove_item(self.STORAGE_KEY)
        self.log.info("All transactions cleared")

    # ===================
    # Export / import
    # ===================

    def export_all(self) -> str:
        """Pretty-printed JSON array of every record."""
        return json.dumps([tx.to_storage() for tx in self.get_all()], indent=2)

    def import_all(self, serialized: str) -> bool:
        """Merge an exported ledger into this one.

        Returns False, leaving the store untouched, when the payload is not a
        JSON array of valid records or the write is rejected.
        """
        try:
            raw = json.loads(serialized)
        except (TypeError, ValueError) as e:
            self.log.warning("Import payload is not JSON", error=str(e))
            return False

        if not isinstance(raw, list):
            self.log.warning("Import payload is not a list", kind=type(raw).__name__)
            return False

        try:
            incoming = [Transaction.model_validate(item) for item in raw]
        except ValidationError as e:
            self.log.warning("Import payload has invalid records", error=str(e))
            return False

        merged = unique_events(incoming + self.get_all())
        final = self._truncate(_sort_newest_first(merged))

        try:
            self._save(final)
        except Exception as e:
            self.log.error("Failed to persist imported transactions", error=str(e))
            return False

        self.log.info("Transactions imported", incoming=len(incoming), total=len(final))
        return True


def compute_stats(transactions: list[Transaction]) -> TransactionStats:
    """Statistics over an already-scoped list of records."""
    completed = [tx for tx in transactions if tx.status == TransactionStatus.COMPLETED]
    pending = [tx for tx in transactions if tx.status == TransactionStatus.PENDING]
    failed = [tx for tx in transactions if tx.status == TransactionStatus.FAILED]

    total_volume = sum(parse_usd_value(tx.value) for tx in completed)

    most_used_token = _most_common(Counter(tx.token for tx in transactions))
    most_used_chain_id = _most_common(Counter(tx.chain_id for tx in transactions))

    gas_transactions = [tx for tx in completed if tx.gas_used and tx.gas_price]
    total_gas_used = sum(_to_int(tx.gas_used) for tx in gas_transactions)
    total_gas_price = sum(_to_int(tx.gas_price) for tx in gas_transactions)
    if gas_transactions:
        count = len(gas_transactions)
        if total_gas_price % count == 0:
            avg_gas_price = str(total_gas_price // count)
        else:
            avg_gas_price = str(total_gas_price / count)
    else:
        avg_gas_price = "0"

    return TransactionStats(
        total_transactions=len(transactions),
        completed_transactions=len(completed),
        pending_transactions=len(pending),
        failed_transactions=len(failed),
        total_volume=total_volume,
        total_gas_used=str(total_gas_used),
        avg_gas_price=avg_gas_price,
        most_used_token=most_used_token if most_used_token is not None else "N/A",
        most_used_chain=get_chain_name(most_used_chain_id) if most_used_chain_id is not None else "N/A",
    )

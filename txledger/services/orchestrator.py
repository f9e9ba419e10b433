"""
Ledger orchestrator: the entry point the rest of the application uses.

Owns the refresh cycle (reconcile pending records, discover unseen chain
transactions, re-derive the filtered view and statistics), the active filter
and the background refresh that runs while any record is pending.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from txledger.config import settings
from txledger.db.models import (
    Transaction,
    TransactionDraft,
    TransactionFilter,
    TransactionStats,
    event_keys,
    hash_key,
)
from txledger.exceptions import LedgerError, PersistenceError
from txledger.services.ledger_store import LedgerStore, compute_stats
from txledger.services.reconciler import ChainReconciler
from txledger.utils.logging import LoggerMixin, log_context

# Status/block/gas fields written back after reconciliation
_RECONCILED_FIELDS = ("status", "block_number", "gas_used", "gas_price")


@dataclass
class AccountSession:
    """Connected wallet, as reported by the account provider."""
    user_address: Optional[str] = None
    chain_id: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return bool(self.user_address and self.chain_id)


class LedgerOrchestrator(LoggerMixin):
    """Coordinates the ledger store and the chain reconciler.

    Exposed state: ``transactions`` (records of the current user),
    ``filtered_transactions``, ``stats``, ``is_loading``, ``error`` and
    ``current_filter``. Refresh passes are serialized; a refresh requested
    while one is running is coalesced into a single follow-up pass.
    """

    def __init__(
        self,
        store: LedgerStore,
        reconciler: ChainReconciler,
        session: Optional[AccountSession] = None,
        refresh_interval: Optional[float] = None,
    ):
        self._store = store
        self._reconciler = reconciler
        self.session = session or AccountSession()
        self.refresh_interval = refresh_interval or settings.refresh_interval_seconds

        self.transactions: list[Transaction] = []
        self.filtered_transactions: list[Transaction] = []
        self.stats = TransactionStats()
        self.current_filter = TransactionFilter()
        self.is_loading = False
        self.error: Optional[str] = None

        self._lock = asyncio.Lock()
        self._refresh_requested = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def has_pending(self) -> bool:
        return any(tx.is_pending for tx in self.transactions)

    # ===================
    # Refresh cycle
    # ===================

    async def refresh(self) -> None:
        """Bring the view up to date with storage and the chain. Never raises."""
        self._refresh_requested = True
        async with self._lock:
            while self._refresh_requested:
                self._refresh_requested = False
                await self._run_cycle()

    async def _run_cycle(self) -> None:
        self.is_loading = True
        self.error = None
        user_address = self.session.user_address
        chain_id = self.session.chain_id

        try:
            with log_context(user_address=user_address, chain_id=chain_id):
                records = self._store.get_all()

                if any(tx.is_pending for tx in records):
                    self.log.debug("Updating pending transaction statuses")
                    await self._persist_reconciled(records)

                records = self._store.get_all()

                if user_address and chain_id:
                    await self._discover(records, user_address, chain_id)
                    records = self._store.get_all()

                self.transactions = [tx for tx in records if tx.belongs_to(user_address, chain_id)]
                self.filtered_transactions = self._derive_filtered()
                self.stats = compute_stats(self.transactions)
        except Exception as e:
            self.log.error("Failed to refresh transactions", error=str(e))
            self.error = str(e) or "Failed to load transactions"
        finally:
            self.is_loading = False

    async def _persist_reconciled(self, records: list[Transaction]) -> None:
        before = {tx.id: tx for tx in records}
        reconciled = await self._reconciler.reconcile_pending(records)

        for tx in reconciled:
            previous = before.get(tx.id)
            if previous is None or previous.status == tx.status:
                continue
            updates = {
                name: getattr(tx, name)
                for name in _RECONCILED_FIELDS
                if getattr(tx, name) is not None
            }
            self._store.update(tx.id, updates)
            self.log.info("Transaction settled", id=tx.id, tx_hash=tx.tx_hash, status=tx.status.value)

    async def _discover(self, records: list[Transaction], user_address: str, chain_id: int) -> None:
        """Add unseen on-chain transactions. Failures only mean no new records this cycle."""
        self.log.debug("Fetching blockchain transaction history")
        try:
            discovered = await self._reconciler.discover_user_history(user_address, chain_id)
        except Exception as e:
            self.log.warning("Failed to fetch blockchain transactions", error=str(e))
            return

        known: set = set()
        for tx in records:
            known |= event_keys(tx)

        # A full store evicts anything older than its oldest record on add
        full = len(records) >= self._store.max_transactions
        oldest = min((tx.timestamp for tx in records), default=None)

        for chain_tx in discovered:
            key = hash_key(chain_tx.hash)
            if key in known:
                continue
            try:
                draft = await self._reconciler.build_draft(chain_tx, user_address, chain_id)
                if full and draft.timestamp is not None and draft.timestamp < oldest:
                    self.log.debug("Skipping transaction older than a full ledger", tx_hash=chain_tx.hash)
                    known.add(key)
                    continue
                self._store.add(draft)
                known.add(key)
            except Exception as e:
                self.log.warning("Failed to add blockchain transaction", tx_hash=chain_tx.hash, error=str(e))

    # ===================
    # Filters
    # ===================

    def _derive_filtered(self) -> list[Transaction]:
        if self.current_filter.is_empty():
            return list(self.transactions)
        now = self._store.now()
        return [tx for tx in self.transactions if self.current_filter.matches(tx, now)]

    def apply_filter(self, criteria: Union[TransactionFilter, dict]) -> list[Transaction]:
        """Set the active filter and re-derive the view from the last known records."""
        if isinstance(criteria, dict):
            criteria = TransactionFilter.model_validate(criteria)
        self.current_filter = criteria
        self.filtered_transactions = self._derive_filtered()
        return self.filtered_transactions

    def clear_filter(self) -> list[Transaction]:
        self.current_filter = TransactionFilter()
        self.filtered_transactions = list(self.transactions)
        return self.filtered_transactions

    # ===================
    # Mutations
    # ===================

    def _stamp_session(self, draft: Union[TransactionDraft, Mapping[str, Any]]) -> TransactionDraft:
        if isinstance(draft, TransactionDraft):
            return draft.model_copy(update={
                "user_address": self.session.user_address,
                "chain_id": self.session.chain_id,
            })
        data = {k: v for k, v in draft.items() if k not in ("userAddress", "chainId")}
        data["user_address"] = self.session.user_address
        data["chain_id"] = self.session.chain_id
        return TransactionDraft.model_validate(data)

    async def add_transaction(
        self, draft: Union[TransactionDraft, Mapping[str, Any]]
    ) -> Optional[Transaction]:
        """Record a user operation for the connected wallet.

        Raises LedgerError when no wallet is connected and PersistenceError
        when storage rejects the write; both are also recorded in ``error``.
        """
        if not self.session.is_connected:
            self.error = "Wallet not connected"
            raise LedgerError(self.error)

        try:
            transaction = self._store.add(self._stamp_session(draft))
        except PersistenceError as e:
            self.log.error("Failed to add transaction", error=str(e))
            self.error = str(e)
            raise
        except Exception as e:
            self.log.error("Failed to add transaction", error=str(e))
            self.error = str(e) or "Failed to add transaction"
            return None

        await self.refresh()
        return transaction

    async def update_transaction(self, tx_id: str, updates: dict) -> Optional[Transaction]:
        """Merge fields into a record; None when it does not exist.

        PersistenceError is recorded in ``error`` and re-raised.
        """
        try:
            updated = self._store.update(tx_id, updates)
        except PersistenceError as e:
            self.log.error("Failed to update transaction", id=tx_id, error=str(e))
            self.error = str(e)
            raise
        except Exception as e:
            self.log.error("Failed to update transaction", id=tx_id, error=str(e))
            self.error = str(e) or "Failed to update transaction"
            return None

        if updated is not None:
            await self.refresh()
        return updated

    async def delete_transaction(self, tx_id: str) -> bool:
        """Remove a record. PersistenceError is recorded in ``error`` and re-raised."""
        try:
            deleted = self._store.delete(tx_id)
        except PersistenceError as e:
            self.log.error("Failed to delete transaction", id=tx_id, error=str(e))
            self.error = str(e)
            raise
        except Exception as e:
            self.log.error("Failed to delete transaction", id=tx_id, error=str(e))
            self.error = str(e) or "Failed to delete transaction"
            return False

        if deleted:
            await self.refresh()
        return deleted

    async def import_transactions(self, serialized: str) -> bool:
        imported = self._store.import_all(serialized)
        if imported:
            await self.refresh()
        else:
            self.error = "Failed to import transactions"
        return imported

    def export_transactions(self) -> str:
        return self._store.export_all()

    async def clear_all(self) -> None:
        """Remove every record. Raises PersistenceError if storage rejects it."""
        try:
            self._store.clear()
        except PersistenceError as e:
            self.log.error("Failed to clear transactions", error=str(e))
            self.error = str(e)
            raise
        await self.refresh()

    async def record_liquidation(
        self,
        event_args: Mapping[str, Any],
        tx_hash: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Record a Liquidated event if it concerns the connected wallet."""
        if not self.session.is_connected:
            return None
        draft = await self._reconciler.liquidation_draft(
            event_args,
            self.session.user_address,
            self.session.chain_id,
            tx_hash=tx_hash,
        )
        if draft is None:
            return None
        return await self.add_transaction(draft)

    async def set_session(self, user_address: Optional[str], chain_id: Optional[int]) -> None:
        """Switch the connected account or network and reload."""
        self.session = AccountSession(user_address=user_address, chain_id=chain_id)
        await self.refresh()

    # ===================
    # Background refresh
    # ===================

    async def start(self) -> None:
        """Start the background refresh loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        self.log.info("Ledger polling started", interval=self.refresh_interval)

    async def stop(self) -> None:
        """Stop the background refresh loop and any refresh it started."""
        self._running = False
        for task in (self._task, self._refresh_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._refresh_task = None
        self.log.info("Ledger polling stopped")

    async def _poll_loop(self) -> None:
        """Tick on a fixed cadence; refresh only while something is pending."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.refresh_interval

        while self._running:
            delay = next_tick - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            next_tick += self.refresh_interval

            if not self.has_pending:
                continue

            if self._refresh_task and not self._refresh_task.done():
                self.log.debug("Refresh still in flight, skipping tick")
                continue

            self.log.debug("Auto-refreshing pending transactions")
            self._refresh_task = asyncio.create_task(self.refresh())

    async def __aenter__(self) -> "LedgerOrchestrator":
        await self.refresh()
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

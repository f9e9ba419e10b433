"""
Tests for the ledger orchestrator: refresh cycle, filters, mutations and
background polling.

Run with: pytest tests/test_orchestrator.py -v
"""

import asyncio

import pytest

from conftest import BASE_TIME, CHAIN_ID, OTHER_USER, USER, make_draft
from txledger.db.models import TransactionStatus
from txledger.db.storage import MemoryStorage
from txledger.exceptions import LedgerError, PersistenceError
from txledger.services.ledger_store import LedgerStore
from txledger.services.orchestrator import AccountSession, LedgerOrchestrator

DEPOSIT_INPUT = "0xb6b55f25" + "0" * 64
USDT = "0x337610d27c682e347c9cd60bd4b3b107c9d34ddd"


async def wait_until(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestRefresh:
    """Test the refresh cycle."""

    async def test_pending_becomes_completed(self, orchestrator, chain_client):
        tx = await orchestrator.add_transaction(make_draft(type="borrow", tx_hash="0xabc", value="$4500.00"))
        assert tx.status == TransactionStatus.PENDING
        assert orchestrator.stats.pending_transactions == 1

        chain_client.add_receipt("0xabc", status=1, block_number=321, gas_used=60000, gas_price=9)
        await orchestrator.refresh()

        settled = orchestrator.transactions[0]
        assert settled.status == TransactionStatus.COMPLETED
        assert settled.block_number == 321
        assert settled.gas_used == "60000"
        assert settled.gas_price == "9"
        assert orchestrator.stats.completed_transactions == 1
        assert orchestrator.stats.total_volume == pytest.approx(4500)
        assert not orchestrator.has_pending

    async def test_reverted_becomes_failed(self, orchestrator, store, chain_client):
        tx = await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))
        chain_client.add_receipt("0xabc", status=0)

        await orchestrator.refresh()

        assert store.get(tx.id).status == TransactionStatus.FAILED
        assert orchestrator.stats.failed_transactions == 1

    async def test_unconfirmed_stays_pending(self, orchestrator):
        await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))
        await orchestrator.refresh()

        assert orchestrator.has_pending
        assert orchestrator.error is None

    async def test_scoped_to_session(self, orchestrator, store):
        store.add(make_draft(user_address=OTHER_USER))
        store.add(make_draft(chain_id=11155111))
        mine = store.add(make_draft())

        await orchestrator.refresh()

        assert [tx.id for tx in orchestrator.transactions] == [mine.id]
        assert orchestrator.stats.total_transactions == 1

    async def test_discovery_adds_unseen_transactions(self, orchestrator, chain_client):
        chain_client.add_user_transaction("0xchain", USER, block_number=4500, input_data=DEPOSIT_INPUT)

        await orchestrator.refresh()
        await orchestrator.refresh()

        assert len(orchestrator.transactions) == 1
        discovered = orchestrator.transactions[0]
        assert discovered.tx_hash == "0xchain"
        assert discovered.action == "Token Deposit"
        assert discovered.status == TransactionStatus.COMPLETED
        assert discovered.timestamp == (1_700_000_000 + 4500) * 1000
        assert discovered.metadata.unverified is True

    async def test_discovery_skips_recorded_hashes(self, orchestrator, chain_client):
        chain_client.add_user_transaction("0xabc", USER, block_number=4500, input_data=DEPOSIT_INPUT)

        local = await orchestrator.add_transaction(make_draft(tx_hash="0xABC", token="LINK"))

        assert [tx.id for tx in orchestrator.transactions] == [local.id]
        assert orchestrator.transactions[0].token == "LINK"

    async def test_full_ledger_skips_older_discoveries(self, reconciler, session, storage, clock, chain_client):
        """A full ledger does not take in chain activity it would evict at once."""
        store = LedgerStore(storage, max_transactions=2, clock=clock)
        orchestrator = LedgerOrchestrator(store, reconciler, session=session)
        newer = BASE_TIME + 10_000_000
        held = [store.add(make_draft(timestamp=newer + i)) for i in range(2)]
        chain_client.add_user_transaction("0xold", USER, block_number=4500, input_data=DEPOSIT_INPUT)

        await orchestrator.refresh()
        await orchestrator.refresh()

        assert sorted(tx.id for tx in orchestrator.transactions) == sorted(tx.id for tx in held)
        assert all(tx.tx_hash != "0xold" for tx in store.get_all())
        assert orchestrator.error is None

    async def test_full_ledger_takes_newer_discoveries(self, reconciler, session, storage, clock, chain_client):
        store = LedgerStore(storage, max_transactions=2, clock=clock)
        orchestrator = LedgerOrchestrator(store, reconciler, session=session)
        older = (1_700_000_000 + 4000) * 1000
        store.add(make_draft(timestamp=older))
        kept = store.add(make_draft(timestamp=older + 1))
        chain_client.add_user_transaction("0xnew", USER, block_number=4500, input_data=DEPOSIT_INPUT)

        await orchestrator.refresh()

        assert [tx.tx_hash for tx in orchestrator.transactions] == ["0xnew", None]
        assert orchestrator.transactions[1].id == kept.id

    async def test_discovery_records_decoded_transfer(self, orchestrator, chain_client):
        topic = "0x" + "0" * 24
        chain_client.add_user_transaction(
            "0xchain", USER, block_number=4500, input_data=DEPOSIT_INPUT,
            logs=[{
                "address": USDT,
                "topics": [
                    "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
                    topic + USER[2:],
                    topic + "24f81da0abbd2a88605e4b140880647f26178744",
                ],
                "data": hex(7 * 10 ** 18),
            }],
        )

        await orchestrator.refresh()

        discovered = orchestrator.transactions[0]
        assert (discovered.token, discovered.amount) == ("USDT", "7")

    async def test_chain_outage_keeps_local_view(self, orchestrator, store, chain_client):
        store.add(make_draft())
        pending = store.add(make_draft(tx_hash="0xabc"))
        chain_client.fail_with = ConnectionError("rpc down")

        await orchestrator.refresh()

        assert orchestrator.error is None
        assert len(orchestrator.transactions) == 2
        assert store.get(pending.id).status == TransactionStatus.PENDING

    async def test_discovery_error_is_swallowed(self, orchestrator, reconciler, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("indexer exploded")

        monkeypatch.setattr(reconciler, "discover_user_history", broken)
        store.add(make_draft())

        await orchestrator.refresh()

        assert orchestrator.error is None
        assert len(orchestrator.transactions) == 1
        assert orchestrator.is_loading is False

    async def test_unexpected_error_is_reported(self, orchestrator, store, monkeypatch):
        def broken():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "get_all", broken)

        await orchestrator.refresh()

        assert orchestrator.error == "disk on fire"
        assert orchestrator.is_loading is False

    async def test_error_clears_on_next_success(self, orchestrator, store, monkeypatch):
        def broken():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store, "get_all", broken)
        await orchestrator.refresh()
        monkeypatch.undo()

        await orchestrator.refresh()
        assert orchestrator.error is None

    async def test_without_session_shows_everything(self, store, reconciler, chain_client):
        store.add(make_draft())
        store.add(make_draft(user_address=OTHER_USER))
        orchestrator = LedgerOrchestrator(store, reconciler)

        await orchestrator.refresh()

        assert len(orchestrator.transactions) == 2
        assert chain_client.log_queries == []

    async def test_concurrent_refreshes_coalesce(self, orchestrator, monkeypatch):
        calls = 0
        release = asyncio.Event()
        original = orchestrator._run_cycle

        async def slow_cycle():
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()
            await original()

        monkeypatch.setattr(orchestrator, "_run_cycle", slow_cycle)

        first = asyncio.create_task(orchestrator.refresh())
        await asyncio.sleep(0)
        others = [asyncio.create_task(orchestrator.refresh()) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(first, *others)

        assert calls == 2


class TestFilters:
    """Test the active filter."""

    async def test_apply_and_clear(self, orchestrator, store, clock):
        store.add(make_draft(type="borrow"))
        clock.advance()
        store.add(make_draft(type="deposit"))
        await orchestrator.refresh()

        borrowed = orchestrator.apply_filter({"type": "borrow"})
        assert [tx.type.value for tx in borrowed] == ["borrow"]
        assert orchestrator.filtered_transactions == borrowed

        assert len(orchestrator.clear_filter()) == 2
        assert orchestrator.current_filter.is_empty()

    async def test_filter_survives_refresh(self, orchestrator, store):
        store.add(make_draft(type="borrow"))
        orchestrator.apply_filter({"type": "deposit"})

        await orchestrator.refresh()
        assert orchestrator.filtered_transactions == []

        store.add(make_draft(type="deposit"))
        await orchestrator.refresh()
        assert len(orchestrator.filtered_transactions) == 1

    async def test_timeframe_uses_store_clock(self, orchestrator, store, clock):
        store.add(make_draft())
        await orchestrator.refresh()

        clock.advance(2 * 24 * 60 * 60 * 1000)
        assert orchestrator.apply_filter({"timeframe": "24hours"}) == []


class TestMutations:
    """Test writes routed through the orchestrator."""

    async def test_add_requires_session(self, store, reconciler):
        orchestrator = LedgerOrchestrator(store, reconciler, session=AccountSession())

        with pytest.raises(LedgerError):
            await orchestrator.add_transaction(make_draft())

        assert orchestrator.error == "Wallet not connected"
        assert store.get_all() == []

    async def test_add_stamps_session(self, orchestrator):
        tx = await orchestrator.add_transaction(make_draft(user_address=OTHER_USER, chain_id=1))

        assert tx.user_address == USER
        assert tx.chain_id == CHAIN_ID
        assert orchestrator.transactions == [tx]

    async def test_add_rejected_by_storage(self, reconciler, session, clock):
        store = LedgerStore(MemoryStorage(quota_bytes=50), clock=clock)
        orchestrator = LedgerOrchestrator(store, reconciler, session=session)

        with pytest.raises(PersistenceError):
            await orchestrator.add_transaction(make_draft())

        assert "quota" in orchestrator.error

    async def test_add_invalid_draft_returns_none(self, orchestrator):
        assert await orchestrator.add_transaction(make_draft(type="mint")) is None
        assert orchestrator.error

    async def test_update_and_delete(self, orchestrator):
        tx = await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))

        updated = await orchestrator.update_transaction(tx.id, {"status": "completed"})
        assert updated.status == TransactionStatus.COMPLETED
        assert orchestrator.stats.completed_transactions == 1

        assert await orchestrator.update_transaction("tx_missing", {"status": "failed"}) is None

        assert await orchestrator.delete_transaction(tx.id) is True
        assert orchestrator.transactions == []
        assert await orchestrator.delete_transaction(tx.id) is False

    async def test_delete_rejected_by_storage(self, orchestrator, store, storage):
        tx = await orchestrator.add_transaction(make_draft())
        storage.quota_bytes = 1

        with pytest.raises(PersistenceError):
            await orchestrator.delete_transaction(tx.id)
        assert "quota" in orchestrator.error
        assert store.get(tx.id) is not None

    async def test_update_rejected_by_storage(self, orchestrator, store, storage):
        tx = await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))
        storage.quota_bytes = 1

        with pytest.raises(PersistenceError):
            await orchestrator.update_transaction(tx.id, {"status": "completed"})
        assert "quota" in orchestrator.error
        assert store.get(tx.id).status == TransactionStatus.PENDING

        storage.quota_bytes = None
        assert await orchestrator.delete_transaction("tx_missing") is False
        assert await orchestrator.update_transaction("tx_missing", {"token": "LINK"}) is None

    async def test_export_import(self, orchestrator, store):
        await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))
        exported = orchestrator.export_transactions()

        await orchestrator.clear_all()
        assert orchestrator.transactions == []

        assert await orchestrator.import_transactions(exported) is True
        assert len(orchestrator.transactions) == 1
        assert await orchestrator.import_transactions("nope") is False
        assert orchestrator.error == "Failed to import transactions"
        assert len(orchestrator.transactions) == 1

    async def test_record_liquidation(self, orchestrator):
        event = {"borrower": USER, "amount": 2 * 10 ** 18, "token": USDT, "penalty": 0}

        tx = await orchestrator.record_liquidation(event, tx_hash="0xliq")

        assert tx.type.value == "liquidation"
        assert tx.amount == "2"
        assert orchestrator.transactions[0].id == tx.id

    async def test_liquidation_of_someone_else(self, orchestrator, store):
        event = {"borrower": OTHER_USER, "amount": 1, "token": USDT, "penalty": 0}

        assert await orchestrator.record_liquidation(event) is None
        assert store.get_all() == []

    async def test_set_session_switches_view(self, orchestrator, store):
        store.add(make_draft())
        store.add(make_draft(user_address=OTHER_USER))

        await orchestrator.set_session(OTHER_USER, CHAIN_ID)

        assert [tx.user_address for tx in orchestrator.transactions] == [OTHER_USER]


class TestPolling:
    """Test the background refresh loop."""

    @pytest.fixture
    def fast_orchestrator(self, store, reconciler, session):
        return LedgerOrchestrator(store, reconciler, session=session, refresh_interval=0.01)

    async def test_polls_until_settled(self, fast_orchestrator, chain_client):
        orchestrator = fast_orchestrator
        await orchestrator.add_transaction(make_draft(tx_hash="0xabc"))
        await orchestrator.start()

        chain_client.add_receipt("0xabc", status=1)
        settled = await wait_until(lambda: not orchestrator.has_pending)
        await orchestrator.stop()

        assert settled
        assert orchestrator.transactions[0].status == TransactionStatus.COMPLETED

    async def test_idle_without_pending(self, fast_orchestrator, monkeypatch):
        orchestrator = fast_orchestrator
        calls = 0

        async def counting_refresh():
            nonlocal calls
            calls += 1

        monkeypatch.setattr(orchestrator, "refresh", counting_refresh)
        await orchestrator.start()
        await asyncio.sleep(0.05)
        await orchestrator.stop()

        assert calls == 0

    async def test_start_is_idempotent_and_stop_cleans_up(self, fast_orchestrator):
        orchestrator = fast_orchestrator
        await orchestrator.start()
        task = orchestrator._task
        await orchestrator.start()

        assert orchestrator._task is task

        await orchestrator.stop()
        assert orchestrator._task is None
        assert task.cancelled() or task.done()

    async def test_context_manager(self, fast_orchestrator, store):
        store.add(make_draft())

        async with fast_orchestrator as orchestrator:
            assert len(orchestrator.transactions) == 1
            assert orchestrator._task is not None

        assert orchestrator._task is None

"""
Pytest configuration and fixtures.
"""

from typing import Any, Optional

import pytest

from txledger.chain.client import ChainClientRegistry
from txledger.chain.contracts import BSC_TESTNET_CHAIN_ID
from txledger.db.storage import MemoryStorage
from txledger.services.ledger_store import LedgerStore
from txledger.services.orchestrator import AccountSession, LedgerOrchestrator
from txledger.services.reconciler import ChainReconciler

USER = "0x1111111111111111111111111111111111111111"
OTHER_USER = "0x2222222222222222222222222222222222222222"
CHAIN_ID = BSC_TESTNET_CHAIN_ID
LINK_PORT = "0x24F81DA0aBBD2a88605E4B140880647F26178744"

BASE_TIME = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = BASE_TIME):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> None:
        self.now += ms


class FakeChainClient:
    """In-memory stand-in for an EVM read client."""

    def __init__(self):
        self.receipts: dict[str, dict] = {}
        self.blocks: dict[int, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.logs: dict[str, list[dict]] = {}
        self.latest_block = 5000
        self.contract_results: dict[tuple, Any] = {}
        self.fail_with: Optional[Exception] = None
        self.receipt_calls = 0
        self.log_queries: list[tuple] = []

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def add_receipt(self, tx_hash: str, status: int, block_number: int = 100,
                    gas_used: int = 21000, gas_price: Optional[int] = None,
                    logs: Optional[list] = None) -> None:
        self.receipts[tx_hash] = {
            "transaction_hash": tx_hash,
            "status": status,
            "block_number": block_number,
            "gas_used": gas_used,
            "effective_gas_price": gas_price,
            "logs": logs or [],
        }
        self.blocks.setdefault(block_number, {"number": block_number, "timestamp": 1_700_000_000 + block_number})

    def add_user_transaction(self, tx_hash: str, sender: str, block_number: int,
                             input_data: str = "0x", value: int = 0, status: int = 1,
                             contract: str = LINK_PORT, logs: Optional[list] = None) -> None:
        self.transactions[tx_hash] = {
            "hash": tx_hash,
            "from": sender,
            "to": contract,
            "value": value,
            "input": input_data,
            "block_number": block_number,
        }
        self.add_receipt(tx_hash, status, block_number=block_number, logs=logs)
        self.logs.setdefault(contract.lower(), []).append({
            "address": contract,
            "topics": [],
            "data": "0x",
            "transaction_hash": tx_hash,
            "block_number": block_number,
        })

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        self._maybe_fail()
        self.receipt_calls += 1
        return self.receipts.get(tx_hash)

    async def get_block(self, block_number: int) -> Optional[dict]:
        self._maybe_fail()
        return self.blocks.get(block_number)

    async def get_block_number(self) -> int:
        self._maybe_fail()
        return self.latest_block

    async def get_logs(self, address: str, from_block: int, to_block: int) -> list[dict]:
        self._maybe_fail()
        self.log_queries.append((address, from_block, to_block))
        return [
            log for log in self.logs.get(address.lower(), [])
            if from_block <= log["block_number"] <= to_block
        ]

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        self._maybe_fail()
        return self.transactions.get(tx_hash)

    async def get_gas_price(self) -> int:
        self._maybe_fail()
        return 5_000_000_000

    async def call_contract(self, address: str, abi: list, function_name: str, *args: Any) -> Any:
        self._maybe_fail()
        return self.contract_results[(address, function_name)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(storage, clock) -> LedgerStore:
    return LedgerStore(storage, max_transactions=1000, clock=clock)


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def clients(chain_client) -> ChainClientRegistry:
    registry = ChainClientRegistry()
    registry.register(CHAIN_ID, chain_client)
    return registry


@pytest.fixture
def reconciler(clients) -> ChainReconciler:
    return ChainReconciler(clients, block_window=1000)


@pytest.fixture
def session() -> AccountSession:
    return AccountSession(user_address=USER, chain_id=CHAIN_ID)


@pytest.fixture
def orchestrator(store, reconciler, session) -> LedgerOrchestrator:
    return LedgerOrchestrator(store, reconciler, session=session, refresh_interval=30.0)


def make_draft(**overrides) -> dict:
    """Draft with sensible defaults for tests."""
    draft = {
        "type": "deposit",
        "action": "Liquidity Deposit",
        "token": "ETH",
        "amount": "1.0",
        "value": "$3000.00",
        "user_address": USER,
        "chain_id": CHAIN_ID,
    }
    draft.update(overrides)
    return draft

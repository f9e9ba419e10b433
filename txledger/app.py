"""
Wiring for a ledger instance: storage, store, chain clients, reconciler and
orchestrator built from settings.
"""

from dataclasses import dataclass
from typing import Optional

from txledger.chain.client import ChainClientRegistry
from txledger.config import Settings, get_settings
from txledger.db.storage import KeyValueStorage, create_storage
from txledger.services.ledger_store import LedgerStore
from txledger.services.orchestrator import AccountSession, LedgerOrchestrator
from txledger.services.price_oracle import ChainlinkPriceOracle
from txledger.services.reconciler import ChainReconciler
from txledger.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Ledger:
    """A fully wired ledger."""
    store: LedgerStore
    clients: ChainClientRegistry
    reconciler: ChainReconciler
    orchestrator: LedgerOrchestrator


def build_ledger(
    settings: Optional[Settings] = None,
    storage: Optional[KeyValueStorage] = None,
    clients: Optional[ChainClientRegistry] = None,
    session: Optional[AccountSession] = None,
) -> Ledger:
    """Assemble a ledger. Any component not passed in is built from settings."""
    settings = settings or get_settings()
    storage = storage or create_storage(settings)
    clients = clients or ChainClientRegistry(settings)

    store = LedgerStore(storage, max_transactions=settings.max_transactions)
    oracle = ChainlinkPriceOracle(clients, ttl_seconds=settings.price_cache_ttl)
    reconciler = ChainReconciler(clients, price_oracle=oracle, block_window=settings.discovery_block_window)
    orchestrator = LedgerOrchestrator(
        store,
        reconciler,
        session=session,
        refresh_interval=settings.refresh_interval_seconds,
    )

    logger.debug(
        "Ledger assembled",
        storage=type(storage).__name__,
        max_transactions=settings.max_transactions,
    )
    return Ledger(store=store, clients=clients, reconciler=reconciler, orchestrator=orchestrator)

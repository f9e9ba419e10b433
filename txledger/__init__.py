"""
Transaction ledger and chain reconciliation for the LinkPort lending client.
"""

from txledger.db.models import (
    Transaction,
    TransactionDraft,
    TransactionFilter,
    TransactionMetadata,
    TransactionStats,
    TransactionStatus,
    TransactionType,
)
from txledger.exceptions import LedgerError, PersistenceError

__all__ = [
    "Transaction",
    "TransactionDraft",
    "TransactionFilter",
    "TransactionMetadata",
    "TransactionStats",
    "TransactionStatus",
    "TransactionType",
    "LedgerError",
    "PersistenceError",
]

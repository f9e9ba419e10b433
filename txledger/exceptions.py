"""
Ledger exception hierarchy.

Expected conditions (record not found, empty slot, no receipt yet) are
signalled through return values, not exceptions.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class PersistenceError(LedgerError):
    """Raised when the storage medium rejects a write (quota, disk, permissions)."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.message = message
        self.key = key
        super().__init__(f"[{key}] {message}" if key else message)


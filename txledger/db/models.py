"""
Ledger data model.

Records are persisted with camelCase keys so that ledgers exported by the
browser client import unchanged; Python code uses the snake_case names.
"""

import random
import string
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


# ===================
# Enums
# ===================

class TransactionType(str, Enum):
    """Operations the ledger records."""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"
    BRIDGE = "bridge"
    STAKE = "stake"
    UNSTAKE = "unstake"
    LIQUIDATION = "liquidation"


class TransactionStatus(str, Enum):
    """Lifecycle of a submitted operation."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Timeframe(str, Enum):
    """Relative windows accepted by the filter."""
    LAST_24_HOURS = "24hours"
    LAST_7_DAYS = "7days"
    LAST_30_DAYS = "30days"
    ALL = "all"


TIMEFRAME_MS = {
    Timeframe.LAST_24_HOURS.value: 24 * 60 * 60 * 1000,
    Timeframe.LAST_7_DAYS.value: 7 * 24 * 60 * 60 * 1000,
    Timeframe.LAST_30_DAYS.value: 30 * 24 * 60 * 60 * 1000,
}

# Filter value meaning "no constraint" for type/status/token
FILTER_ANY = "all"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_transaction_id(timestamp: Optional[int] = None) -> str:
    """Generate an id of the form tx_<epoch-ms>_<9 base36 chars>."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"tx_{timestamp if timestamp is not None else now_ms()}_{suffix}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


# ===================
# Records
# ===================

class TransactionMetadata(_CamelModel):
    """Operation-specific extras. Unknown keys are kept as-is."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    health_factor: Optional[str] = None
    collateral_ratio: Optional[str] = None
    interest_rate: Optional[str] = None
    lp_tokens: Optional[str] = None
    rewards: Optional[str] = None

    # Liquidations
    borrower_address: Optional[str] = None
    liquidation_penalty: Optional[str] = None
    collateral_seized: Optional[str] = None
    liquidation_reason: Optional[str] = None

    # Set on discovered records whose token/amount/value are placeholders
    unverified: Optional[bool] = None


def _stringify(v: Any) -> Any:
    # Older ledgers stored numbers where strings are expected now
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    return v


class _TransactionFields(_CamelModel):
    type: TransactionType
    action: str
    token: str
    amount: str
    value: str
    from_chain: Optional[str] = None
    to_chain: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[str] = None
    gas_price: Optional[str] = None
    user_address: str
    chain_id: int
    pool_address: Optional[str] = None
    metadata: Optional[TransactionMetadata] = None

    @field_validator("amount", "value", "gas_used", "gas_price", mode="before")
    @classmethod
    def coerce_numeric_strings(cls, v: Any) -> Any:
        return _stringify(v)


class TransactionDraft(_TransactionFields):
    """A record before the store assigns its id.

    Status is derived when omitted: a draft carrying a tx hash starts pending,
    one without is an already-settled local event. Discovery passes the block
    time as ``timestamp``; user drafts leave it empty.
    """

    status: Optional[TransactionStatus] = None
    timestamp: Optional[int] = None

    def resolved_status(self) -> TransactionStatus:
        if self.status is not None:
            return self.status
        return TransactionStatus.PENDING if self.tx_hash else TransactionStatus.COMPLETED


class Transaction(_TransactionFields):
    """A stored ledger record."""

    id: str
    timestamp: int
    status: TransactionStatus

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def belongs_to(self, user_address: Optional[str], chain_id: Optional[int] = None) -> bool:
        """Check the user/chain scope. Addresses compare case-insensitively."""
        if user_address and self.user_address.lower() != user_address.lower():
            return False
        if chain_id and self.chain_id != chain_id:
            return False
        return True

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def same_event(a: Transaction, b: Transaction) -> bool:
    """True when two records describe the same chain event.

    Records match on id, or on tx hash when both carry one.
    """
    return bool(event_keys(a) & event_keys(b))


# ===================
# Queries
# ===================

class TransactionFilter(_CamelModel):
    """Filter criteria. Every field is optional and all supplied ones are ANDed."""

    type: Optional[str] = None
    status: Optional[str] = None
    chain_id: Optional[int] = None
    token: Optional[str] = None
    timeframe: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            v for v in (self.type, self.status, self.chain_id, self.token, self.timeframe)
        )

    def matches(self, tx: Transaction, now: int) -> bool:
        if self.type and self.type != FILTER_ANY and tx.type.value != self.type:
            return False

        if self.status and self.status != FILTER_ANY and tx.status.value != self.status:
            return False

        if self.chain_id and tx.chain_id != self.chain_id:
            return False

        if self.token and self.token != FILTER_ANY and tx.token != self.token:
            return False

        if self.timeframe and self.timeframe != FILTER_ANY:
            limit = TIMEFRAME_MS.get(self.timeframe)
            if limit and (now - tx.timestamp) > limit:
                return False

        return True


class TransactionStats(_CamelModel):
    """Aggregate statistics over a scoped set of records."""

    total_transactions: int = 0
    completed_transactions: int = 0
    pending_transactions: int = 0
    failed_transactions: int = 0
    total_volume: float = 0.0
    total_gas_used: str = "0"
    avg_gas_price: str = "0"
    most_used_token: str = "N/A"
    most_used_chain: str = "N/A"


def hash_key(tx_hash: str) -> tuple[str, str]:
    """Identity key for a transaction hash."""
    return ("hash", tx_hash.lower())


def event_keys(tx: Transaction) -> set[tuple[str, str]]:
    """Identity keys of a record: its id and, when present, its tx hash."""
    keys = {("id", tx.id)}
    if tx.tx_hash:
        keys.add(hash_key(tx.tx_hash))
    return keys


def unique_events(records: list[Transaction]) -> list[Transaction]:
    """Drop records that describe an event already seen earlier in the list.

    Keys of dropped records still count as seen, so equivalence is
    transitive: A~B and B~C keeps only A.
    """
    seen: set[tuple[str, str]] = set()
    result = []
    for tx in records:
        keys = event_keys(tx)
        if not keys & seen:
            result.append(tx)
        seen |= keys
    return result

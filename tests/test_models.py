"""
Tests for ledger models, identity and formatting helpers.
"""

import pytest
from pydantic import ValidationError

from conftest import BASE_TIME, CHAIN_ID, USER, make_draft
from txledger.db.models import (
    Transaction,
    TransactionDraft,
    TransactionFilter,
    TransactionStatus,
    generate_transaction_id,
    same_event,
    unique_events,
)
from txledger.utils.formatting import format_token_amount, format_usd, parse_usd_value


def record(tx_id: str, tx_hash=None, **overrides) -> Transaction:
    fields = {**make_draft(tx_hash=tx_hash), "id": tx_id, "timestamp": BASE_TIME, "status": "completed"}
    fields.update(overrides)
    return Transaction.model_validate(fields)


class TestTransactionModel:
    """Test record validation and serialization."""

    def test_storage_form_uses_camel_case(self):
        tx = record("tx_1_a", tx_hash="0xabc", block_number=5, pool_address="0xpool")
        data = tx.to_storage()

        assert data["txHash"] == "0xabc"
        assert data["blockNumber"] == 5
        assert data["poolAddress"] == "0xpool"
        assert data["userAddress"] == USER
        assert data["chainId"] == CHAIN_ID
        assert "fromChain" not in data

    def test_accepts_camel_case_input(self):
        tx = Transaction.model_validate({
            "id": "tx_1_a", "type": "bridge", "action": "Asset Bridge", "token": "USDT",
            "amount": "5", "value": "$5.00", "timestamp": 1, "status": "pending",
            "userAddress": USER, "chainId": CHAIN_ID, "fromChain": "Sepolia", "toChain": "BSC",
        })
        assert tx.from_chain == "Sepolia"
        assert tx.is_pending

    def test_numeric_strings_are_coerced(self):
        tx = record("tx_1_a", amount=1.5, value=3000, gas_used=21000, gas_price=5)
        assert (tx.amount, tx.value, tx.gas_used, tx.gas_price) == ("1.5", "3000", "21000", "5")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            record("tx_1_a", type="mint")

    def test_metadata_keeps_unknown_keys(self):
        tx = record("tx_1_a", metadata={"healthFactor": "2.1", "customNote": "x"})
        assert tx.metadata.health_factor == "2.1"
        assert tx.to_storage()["metadata"] == {"healthFactor": "2.1", "customNote": "x"}

    def test_belongs_to(self):
        tx = record("tx_1_a")
        assert tx.belongs_to(USER.upper())
        assert tx.belongs_to(USER, CHAIN_ID)
        assert not tx.belongs_to(USER, 1)
        assert not tx.belongs_to("0x" + "3" * 40)
        assert tx.belongs_to(None)


class TestDraft:
    """Test draft status derivation."""

    def test_hash_means_pending(self):
        assert TransactionDraft.model_validate(make_draft(tx_hash="0xabc")).resolved_status() == TransactionStatus.PENDING

    def test_no_hash_means_completed(self):
        assert TransactionDraft.model_validate(make_draft()).resolved_status() == TransactionStatus.COMPLETED

    def test_explicit_status_wins(self):
        draft = TransactionDraft.model_validate(make_draft(tx_hash="0xabc", status="failed"))
        assert draft.resolved_status() == TransactionStatus.FAILED


class TestIdentity:
    """Test id generation and event identity."""

    def test_id_format(self):
        tx_id = generate_transaction_id(BASE_TIME)
        prefix, timestamp, suffix = tx_id.split("_")

        assert prefix == "tx"
        assert timestamp == str(BASE_TIME)
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix == suffix.lower()

    def test_same_id_is_same_event(self):
        assert same_event(record("tx_1_a"), record("tx_1_a", token="LINK"))

    def test_same_hash_is_same_event(self):
        assert same_event(record("tx_1_a", tx_hash="0xABC"), record("tx_2_b", tx_hash="0xabc"))

    def test_missing_hashes_never_match(self):
        assert not same_event(record("tx_1_a"), record("tx_2_b"))

    def test_unique_events_keeps_first(self):
        a = record("tx_1_a", tx_hash="0x01")
        b = record("tx_2_b", tx_hash="0x01")
        c = record("tx_3_c")
        assert unique_events([a, b, c]) == [a, c]

    def test_unique_events_is_transitive(self):
        # a~b by hash, b~c by id
        a = record("tx_1_a", tx_hash="0x01")
        b = record("tx_2_b", tx_hash="0x01")
        c = record("tx_2_b", tx_hash="0x02")
        assert unique_events([a, b, c]) == [a]


class TestFilterModel:
    """Test filter matching."""

    def test_empty_filter(self):
        assert TransactionFilter().is_empty()
        assert TransactionFilter.model_validate({"type": "deposit"}).is_empty() is False

    def test_unknown_timeframe_is_ignored(self):
        criteria = TransactionFilter(timeframe="forever")
        assert criteria.matches(record("tx_1_a", timestamp=0), BASE_TIME)

    def test_30_days(self):
        criteria = TransactionFilter(timeframe="30days")
        day = 24 * 60 * 60 * 1000
        assert criteria.matches(record("tx_1_a", timestamp=BASE_TIME - 29 * day), BASE_TIME)
        assert not criteria.matches(record("tx_1_a", timestamp=BASE_TIME - 31 * day), BASE_TIME)


class TestFormatting:
    """Test USD and token amount formatting."""

    @pytest.mark.parametrize("value,expected", [
        ("$1,234.56", 1234.56),
        ("3000", 3000.0),
        ("$0.00", 0.0),
        ("", 0.0),
        ("N/A", 0.0),
        (None, 0.0),
        (42, 42.0),
        ("1.2.3", 0.0),
    ])
    def test_parse_usd_value(self, value, expected):
        assert parse_usd_value(value) == pytest.approx(expected)

    def test_format_usd(self):
        assert format_usd(1234.5) == "$1,234.50"
        assert format_usd("0") == "$0.00"
        assert format_usd("garbage") == "$0.00"

    def test_format_token_amount(self):
        assert format_token_amount(10 ** 18) == "1"
        assert format_token_amount(15 * 10 ** 17) == "1.5"
        assert format_token_amount(1, decimals=6) == "0.000001"
        assert format_token_amount(0) == "0"
        assert format_token_amount(12345, decimals=0) == "12345"

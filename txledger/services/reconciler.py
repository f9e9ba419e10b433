"""
Chain reconciler: aligns the local ledger with on-chain state.

Resolves pending records against their receipts and discovers user
transactions against the known protocol contracts that the ledger never
recorded. Read-only with respect to the chain; network failures are mapped
to "pending" or "nothing found" and never raised.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

from txledger.chain.client import ChainClient, ChainClientRegistry
from txledger.chain.contracts import (
    CHAIN_CONFIG,
    FUNCTION_SELECTORS,
    TRANSFER_EVENT_TOPIC,
    get_known_contracts,
    lookup_token,
)
from txledger.config import settings
from txledger.db.models import (
    Transaction,
    TransactionDraft,
    TransactionMetadata,
    TransactionStatus,
    TransactionType,
)
from txledger.services.price_oracle import ChainlinkPriceOracle
from txledger.utils.formatting import format_token_amount, format_usd
from txledger.utils.logging import LoggerMixin

# Decoded function name -> ledger type. Anything else is recorded as a deposit.
FUNCTION_TYPES = {
    "deposit": TransactionType.DEPOSIT,
    "depositNative": TransactionType.DEPOSIT,
    "withdraw": TransactionType.WITHDRAW,
    "borrow": TransactionType.BORROW,
    "repay": TransactionType.REPAY,
    "bridge": TransactionType.BRIDGE,
    "stake": TransactionType.STAKE,
    "unstake": TransactionType.UNSTAKE,
}

ACTION_LABELS = {
    TransactionType.DEPOSIT: "Token Deposit",
    TransactionType.WITHDRAW: "Token Withdrawal",
    TransactionType.BORROW: "Asset Borrow",
    TransactionType.REPAY: "Loan Repayment",
    TransactionType.BRIDGE: "Cross-chain Bridge",
    TransactionType.STAKE: "Asset Staking",
    TransactionType.UNSTAKE: "Asset Unstaking",
    TransactionType.LIQUIDATION: "Liquidation",
}

LIQUIDATION_REASON = "Undercollateralized or expired loan"


@dataclass
class StatusResolution:
    """Chain view of one transaction hash."""
    status: TransactionStatus
    block_number: Optional[int] = None
    timestamp: Optional[int] = None  # ms
    gas_used: Optional[str] = None
    gas_price: Optional[str] = None


@dataclass
class TokenTransfer:
    """An ERC-20 (or native) movement involving the user."""
    token_address: str
    symbol: str
    decimals: int
    raw_amount: int

    @property
    def amount(self) -> str:
        return format_token_amount(self.raw_amount, self.decimals)


@dataclass
class ChainTransaction:
    """A user transaction found on-chain."""
    hash: str
    block_number: int
    timestamp: int  # ms
    status: TransactionStatus
    from_address: str
    to_address: str
    value: str  # wei
    function_name: str
    gas_used: Optional[str] = None
    gas_price: Optional[str] = None
    transfer: Optional[TokenTransfer] = None


def decode_function_name(input_data: Optional[str]) -> str:
    """Name of the invoked function from the call data's 4-byte selector."""
    if not input_data or input_data == "0x":
        return "transfer"
    selector = input_data[:10].lower()
    return FUNCTION_SELECTORS.get(selector, "unknown")


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def decode_token_transfer(logs: list[dict], user_address: str, chain_id: int) -> Optional[TokenTransfer]:
    """First ERC-20 Transfer in a receipt's logs that involves the user."""
    user = user_address.lower()
    for log in logs:
        topics = log.get("topics") or []
        if len(topics) < 3 or (topics[0] or "").lower() != TRANSFER_EVENT_TOPIC:
            continue
        if user not in (_topic_address(topics[1]), _topic_address(topics[2])):
            continue
        data = log.get("data") or "0x"
        try:
            raw_amount = int(data, 16) if data != "0x" else 0
        except ValueError:
            continue
        symbol, decimals = lookup_token(chain_id, log["address"])
        return TokenTransfer(
            token_address=log["address"],
            symbol=symbol,
            decimals=decimals,
            raw_amount=raw_amount,
        )
    return None


class ChainReconciler(LoggerMixin):
    """Bridge between the ledger's local view and the chain's view."""

    def __init__(
        self,
        clients: ChainClientRegistry,
        price_oracle: Optional[ChainlinkPriceOracle] = None,
        block_window: Optional[int] = None,
    ):
        self._clients = clients
        self._price_oracle = price_oracle
        self.block_window = block_window or settings.discovery_block_window

    # ===================
    # Status resolution
    # ===================

    async def resolve_status(self, tx_hash: str, chain_id: int) -> StatusResolution:
        """Confirmation state of a hash. Anything short of a receipt is pending."""
        client = self._clients.get(chain_id)
        if client is None:
            self.log.warning("No chain client for status lookup", chain_id=chain_id)
            return StatusResolution(status=TransactionStatus.PENDING)

        try:
            receipt = await client.get_transaction_receipt(tx_hash)
            if not receipt:
                return StatusResolution(status=TransactionStatus.PENDING)

            block = await client.get_block(receipt["block_number"])
        except Exception as e:
            self.log.warning("Error getting transaction status", tx_hash=tx_hash, error=str(e))
            return StatusResolution(status=TransactionStatus.PENDING)

        status = TransactionStatus.COMPLETED if receipt.get("status") == 1 else TransactionStatus.FAILED
        gas_price = receipt.get("effective_gas_price")
        return StatusResolution(
            status=status,
            block_number=int(receipt["block_number"]),
            timestamp=int(block["timestamp"]) * 1000 if block else None,
            gas_used=str(receipt["gas_used"]) if receipt.get("gas_used") is not None else None,
            gas_price=str(gas_price) if gas_price is not None else None,
        )

    async def reconcile_pending(self, records: list[Transaction]) -> list[Transaction]:
        """Resolve every pending record that has a hash; others pass through.

        Idempotent: with unchanged chain state a second call returns the same
        records.
        """
        reconciled = []
        for tx in records:
            if tx.status != TransactionStatus.PENDING or not tx.tx_hash:
                reconciled.append(tx)
                continue

            resolution = await self.resolve_status(tx.tx_hash, tx.chain_id)
            if resolution.status == TransactionStatus.PENDING:
                reconciled.append(tx)
                continue

            updates: dict[str, Any] = {"status": resolution.status}
            if resolution.block_number is not None:
                updates["block_number"] = resolution.block_number
            if resolution.gas_used is not None:
                updates["gas_used"] = resolution.gas_used
            if resolution.gas_price is not None:
                updates["gas_price"] = resolution.gas_price
            reconciled.append(tx.model_copy(update=updates))

        return reconciled

    # ===================
    # Discovery
    # ===================

    async def discover_user_history(
        self,
        user_address: str,
        chain_id: int,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> list[ChainTransaction]:
        """User transactions against the chain's known contracts, newest first.

        The scan never covers more than ``block_window`` blocks.
        """
        client = self._clients.get(chain_id)
        if client is None:
            self.log.warning("No chain client for discovery", chain_id=chain_id)
            return []

        contracts = get_known_contracts(chain_id)
        if not contracts:
            self.log.warning("No contract addresses configured for chain", chain_id=chain_id)
            return []

        try:
            end = to_block if to_block is not None else await client.get_block_number()
        except Exception as e:
            self.log.error("Failed to get latest block", chain_id=chain_id, error=str(e))
            return []

        start = max(0, end - self.block_window)
        if from_block is not None:
            start = max(start, from_block)

        found: dict[str, ChainTransaction] = {}
        for contract in contracts:
            for chain_tx in await self._contract_transactions(client, user_address, contract, chain_id, start, end):
                found.setdefault(chain_tx.hash.lower(), chain_tx)

        self.log.debug(
            "Discovery finished",
            chain_id=chain_id,
            from_block=start,
            to_block=end,
            found=len(found),
        )
        return sorted(found.values(), key=lambda t: t.timestamp, reverse=True)

    async def _contract_transactions(
        self,
        client: ChainClient,
        user_address: str,
        contract_address: str,
        chain_id: int,
        from_block: int,
        to_block: int,
    ) -> list[ChainTransaction]:
        try:
            logs = await client.get_logs(contract_address, from_block, to_block)
        except Exception as e:
            self.log.error("Error getting contract logs", contract=contract_address, error=str(e))
            return []

        transactions = []
        processed: set[str] = set()
        user = user_address.lower()

        for log in logs:
            tx_hash = log["transaction_hash"]
            if tx_hash in processed:
                continue
            processed.add(tx_hash)

            try:
                tx = await client.get_transaction(tx_hash)
                if not tx or (tx.get("from") or "").lower() != user:
                    continue

                receipt = await client.get_transaction_receipt(tx_hash)
                if not receipt:
                    continue

                block = await client.get_block(log["block_number"])
                transfer = decode_token_transfer(receipt.get("logs", []), user_address, chain_id)
                if transfer is None and int(tx.get("value") or 0) > 0:
                    native = CHAIN_CONFIG[chain_id]["native_symbol"]
                    transfer = TokenTransfer(
                        token_address="0x0000000000000000000000000000000000000000",
                        symbol=native,
                        decimals=18,
                        raw_amount=int(tx["value"]),
                    )

                gas_price = receipt.get("effective_gas_price")
                transactions.append(ChainTransaction(
                    hash=tx_hash,
                    block_number=int(log["block_number"]),
                    timestamp=int(block["timestamp"]) * 1000 if block else 0,
                    status=TransactionStatus.COMPLETED if receipt.get("status") == 1 else TransactionStatus.FAILED,
                    from_address=tx["from"],
                    to_address=tx.get("to") or "",
                    value=str(tx.get("value") or 0),
                    function_name=decode_function_name(tx.get("input")),
                    gas_used=str(receipt["gas_used"]) if receipt.get("gas_used") is not None else None,
                    gas_price=str(gas_price) if gas_price is not None else None,
                    transfer=transfer,
                ))
            except Exception as e:
                self.log.warning("Error processing transaction", tx_hash=tx_hash, error=str(e))

        return transactions

    # ===================
    # Mapping to ledger drafts
    # ===================

    def to_ledger_draft(
        self,
        chain_tx: ChainTransaction,
        user_address: str,
        chain_id: int,
        price: Optional[Decimal] = None,
    ) -> TransactionDraft:
        """Ledger shape of a discovered transaction.

        Token and amount come from a decoded transfer when there is one; the
        USD value needs a price as well. Whatever cannot be derived is left as
        a placeholder and the record is flagged unverified.
        """
        tx_type = FUNCTION_TYPES.get(chain_tx.function_name, TransactionType.DEPOSIT)
        if chain_tx.function_name == "depositNative":
            action = "Native Token Deposit"
        else:
            action = ACTION_LABELS[tx_type]

        token, amount, value = "Unknown", "0", "$0.00"
        unverified = True
        if chain_tx.transfer is not None:
            token = chain_tx.transfer.symbol
            amount = chain_tx.transfer.amount
            if price is not None:
                value = format_usd(Decimal(amount) * price)
                unverified = token == "UNKNOWN"

        return TransactionDraft(
            type=tx_type,
            action=action,
            token=token,
            amount=amount,
            value=value,
            timestamp=chain_tx.timestamp or None,
            status=chain_tx.status,
            tx_hash=chain_tx.hash,
            block_number=chain_tx.block_number,
            gas_used=chain_tx.gas_used,
            gas_price=chain_tx.gas_price,
            user_address=user_address,
            chain_id=chain_id,
            pool_address=chain_tx.to_address or None,
            metadata=TransactionMetadata(
                unverified=unverified or None,
                functionName=chain_tx.function_name,
            ),
        )

    async def _price(self, symbol: str, chain_id: int) -> Optional[Decimal]:
        if self._price_oracle is None or symbol in ("Unknown", "UNKNOWN"):
            return None
        try:
            return await self._price_oracle.get_price(symbol, chain_id)
        except Exception as e:
            self.log.warning("Price lookup failed", symbol=symbol, error=str(e))
            return None

    async def build_draft(self, chain_tx: ChainTransaction, user_address: str, chain_id: int) -> TransactionDraft:
        """to_ledger_draft with the USD price looked up from the oracle."""
        price = None
        if chain_tx.transfer is not None:
            price = await self._price(chain_tx.transfer.symbol, chain_id)
        return self.to_ledger_draft(chain_tx, user_address, chain_id, price=price)

    async def liquidation_draft(
        self,
        event_args: Mapping[str, Any],
        user_address: str,
        chain_id: int,
        tx_hash: Optional[str] = None,
    ) -> Optional[TransactionDraft]:
        """Draft for a Liquidated(borrower, amount, token, penalty) event.

        Returns None when the liquidated borrower is not the current user.
        """
        borrower = str(event_args.get("borrower") or "")
        if borrower.lower() != user_address.lower():
            return None

        symbol, decimals = lookup_token(chain_id, str(event_args.get("token") or ""))
        amount = format_token_amount(int(event_args.get("amount") or 0), decimals)
        penalty = format_token_amount(int(event_args.get("penalty") or 0), decimals)

        price = await self._price(symbol, chain_id)
        value = format_usd(Decimal(amount) * price) if price is not None else "$0.00"

        return TransactionDraft(
            type=TransactionType.LIQUIDATION,
            action=ACTION_LABELS[TransactionType.LIQUIDATION],
            token=symbol,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            user_address=user_address,
            chain_id=chain_id,
            metadata=TransactionMetadata(
                borrower_address=borrower,
                liquidation_penalty=penalty,
                collateral_seized=amount,
                liquidation_reason=LIQUIDATION_REASON,
                unverified=True if price is None else None,
            ),
        )

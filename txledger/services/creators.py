"""
Helpers that record the common lending operations.

Each helper builds a draft with the action label and metadata for its
operation kind and hands it to the orchestrator. Passing a tx hash records
the operation as pending until the reconciler sees its receipt.
"""

from typing import Optional

from txledger.db.models import Transaction, TransactionDraft, TransactionMetadata, TransactionType
from txledger.services.orchestrator import LedgerOrchestrator
from txledger.services.reconciler import LIQUIDATION_REASON


class TransactionCreator:
    """Typed entry points for recording user operations."""

    def __init__(self, orchestrator: LedgerOrchestrator):
        self._orchestrator = orchestrator

    async def _record(self, **fields) -> Optional[Transaction]:
        session = self._orchestrator.session
        draft = TransactionDraft(
            user_address=session.user_address or "",
            chain_id=session.chain_id or 0,
            **fields,
        )
        return await self._orchestrator.add_transaction(draft)

    async def create_deposit(
        self,
        token: str,
        amount: str,
        value: str,
        pool_address: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> Optional[Transaction]:
        # For liquidity deposits the amount usually is the LP token count
        return await self._record(
            type=TransactionType.DEPOSIT,
            action="Liquidity Deposit",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            pool_address=pool_address,
            metadata=TransactionMetadata(lp_tokens=amount),
        )

    async def create_withdraw(
        self,
        token: str,
        amount: str,
        value: str,
        pool_address: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.WITHDRAW,
            action="Liquidity Withdrawal",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            pool_address=pool_address,
        )

    async def create_borrow(
        self,
        token: str,
        amount: str,
        value: str,
        from_chain: Optional[str] = None,
        to_chain: Optional[str] = None,
        tx_hash: Optional[str] = None,
        health_factor: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.BORROW,
            action="Cross-chain Borrow" if from_chain and to_chain else "Borrow",
            token=token,
            amount=amount,
            value=value,
            from_chain=from_chain,
            to_chain=to_chain,
            tx_hash=tx_hash,
            metadata=TransactionMetadata(health_factor=health_factor),
        )

    async def create_repay(
        self,
        token: str,
        amount: str,
        value: str,
        tx_hash: Optional[str] = None,
        health_factor: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.REPAY,
            action="Repayment",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            metadata=TransactionMetadata(health_factor=health_factor),
        )

    async def create_bridge(
        self,
        token: str,
        amount: str,
        value: str,
        from_chain: str,
        to_chain: str,
        tx_hash: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.BRIDGE,
            action="Asset Bridge",
            token=token,
            amount=amount,
            value=value,
            from_chain=from_chain,
            to_chain=to_chain,
            tx_hash=tx_hash,
        )

    async def create_stake(
        self,
        token: str,
        amount: str,
        value: str,
        pool_address: Optional[str] = None,
        tx_hash: Optional[str] = None,
        rewards: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.STAKE,
            action="Asset Staking",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            pool_address=pool_address,
            metadata=TransactionMetadata(rewards=rewards),
        )

    async def create_unstake(
        self,
        token: str,
        amount: str,
        value: str,
        pool_address: Optional[str] = None,
        tx_hash: Optional[str] = None,
        rewards: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.UNSTAKE,
            action="Asset Unstaking",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            pool_address=pool_address,
            metadata=TransactionMetadata(rewards=rewards),
        )

    async def create_liquidation(
        self,
        token: str,
        amount: str,
        value: str,
        borrower_address: str,
        tx_hash: Optional[str] = None,
        liquidation_penalty: Optional[str] = None,
        collateral_seized: Optional[str] = None,
    ) -> Optional[Transaction]:
        return await self._record(
            type=TransactionType.LIQUIDATION,
            action="Liquidation",
            token=token,
            amount=amount,
            value=value,
            tx_hash=tx_hash,
            metadata=TransactionMetadata(
                borrower_address=borrower_address,
                liquidation_penalty=liquidation_penalty,
                collateral_seized=collateral_seized,
                liquidation_reason=LIQUIDATION_REASON,
            ),
        )

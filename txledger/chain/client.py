"""
Read-only EVM clients.

Results are normalized into plain dicts with snake_case keys and 0x-prefixed
hex strings, so the reconciler never touches web3 types directly.
"""

from typing import Any, Optional, Protocol

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from txledger.chain.contracts import CHAIN_CONFIG
from txledger.utils.logging import LoggerMixin, get_logger

logger = get_logger(__name__)


class ChainClient(Protocol):
    """What the ledger needs from a blockchain read client."""

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]: ...

    async def get_block(self, block_number: int) -> Optional[dict]: ...

    async def get_block_number(self) -> int: ...

    async def get_logs(self, address: str, from_block: int, to_block: int) -> list[dict]: ...

    async def get_transaction(self, tx_hash: str) -> Optional[dict]: ...

    async def get_gas_price(self) -> int: ...

    async def call_contract(self, address: str, abi: list, function_name: str, *args: Any) -> Any: ...


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return AsyncWeb3.to_hex(value)


def _normalize_log(log: Any) -> dict:
    return {
        "address": log["address"],
        "topics": [_hex(t) for t in log.get("topics", [])],
        "data": _hex(log.get("data")) or "0x",
        "transaction_hash": _hex(log["transactionHash"]),
        "block_number": log["blockNumber"],
    }


class Web3ChainClient(LoggerMixin):
    """ChainClient backed by AsyncWeb3 over HTTP."""

    def __init__(self, chain_id: int, rpc_url: str, poa: bool = False):
        self.chain_id = chain_id
        self._web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        if poa:
            self._web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        try:
            receipt = await self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return {
            "transaction_hash": _hex(receipt["transactionHash"]),
            "status": receipt["status"],
            "block_number": receipt["blockNumber"],
            "gas_used": receipt["gasUsed"],
            "effective_gas_price": receipt.get("effectiveGasPrice"),
            "logs": [_normalize_log(log) for log in receipt.get("logs", [])],
        }

    async def get_block(self, block_number: int) -> Optional[dict]:
        try:
            block = await self._web3.eth.get_block(block_number)
        except BlockNotFound:
            return None
        return {"number": block["number"], "timestamp": block["timestamp"]}

    async def get_block_number(self) -> int:
        return await self._web3.eth.block_number

    async def get_logs(self, address: str, from_block: int, to_block: int) -> list[dict]:
        logs = await self._web3.eth.get_logs({
            "address": AsyncWeb3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        })
        return [_normalize_log(log) for log in logs]

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        try:
            tx = await self._web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        return {
            "hash": _hex(tx["hash"]),
            "from": tx["from"],
            "to": tx.get("to") or "",
            "value": tx.get("value", 0),
            "input": _hex(tx.get("input")) or "0x",
            "block_number": tx.get("blockNumber"),
        }

    async def get_gas_price(self) -> int:
        return await self._web3.eth.gas_price

    async def call_contract(self, address: str, abi: list, function_name: str, *args: Any) -> Any:
        contract = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=abi,
        )
        return await getattr(contract.functions, function_name)(*args).call()


class ChainClientRegistry:
    """One read client per configured chain, built on first use."""

    def __init__(self, settings=None):
        self._settings = settings
        self._clients: dict[int, ChainClient] = {}

    def register(self, chain_id: int, client: ChainClient) -> None:
        """Install a client for a chain, replacing any existing one."""
        self._clients[chain_id] = client

    def get(self, chain_id: int) -> Optional[ChainClient]:
        """Get the client for a chain, or None if the chain is not configured."""
        if chain_id in self._clients:
            return self._clients[chain_id]

        config = CHAIN_CONFIG.get(chain_id)
        if not config or self._settings is None:
            return None

        rpc_url = self._settings.get_chain_rpc(config["rpc_setting"])
        if not rpc_url:
            return None

        try:
            client = Web3ChainClient(chain_id, rpc_url, poa=config.get("poa", False))
        except Exception as e:
            logger.warning("Failed to initialize chain client", chain_id=chain_id, error=str(e))
            return None

        self._clients[chain_id] = client
        logger.debug("Initialized chain client", chain_id=chain_id)
        return client

    def supported_chains(self) -> list[int]:
        return sorted(set(CHAIN_CONFIG) | set(self._clients))

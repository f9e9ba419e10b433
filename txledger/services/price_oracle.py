"""
USD prices from Chainlink aggregators, read through the chain clients.

Prices are cached for a short TTL. Any read failure yields None so callers
can fall back to a placeholder value.
"""

import time
from decimal import Decimal
from typing import Optional

from txledger.chain.client import ChainClientRegistry
from txledger.chain.contracts import CHAIN_CONFIG, CHAINLINK_AGGREGATOR_ABI
from txledger.config import settings
from txledger.utils.logging import LoggerMixin

# Stablecoins without a feed on the test networks
FALLBACK_PRICES = {
    "USDT": Decimal("1.0"),
    "USDC": Decimal("1.0"),
}


class ChainlinkPriceOracle(LoggerMixin):
    """Reads <SYMBOL>/USD feeds configured per chain."""

    def __init__(self, clients: ChainClientRegistry, ttl_seconds: Optional[float] = None):
        self._clients = clients
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.price_cache_ttl
        self._cache: dict[str, tuple[Decimal, float]] = {}

    def _cache_key(self, symbol: str, chain_id: int) -> str:
        return f"{chain_id}:{symbol}"

    async def get_price(self, symbol: str, chain_id: int) -> Optional[Decimal]:
        """Latest USD price for a token symbol, or None when unavailable."""
        symbol = symbol.upper()
        key = self._cache_key(symbol, chain_id)

        cached = self._cache.get(key)
        if cached and (time.time() - cached[1]) < self._ttl:
            return cached[0]

        feed = CHAIN_CONFIG.get(chain_id, {}).get("price_feeds", {}).get(f"{symbol}/USD")
        client = self._clients.get(chain_id)
        if not feed or client is None:
            return FALLBACK_PRICES.get(symbol)

        try:
            round_data = await client.call_contract(feed, CHAINLINK_AGGREGATOR_ABI, "latestRoundData")
            decimals = await client.call_contract(feed, CHAINLINK_AGGREGATOR_ABI, "decimals")
        except Exception as e:
            self.log.warning("Price feed read failed", symbol=symbol, chain_id=chain_id, error=str(e))
            return FALLBACK_PRICES.get(symbol)

        answer = round_data[1]
        if answer <= 0:
            return FALLBACK_PRICES.get(symbol)

        price = Decimal(answer) / Decimal(10 ** int(decimals))
        self._cache[key] = (price, time.time())
        return price

    def clear_cache(self) -> None:
        self._cache.clear()

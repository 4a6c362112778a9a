"""
Price Cache

Symbol -> USD price with a TTL and stale-on-failure fallback.

Lookup order:
1. Fresh cache entry (age < TTL)
2. Price source (refreshes the entry)
3. Stale cache entry if the source fails
4. 0.0 if the symbol was never priced
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import aiohttp
from loguru import logger

from .chain_registry import PRICE_SOURCE_IDS

DEFAULT_TTL_SECONDS = 300  # 5 minutes
COINGECKO_API_URL = "https://api.coingecko.com/api/v3"


@dataclass
class PriceEntry:
    symbol: str
    price: float
    fetched_at: float
    source_id: str


class CoinGeckoPriceSource:
    """CoinGecko simple/price lookup"""

    def __init__(self, api_url: str = COINGECKO_API_URL, timeout: float = 10.0):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def fetch_usd(self, source_id: str) -> float:
        session = await self._get_session()
        params = {"ids": source_id, "vs_currencies": "usd"}
        async with session.get(f"{self.api_url}/simple/price", params=params) as response:
            response.raise_for_status()
            data = await response.json()
        return float(data.get(source_id, {}).get("usd", 0) or 0)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None


class PriceCache:
    """
    USD price cache keyed by ticker symbol

    Features:
    - TTL-based freshness (5 minutes by default)
    - Stale value returned when the source is unreachable
    - Injectable source and clock
    """

    def __init__(self, source, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 symbol_map: Optional[Dict[str, str]] = None):
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.symbol_map = symbol_map if symbol_map is not None else PRICE_SOURCE_IDS
        self._cache: Dict[str, PriceEntry] = {}

    def peek(self, symbol: str) -> Optional[PriceEntry]:
        return self._cache.get(symbol.upper())

    def clear(self) -> None:
        self._cache.clear()

    async def price_usd(self, symbol: str) -> float:
        """
        Get the USD price for a ticker

        Args:
            symbol: Ticker such as "ETH" or "USDT"

        Returns:
            Price in USD, or 0.0 when no price has ever been available
        """
        key = symbol.upper()
        source_id = self.symbol_map.get(key)
        if not source_id:
            logger.warning(f"⚠ No price source mapping for {key}")
            return 0.0

        entry = self._cache.get(key)
        now = self.clock()
        if entry and (now - entry.fetched_at) < self.ttl_seconds:
            logger.debug(f"💾 Price cache HIT: {key} = ${entry.price}")
            return entry.price

        try:
            price = await self.source.fetch_usd(source_id)
        except Exception as e:
            if entry:
                logger.warning(f"⚠ Price fetch failed for {key}, using stale ${entry.price}: {e}")
                return entry.price
            logger.error(f"✗ Price fetch failed for {key} and nothing cached: {e}")
            return 0.0

        self._cache[key] = PriceEntry(key, price, self.clock(), source_id)
        logger.debug(f"💾 Price cache SET: {key} = ${price}")
        return price

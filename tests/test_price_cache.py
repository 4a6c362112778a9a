"""
Tests for the USD price cache.
"""
import pytest

from custody_sweep.price_cache import PriceCache
from tests.conftest import FakeClock, FakePriceSource


@pytest.fixture
def source():
    return FakePriceSource({"ethereum": 2000.0, "tether": 1.0})


@pytest.fixture
def clock():
    return FakeClock()


class TestPriceCache:
    """Test TTL freshness and stale fallback."""

    @pytest.mark.asyncio
    async def test_fresh_entry_served_from_cache(self, source, clock):
        """Two lookups within the TTL hit the source once."""
        cache = PriceCache(source, ttl_seconds=300, clock=clock)

        assert await cache.price_usd("ETH") == 2000.0
        clock.advance(299)
        assert await cache.price_usd("eth") == 2000.0

        assert source.calls == ["ethereum"]

    @pytest.mark.asyncio
    async def test_expired_entry_is_refreshed(self, source, clock):
        """After the TTL the source is queried again."""
        cache = PriceCache(source, ttl_seconds=300, clock=clock)

        await cache.price_usd("ETH")
        source.prices["ethereum"] = 2100.0
        clock.advance(300)

        assert await cache.price_usd("ETH") == 2100.0
        assert source.calls == ["ethereum", "ethereum"]

    @pytest.mark.asyncio
    async def test_stale_value_on_source_failure(self, source, clock):
        """A failing source falls back to the last known price."""
        cache = PriceCache(source, ttl_seconds=300, clock=clock)

        await cache.price_usd("ETH")
        clock.advance(600)
        source.fail = True

        assert await cache.price_usd("ETH") == 2000.0

    @pytest.mark.asyncio
    async def test_zero_when_never_priced(self, source, clock):
        """With nothing cached a failing source yields 0."""
        source.fail = True
        cache = PriceCache(source, ttl_seconds=300, clock=clock)

        assert await cache.price_usd("USDT") == 0.0
        assert cache.peek("USDT") is None

    @pytest.mark.asyncio
    async def test_unmapped_symbol_is_zero_without_fetch(self, source, clock):
        """Symbols without a source mapping are never fetched."""
        cache = PriceCache(source, ttl_seconds=300, clock=clock)

        assert await cache.price_usd("XRP") == 0.0
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_custom_symbol_map(self, source, clock):
        """An injected map replaces the default ticker mapping."""
        cache = PriceCache(source, clock=clock, symbol_map={"WETH": "ethereum"})

        assert await cache.price_usd("WETH") == 2000.0
        assert await cache.price_usd("ETH") == 0.0

    @pytest.mark.asyncio
    async def test_clear_drops_entries(self, source, clock):
        """Clearing forces the next lookup back to the source."""
        cache = PriceCache(source, clock=clock)
        await cache.price_usd("ETH")
        cache.clear()
        await cache.price_usd("ETH")
        assert len(source.calls) == 2

"""Unit tests for the independent price source."""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from arena.market.price_source import PriceCache, PriceSource, PriceSourceError, to_ccxt_symbol


@pytest.fixture
def ccxt_exchange():
    """Mock ccxt exchange quoting ASTER at 2.5."""
    exchange = MagicMock()
    exchange.fetch_ticker = AsyncMock(return_value={"symbol": "ASTER/USDT", "last": 2.5})
    exchange.fetch_ohlcv = AsyncMock(return_value=[])
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def price_source(ccxt_exchange, clock):
    return PriceSource(exchange_id="binance", cache_ttl=5.0, exchange=ccxt_exchange, clock=clock)


# =============================================================================
# Symbol Conversion Tests
# =============================================================================

class TestSymbolConversion:
    """Test exchange symbol to ccxt unified symbol."""

    def test_usdt_pair(self):
        assert to_ccxt_symbol("ETHUSDT") == "ETH/USDT"

    def test_usdc_pair(self):
        assert to_ccxt_symbol("BTCUSDC") == "BTC/USDC"

    def test_already_unified(self):
        assert to_ccxt_symbol("SOL/USDT") == "SOL/USDT"

    def test_unknown_quote_unchanged(self):
        assert to_ccxt_symbol("FOOBAR") == "FOOBAR"


# =============================================================================
# Cache Tests
# =============================================================================

class TestPriceCache:
    """Test TTL price cache."""

    def test_fresh_entry(self, clock):
        cache = PriceCache(5.0, clock=clock)
        cache.set("ASTERUSDT", Decimal("2"))
        clock.advance(5.0)
        assert cache.get("ASTERUSDT") == Decimal("2")

    def test_expired_entry_is_dropped(self, clock):
        cache = PriceCache(5.0, clock=clock)
        cache.set("ASTERUSDT", Decimal("2"))
        clock.advance(5.1)
        assert cache.get("ASTERUSDT") is None
        assert len(cache) == 0


# =============================================================================
# Fetch Tests
# =============================================================================

class TestFetchPrice:
    """Test single-symbol price fetches."""

    @pytest.mark.asyncio
    async def test_returns_decimal_price(self, price_source, ccxt_exchange):
        price = await price_source.fetch_price("ASTERUSDT")

        assert price == Decimal("2.5")
        ccxt_exchange.fetch_ticker.assert_awaited_once_with("ASTER/USDT")

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, price_source, ccxt_exchange, clock):
        await price_source.fetch_price("ASTERUSDT")
        clock.advance(3)
        await price_source.fetch_price("ASTERUSDT")

        assert ccxt_exchange.fetch_ticker.await_count == 1

    @pytest.mark.asyncio
    async def test_refetched_after_ttl(self, price_source, ccxt_exchange, clock):
        await price_source.fetch_price("ASTERUSDT")
        clock.advance(6)
        ccxt_exchange.fetch_ticker.return_value = {"last": 2.6}

        assert await price_source.fetch_price("ASTERUSDT") == Decimal("2.6")
        assert ccxt_exchange.fetch_ticker.await_count == 2

    @pytest.mark.asyncio
    async def test_close_price_used_without_last(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ticker.return_value = {"last": None, "close": 3.1}
        assert await price_source.fetch_price("ASTERUSDT") == Decimal("3.1")

    @pytest.mark.asyncio
    async def test_network_error_raises(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ticker.side_effect = ccxt.NetworkError("timeout")

        with pytest.raises(PriceSourceError):
            await price_source.fetch_price("ASTERUSDT")

    @pytest.mark.asyncio
    async def test_missing_price_raises(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ticker.return_value = {"last": None}

        with pytest.raises(PriceSourceError, match="No price data"):
            await price_source.fetch_price("ASTERUSDT")

    @pytest.mark.asyncio
    async def test_non_positive_price_raises(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ticker.return_value = {"last": 0}

        with pytest.raises(PriceSourceError, match="Invalid price"):
            await price_source.fetch_price("ASTERUSDT")

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ticker.side_effect = ccxt.ExchangeError("down")
        with pytest.raises(PriceSourceError):
            await price_source.fetch_price("ASTERUSDT")

        ccxt_exchange.fetch_ticker.side_effect = None
        assert await price_source.fetch_price("ASTERUSDT") == Decimal("2.5")


class TestFetchCandles:
    """Test OHLCV conversion."""

    @pytest.mark.asyncio
    async def test_rows_become_candles(self, price_source, ccxt_exchange):
        ccxt_exchange.fetch_ohlcv.return_value = [
            [1700000000000, 1.0, 1.2, 0.9, 1.1, 500.0],
            [1700000060000, 1.1, 1.3, 1.0, 1.2, None],
        ]

        candles = await price_source.fetch_candles("ASTERUSDT", limit=2)

        assert len(candles) == 2
        assert candles[0].high == 1.2
        assert candles[1].volume == 0.0

    @pytest.mark.asyncio
    async def test_close_releases_exchange(self, price_source, ccxt_exchange):
        await price_source.close()

        ccxt_exchange.close.assert_awaited_once()
        assert price_source.exchange is None

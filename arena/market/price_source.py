"""Independent price source.

Agents price their decisions off a public market feed rather than the venue
they trade on. The feed is a ccxt exchange (Binance by default) queried
without credentials; each agent task owns one PriceSource and its cache.
"""
import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import ccxt.async_support as ccxt
import structlog

from arena.core.config import price_source_config
from arena.core.models import Candle, to_decimal

logger = structlog.get_logger(__name__)

QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "FDUSD")


class PriceSourceError(Exception):
    """The price feed could not produce a usable price."""


def to_ccxt_symbol(symbol: str) -> str:
    """Convert an exchange symbol to ccxt's unified form ("ETHUSDT" -> "ETH/USDT")."""
    if "/" in symbol:
        return symbol
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[:-len(quote)]}/{quote}"
    return symbol


class PriceCache:
    """Last known price per symbol, valid for ttl seconds."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Decimal, float]] = {}

    def get(self, symbol: str) -> Optional[Decimal]:
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        price, stored_at = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[symbol]
            return None
        return price

    def set(self, symbol: str, price: Decimal) -> None:
        self._entries[symbol] = (price, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PriceSource:
    """Cached public ticker prices via ccxt.

    Args:
        exchange_id: ccxt exchange id
        cache_ttl: Seconds a fetched price stays valid
        exchange: Pre-built ccxt exchange (tests inject a mock)
    """

    def __init__(
        self,
        exchange_id: Optional[str] = None,
        cache_ttl: Optional[float] = None,
        timeout_ms: Optional[int] = None,
        exchange: Optional[ccxt.Exchange] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.exchange_id = exchange_id or price_source_config.exchange_id
        ttl = cache_ttl if cache_ttl is not None else price_source_config.cache_ttl_seconds
        self.cache = PriceCache(ttl, clock=clock)
        self._timeout_ms = timeout_ms or price_source_config.timeout_ms
        self.exchange = exchange

    def _get_exchange(self) -> ccxt.Exchange:
        if self.exchange is None:
            exchange_class = getattr(ccxt, self.exchange_id)
            self.exchange = exchange_class(
                {
                    "enableRateLimit": True,
                    "timeout": self._timeout_ms,
                    "options": {"defaultType": "spot"},
                }
            )
            logger.info("price_source.exchange_initialized", exchange=self.exchange_id)
        return self.exchange

    async def close(self) -> None:
        """Close the ccxt session."""
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None

    @staticmethod
    def _price_from_ticker(symbol: str, ticker: Dict) -> Decimal:
        last = ticker.get("last") if ticker else None
        if last is None:
            last = ticker.get("close") if ticker else None
        if last is None:
            raise PriceSourceError(f"No price data for symbol {symbol}")
        price = to_decimal(last)
        if not price.is_finite() or price <= 0:
            raise PriceSourceError(f"Invalid price for {symbol}: {last}")
        return price

    async def fetch_price(self, symbol: str) -> Decimal:
        """Latest price for symbol, served from cache while fresh.

        Raises:
            PriceSourceError: on network/exchange failure or an unusable ticker
        """
        cached = self.cache.get(symbol)
        if cached is not None:
            return cached

        exchange = self._get_exchange()
        try:
            ticker = await exchange.fetch_ticker(to_ccxt_symbol(symbol))
        except ccxt.BaseError as e:
            logger.error("price_source.fetch_failed", symbol=symbol, error=str(e))
            raise PriceSourceError(f"Could not fetch {symbol} price: {e}") from e

        price = self._price_from_ticker(symbol, ticker)
        self.cache.set(symbol, price)
        logger.debug("price_source.price_fetched", symbol=symbol, price=str(price))
        return price

    async def fetch_candles(self, symbol: str, timeframe: str = "1m", limit: int = 60) -> List[Candle]:
        """Recent OHLCV candles, oldest first."""
        exchange = self._get_exchange()
        try:
            ohlcv = await exchange.fetch_ohlcv(to_ccxt_symbol(symbol), timeframe=timeframe, limit=limit)
        except ccxt.BaseError as e:
            logger.error("price_source.candles_failed", symbol=symbol, error=str(e))
            raise PriceSourceError(f"Could not fetch {symbol} candles: {e}") from e

        return [
            Candle(
                timestamp=int(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]) if len(row) > 5 and row[5] is not None else 0.0,
            )
            for row in ohlcv
        ]

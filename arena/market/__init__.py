"""Market data feeds independent of the trading venue."""

from arena.market.price_source import PriceCache, PriceSource, PriceSourceError, to_ccxt_symbol

__all__ = ["PriceCache", "PriceSource", "PriceSourceError", "to_ccxt_symbol"]

"""Mean reversion strategy with a spread filter.

Buys when price is stretched below both EMA20 and SMA50 with an oversold RSI,
sells the mirror image. A minimum spread from the running average and a
minimum distance from EMA20 keep it out of noise.
"""
from typing import Optional

from arena.analysis import indicators
from arena.core.models import ExchangePosition, StrategyType, TradeAction, TradeSignal
from arena.strategies.base import BaseStrategy


class MeanReversionStrategy(BaseStrategy):
    """Spread-filtered mean reversion (strategy id ``arbitrage``)."""

    strategy_type = StrategyType.ARBITRAGE
    HISTORY_LENGTH = 100

    DEFAULT_PARAMS = {
        "leverage": 2.0,
        "position_size": 0.2,
        "min_spread_percent": 0.15,
        "min_ema_distance_percent": 0.3,
        "min_trade_interval_seconds": 45.0,
        "min_history": 20,
        "rsi_oversold": 30.0,
        "rsi_overbought": 70.0,
    }

    RISK_CONFIG = {
        "max_drawdown_percent": 15,
        "max_position_size_percent": 12,
        "max_daily_trades": 25,
        "min_win_rate": 0.5,
        "slippage_percent": 0.25,
    }

    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        signal = self.initial_buy(price, equity, "mean reversion")
        if signal:
            return signal

        if self.is_rate_limited():
            return TradeSignal.hold("Rate limited - cooldown between trades")

        prices = self.state.prices
        min_history = self.params["min_history"]
        if len(prices) < min_history:
            return TradeSignal.hold(f"Building price history ({len(prices)}/{min_history})")

        signal = self.scale_out(price, position)
        if signal:
            return signal

        volatility = indicators.volatility(prices)
        rsi = indicators.rsi(prices, 14)
        avg_price = sum(prices) / len(prices)
        ema20 = indicators.ema(prices, 20)
        sma50 = indicators.sma(prices, 50)

        spread_percent = abs(price - avg_price) / avg_price * 100
        ema_distance = abs(price - ema20) / ema20 * 100

        quantity = self.risk_manager.calculate_position_size(
            equity, volatility, self.params["leverage"], price
        )
        if quantity <= 0:
            return TradeSignal.hold(f"Invalid position size: {quantity}")

        stretched = (
            spread_percent > self.params["min_spread_percent"]
            and ema_distance > self.params["min_ema_distance_percent"]
        )
        confidence = min(0.9, 0.6 + spread_percent * 0.1 + 0.15)

        if price < ema20 and price < sma50 and rsi < self.params["rsi_oversold"] and stretched:
            return self.targets_signal(
                TradeAction.BUY, price, quantity, volatility, confidence,
                f"Mean reversion: Price {ema_distance:.2f}% below EMA20 "
                f"(RSI: {rsi:.0f}, Spread: {spread_percent:.2f}%)",
            )

        if price > ema20 and price > sma50 and rsi > self.params["rsi_overbought"] and stretched:
            return self.targets_signal(
                TradeAction.SELL, price, quantity, volatility, confidence,
                f"Mean reversion: Price {ema_distance:.2f}% above EMA20 "
                f"(RSI: {rsi:.0f}, Spread: {spread_percent:.2f}%)",
            )

        return TradeSignal.hold(
            f"No setup: Spread {spread_percent:.2f}%, Distance from EMA {ema_distance:.2f}%, "
            f"RSI {rsi:.0f}. {self.position_summary(position)}"
        )

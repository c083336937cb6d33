"""Multi-indicator momentum strategy.

RSI thresholds adapt to volatility; entries need RSI, 10-period momentum,
MACD strength and the Bollinger middle band to agree.
"""
from typing import Optional

from arena.analysis import indicators
from arena.core.models import ExchangePosition, StrategyType, TradeAction, TradeSignal
from arena.strategies.base import BaseStrategy


class MomentumStrategy(BaseStrategy):
    """Adaptive-threshold momentum (strategy id ``momentum``)."""

    strategy_type = StrategyType.MOMENTUM
    HISTORY_LENGTH = 100

    DEFAULT_PARAMS = {
        "leverage": 2.5,
        "position_size": 0.2,
        "min_trade_interval_seconds": 15.0,
        "min_history": 20,
        "macd_threshold": 10.0,
    }

    RISK_CONFIG = {
        "max_drawdown_percent": 14,
        "max_position_size_percent": 12,
        "max_daily_trades": 28,
        "min_win_rate": 0.48,
        "slippage_percent": 0.2,
    }

    @staticmethod
    def rsi_thresholds(volatility: float) -> tuple:
        """Oversold/overbought levels that widen as volatility rises."""
        low = max(20.0, 35.0 - volatility * 200)
        high = min(80.0, 65.0 + volatility * 200)
        return low, high

    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        if self.state.position_closed and self.state.has_initial_buy:
            self.reset_position_state()

        signal = self.initial_buy(price, equity, "momentum trading")
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
        macd = indicators.macd(prices)
        bands = indicators.bollinger_bands(prices, 20, 2)
        momentum = indicators.momentum(prices, 10)

        quantity = self.risk_manager.calculate_position_size(
            equity, volatility, self.params["leverage"], price
        )
        if quantity <= 0:
            return TradeSignal.hold(f"Invalid position size: {quantity}")

        rsi_low, rsi_high = self.rsi_thresholds(volatility)
        macd_threshold = self.params["macd_threshold"]
        confidence = min(0.9, 0.6 + abs(macd.strength) / 100 * 0.2)
        detail = f"RSI {rsi:.0f}, MACD {macd.strength:.0f}, Momentum {momentum:.2f}"

        if rsi < rsi_low and momentum > 0 and macd.strength > macd_threshold and price < bands.middle:
            return self.targets_signal(
                TradeAction.BUY, price, quantity, volatility, confidence,
                f"Momentum BUY: {detail}",
            )

        if rsi > rsi_high and momentum < 0 and macd.strength < -macd_threshold and price > bands.middle:
            return self.targets_signal(
                TradeAction.SELL, price, quantity, volatility, confidence,
                f"Momentum SELL: {detail}",
            )

        return TradeSignal.hold(
            f"Waiting for setup: RSI {rsi:.0f}, MACD {macd.strength:.0f}. "
            f"{self.position_summary(position)}"
        )

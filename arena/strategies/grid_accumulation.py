"""Grid accumulation strategy.

Buys dips below the moving average, scales out on gains and exits the rest
when price runs well above the average. Evaluates at most once per check
interval after the opening buy.
"""
import math
from typing import Optional

from arena.analysis import indicators
from arena.core.models import (
    ExchangePosition,
    PositionSide,
    StrategyType,
    TradeAction,
    TradeSignal,
)
from arena.strategies.base import BaseStrategy


class PriceLevel:
    LOW = "LOW"
    NEUTRAL = "NEUTRAL"
    HIGH = "HIGH"


class GridAccumulationStrategy(BaseStrategy):
    """Dip accumulation / rally exit around MA20 (strategy id ``grid``)."""

    strategy_type = StrategyType.GRID
    HISTORY_LENGTH = 100

    DEFAULT_PARAMS = {
        "leverage": 1.5,
        "position_size": 0.15,
        "buy_threshold": -0.03,   # 3% below MA
        "sell_threshold": 0.05,   # 5% above MA
        "ma_period": 20,
        "min_order_notional": 5.0,
        "initial_buy_min_equity": 10.0,
        "check_interval_seconds": 60.0,
    }

    RISK_CONFIG = {
        "max_drawdown_percent": 16,
        "max_position_size_percent": 15,
        "max_daily_trades": 50,
        "min_win_rate": 0.52,
        "slippage_percent": 0.15,
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.last_check_time = 0.0

    def price_level(self, price: float, ma: float) -> str:
        deviation = (price - ma) / ma
        if deviation < self.params["buy_threshold"]:
            return PriceLevel.LOW
        if deviation > self.params["sell_threshold"]:
            return PriceLevel.HIGH
        return PriceLevel.NEUTRAL

    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        # After an exit the grid re-enters only on a dip, so keep has_initial_buy
        if self.state.position_closed:
            self.state.entry_price = None
            self.logger.info("strategy.state_reset", reason="position closed")

        signal = self.initial_buy(price, equity, "accumulation")
        if signal:
            self.last_check_time = self.now()
            return signal

        now = self.now()
        interval = self.params["check_interval_seconds"]
        if self.state.has_initial_buy and now - self.last_check_time < interval:
            remaining = interval - (now - self.last_check_time)
            return TradeSignal.hold(f"Next check in {round(remaining)}s")

        ma = indicators.sma(self.state.prices, self.params["ma_period"])
        level = self.price_level(price, ma)
        deviation = (price - ma) / ma * 100

        if position is not None:
            gain = self.gain_percent(price, position)
            if gain is not None and gain >= self.params["scale_out_percent"]:
                self.last_check_time = now
                return self.scale_out_signal(price, position, 0.85, f"Scale Out ({gain:.2f}% gain)")

            # Rally exits only unwind accumulated longs
            if level == PriceLevel.HIGH and position.side == PositionSide.LONG:
                quantity = math.floor(position.quantity)
                if quantity >= 1:
                    self.last_check_time = now
                    self.mark_trade()
                    return TradeSignal(
                        action=TradeAction.SELL,
                        quantity=quantity,
                        price=price,
                        confidence=0.8,
                        reason=(
                            f"Sell High: Price {deviation:.1f}% above MA. "
                            f"Exiting remaining {quantity} tokens."
                        ),
                    )

        if self.state.has_initial_buy and position is None and level == PriceLevel.LOW:
            quantity, notional = self.notional_quantity(
                price, equity, self.params["initial_buy_min_equity"]
            )
            if quantity > 0:
                self.last_check_time = now
                self.state.entry_price = price
                self.mark_trade()
                return TradeSignal(
                    action=TradeAction.BUY,
                    quantity=quantity,
                    price=price,
                    confidence=0.8,
                    reason=(
                        f"Accumulate: Price {deviation:.1f}% below MA. "
                        f"Adding {quantity} tokens (~${notional:.2f})."
                    ),
                )

        self.last_check_time = now
        return TradeSignal.hold(
            f"Holding. Price {deviation:.1f}% vs MA "
            f"(buy <{self.params['buy_threshold'] * 100:.0f}%, "
            f"sell >{self.params['sell_threshold'] * 100:.0f}%). "
            f"{self.position_summary(position)}",
            confidence=0.5,
        )

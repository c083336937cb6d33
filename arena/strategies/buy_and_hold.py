"""Buy and hold benchmark: one fixed-notional buy, then hold forever."""
import math
from typing import Optional

from arena.core.models import ExchangePosition, StrategyType, TradeAction, TradeSignal
from arena.strategies.base import BaseStrategy


class BuyAndHoldStrategy(BaseStrategy):
    strategy_type = StrategyType.BUY_AND_HOLD
    HISTORY_LENGTH = 5

    DEFAULT_PARAMS = {
        "buy_amount": 100.0,
        "max_buy_amount": 250.0,
    }

    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        if self.state.has_initial_buy or position is not None:
            self.state.has_initial_buy = True
            held = position.quantity if position is not None else 0
            return TradeSignal.hold(
                f"Holding {self.config.base_asset} position ({held} units). B&H strategy active.",
                confidence=1.0,
            )

        amount = self.params["buy_amount"]
        quantity = amount / price
        # High-priced assets: buy one unit (up to the cap) rather than nothing
        if quantity < 1 and price > 50:
            amount = min(price * 1.2, self.params["max_buy_amount"])
            quantity = amount / price

        quantity = math.floor(quantity)
        if quantity <= 0:
            return TradeSignal.hold(
                f"Invalid quantity calculated: {quantity}. Asset price too high for ${amount:.2f}."
            )

        self.state.has_initial_buy = True
        self.state.entry_price = price
        self.mark_trade()
        return TradeSignal(
            action=TradeAction.BUY,
            quantity=quantity,
            price=price,
            confidence=1.0,
            reason=(
                f"Buy & Hold: Purchasing {quantity} token(s) (~${amount:.2f}) at ${price:.2f}. "
                f"No stop loss or take profit. Holding indefinitely."
            ),
        )

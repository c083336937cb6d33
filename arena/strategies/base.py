"""Base class for all trading strategies."""
import math
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Union

import structlog

from arena.analysis import indicators
from arena.core.models import (
    AccountInfo,
    AgentConfig,
    Candle,
    ExchangePosition,
    PositionSide,
    StrategyType,
    TradeAction,
    TradeSignal,
)
from arena.risk.risk_manager import RiskConfig, RiskManager

logger = structlog.get_logger(__name__)

Number = Union[Decimal, float, int]


@dataclass
class StrategyState:
    """Mutable per-agent state owned by one strategy instance.

    Attributes:
        price_history: Bounded window of recent valid prices
        last_trade_time: Clock time of the last emitted BUY/SELL (seconds)
        has_initial_buy: Whether the opening buy has been emitted
        entry_price: Price of the last opening buy; used when the exchange
            reports no entry price for the position
        position: Latest position snapshot for the agent's symbol
        position_closed: True on the tick a previously seen position disappears
        starting_equity: First valid equity observed, for the total-loss limit
    """
    price_history: Deque[float]
    last_trade_time: float = 0.0
    has_initial_buy: bool = False
    entry_price: Optional[float] = None
    position: Optional[ExchangePosition] = None
    position_closed: bool = False
    starting_equity: Optional[float] = None

    @property
    def prices(self) -> List[float]:
        return list(self.price_history)


class BaseStrategy(ABC):
    """
    Abstract base class for trading strategies.

    Subclasses implement ``evaluate`` for one tick. ``generate_signal`` wraps
    it with input validation, history bookkeeping and error containment, so a
    strategy bug surfaces as a HOLD rather than an exception in the runtime.
    The circuit breaker and the daily trade cap are checked on every tick
    before ``evaluate`` runs.

    Class attributes:
        strategy_type: Identifier used by the factory
        DEFAULT_PARAMS: Tunable thresholds; overridable by keyword arguments
        RISK_CONFIG: Per-strategy RiskConfig overrides
        HISTORY_LENGTH: Size of the price-history ring buffer
        CANDLE_TIMEFRAME: Candle timeframe to preload at startup, if any
    """

    strategy_type: StrategyType
    DEFAULT_PARAMS: Dict[str, Any] = {}
    RISK_CONFIG: Dict[str, Any] = {}
    HISTORY_LENGTH = 100
    CANDLE_TIMEFRAME: Optional[str] = None

    # Shared defaults for the opening buy and scale-out
    BASE_PARAMS: Dict[str, Any] = {
        "initial_buy_min_history": 5,
        "min_order_notional": 5.0,
        "initial_buy_min_equity": 10.0,
        "scale_out_percent": 2.0,
        "scale_out_fraction": 0.5,
        "scale_out_rsi": 70.0,
    }

    def __init__(
        self,
        config: AgentConfig,
        clock: Callable[[], float] = time.time,
        risk_manager: Optional[RiskManager] = None,
        **params: Any,
    ):
        self.config = config
        self.symbol = config.symbol
        self.name = f"{self.strategy_type.value}:{config.agent_id}"
        self.params: Dict[str, Any] = {**self.BASE_PARAMS, **self.DEFAULT_PARAMS, **params}
        self._clock = clock

        self.risk_manager = risk_manager or RiskManager(
            RiskConfig.build(**self.RISK_CONFIG),
            clock=lambda: datetime.fromtimestamp(clock(), timezone.utc),
        )
        self.state = StrategyState(price_history=deque(maxlen=self.HISTORY_LENGTH))
        self.logger = logger.bind(strategy=self.strategy_type.value, agent_id=config.agent_id)

        self.signals_generated = 0

    # =========================================================================
    # Public API
    # =========================================================================

    async def generate_signal(
        self,
        current_price: Number,
        account_info: AccountInfo,
        open_positions: Sequence[ExchangePosition],
    ) -> TradeSignal:
        """Produce the signal for one tick. Never raises."""
        try:
            signal = self._generate(current_price, account_info, open_positions)
        except Exception as e:
            self.logger.error("strategy.signal_error", error=str(e), exc_info=True)
            signal = TradeSignal.hold(f"Error: {e}")

        self.signals_generated += 1
        return signal

    def _generate(
        self,
        current_price: Number,
        account_info: AccountInfo,
        open_positions: Sequence[ExchangePosition],
    ) -> TradeSignal:
        price = float(current_price)
        if not math.isfinite(price) or price <= 0:
            return TradeSignal.hold(f"Invalid price: {current_price}")
        self.state.price_history.append(price)

        equity = float(account_info.equity)
        if not math.isfinite(equity) or equity <= 0:
            return TradeSignal.hold(f"Invalid equity: {account_info.equity}")
        if self.state.starting_equity is None:
            self.state.starting_equity = equity

        # Position state only advances on ticks that reach evaluate
        blocked = self.check_risk_limits(equity)
        if blocked is not None:
            return blocked

        position = self.find_position(open_positions)
        self.state.position_closed = self.state.position is not None and position is None
        self.state.position = position
        return self.evaluate(price, equity, position)

    def check_risk_limits(self, equity: float) -> Optional[TradeSignal]:
        """HOLD while the circuit breaker is tripped or the daily cap is used up."""
        breaker = self.risk_manager.check_circuit_breaker(equity, self.state.starting_equity)
        if breaker.should_stop:
            return TradeSignal.hold(f"Circuit breaker: {breaker.reason}")

        daily = self.risk_manager.check_daily_trade_limit()
        if not daily.can_trade:
            return TradeSignal.hold(daily.reason)
        return None

    @abstractmethod
    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        """
        Decide the action for one tick.

        Args:
            price: Current (validated) price, already appended to history
            equity: Current (validated) account equity
            position: Open position on this symbol, if any

        Returns:
            TradeSignal
        """

    def get_stats(self) -> Dict[str, Any]:
        """Get strategy statistics."""
        return {
            'name': self.name,
            'symbol': self.symbol,
            'history_length': len(self.state.price_history),
            'has_initial_buy': self.state.has_initial_buy,
            'starting_equity': self.state.starting_equity,
            'signals_generated': self.signals_generated,
            'risk': self.risk_manager.get_stats(),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def now(self) -> float:
        return self._clock()

    def exchange_leverage(self) -> int:
        """Whole-number leverage to configure on the exchange for this strategy."""
        return max(1, math.ceil(self.params.get("leverage", 1)))

    def seed_candles(self, candles: Sequence[Candle]) -> None:
        """Preload historical candles. Strategies without candles ignore them."""

    def find_position(self, positions: Sequence[ExchangePosition]) -> Optional[ExchangePosition]:
        """Open position on this agent's symbol with a non-zero quantity."""
        for position in positions:
            if position.symbol == self.symbol and position.quantity > 0:
                return position
        return None

    def reset_position_state(self) -> None:
        """Forget the opening buy once the position is gone."""
        self.state.has_initial_buy = False
        self.state.entry_price = None
        self.logger.info("strategy.state_reset", reason="position closed")

    def mark_trade(self) -> None:
        """Record that a BUY/SELL signal was emitted."""
        self.state.last_trade_time = self.now()
        self.risk_manager.register_trade()

    def is_rate_limited(self, interval_key: str = "min_trade_interval_seconds") -> bool:
        return self.now() - self.state.last_trade_time < self.params[interval_key]

    def notional_quantity(self, price: float, equity: float, min_equity: float) -> tuple:
        """Whole units for position_size of equity, bumped to one unit if affordable.

        Returns (quantity, notional). Quantity is 0 below the minimum notional.
        """
        notional = equity * self.params["position_size"]
        if notional < self.params["min_order_notional"]:
            return 0, notional

        quantity = math.floor(notional / price)
        if quantity < 1 and equity > min_equity and price <= equity * 0.8:
            notional = min(price * 1.2, equity * 0.8)
            quantity = math.floor(notional / price)
        return quantity, notional

    def initial_buy(self, price: float, equity: float, label: str) -> Optional[TradeSignal]:
        """Opening buy once enough history exists and nothing is held."""
        if self.state.has_initial_buy or self.state.position is not None:
            return None
        if len(self.state.price_history) < self.params["initial_buy_min_history"]:
            return None

        quantity, notional = self.notional_quantity(
            price, equity, self.params["initial_buy_min_equity"]
        )
        if quantity <= 0:
            return None

        self.state.has_initial_buy = True
        self.state.entry_price = price
        self.mark_trade()
        return TradeSignal(
            action=TradeAction.BUY,
            quantity=quantity,
            price=price,
            confidence=0.9,
            reason=f"INITIAL BUY: Starting {label} with {quantity} tokens (~${notional:.2f}).",
        )

    def position_entry_price(self, position: ExchangePosition) -> Optional[float]:
        """Exchange entry price, or the last opening buy when the exchange reports none."""
        entry = float(position.entry_price)
        if entry > 0:
            return entry
        return self.state.entry_price

    def gain_percent(self, price: float, position: ExchangePosition) -> Optional[float]:
        """Unrealized gain of the position at price, positive when in profit."""
        entry = self.position_entry_price(position)
        if not entry:
            return None
        change = (price - entry) / entry * 100
        return -change if position.side == PositionSide.SHORT else change

    @staticmethod
    def closing_action(position: ExchangePosition) -> TradeAction:
        return TradeAction.BUY if position.side == PositionSide.SHORT else TradeAction.SELL

    def scale_out_quantity(self, position: ExchangePosition) -> int:
        return max(1, math.floor(float(position.quantity) * self.params["scale_out_fraction"]))

    def scale_out(self, price: float, position: Optional[ExchangePosition]) -> Optional[TradeSignal]:
        """Partial exit on the configured gain or an RSI extreme in the position's favour."""
        if position is None:
            return None
        gain = self.gain_percent(price, position)
        if gain is None:
            return None

        prices = self.state.prices
        if len(prices) < 14:
            return None
        rsi = indicators.rsi(prices, 14)

        rsi_limit = self.params["scale_out_rsi"]
        if position.side == PositionSide.SHORT:
            stretched = rsi < 100 - rsi_limit
        else:
            stretched = rsi > rsi_limit

        if gain >= self.params["scale_out_percent"] or stretched:
            return self.scale_out_signal(
                price, position, 0.85, f"Scale Out ({gain:.2f}% gain, RSI {rsi:.0f})"
            )
        return None

    def scale_out_signal(
        self,
        price: float,
        position: ExchangePosition,
        confidence: float,
        label: str,
    ) -> TradeSignal:
        """Close part of the position on the side that reduces it."""
        quantity = self.scale_out_quantity(position)
        action = self.closing_action(position)
        verb = "buying back" if action == TradeAction.BUY else "selling"
        self.mark_trade()
        return TradeSignal(
            action=action,
            quantity=quantity,
            price=price,
            confidence=confidence,
            reason=f"{label}: Locking in profits, {verb} {quantity} tokens.",
        )

    def targets_signal(
        self,
        action: TradeAction,
        price: float,
        quantity: int,
        volatility: float,
        confidence: float,
        reason: str,
    ) -> TradeSignal:
        """BUY/SELL signal with volatility-adaptive take profit and stop loss."""
        targets = indicators.adaptive_targets(price, volatility, action)
        self.mark_trade()
        return TradeSignal(
            action=action,
            quantity=quantity,
            price=price,
            take_profit=targets.take_profit,
            stop_loss=targets.stop_loss,
            confidence=confidence,
            reason=reason,
        )

    @staticmethod
    def position_summary(position: Optional[ExchangePosition]) -> str:
        if position is None:
            return "No position"
        return (
            f"Position: {position.quantity} tokens "
            f"(Unrealized profit: ${position.unrealized_profit:.2f})"
        )

"""Per-agent risk management.

Position sizing, pre-trade risk assessment, the drawdown circuit breaker and
the rolling daily trade limit. One RiskManager instance belongs to exactly one
agent task; it never performs I/O.

All thresholds are compared in Decimal so that boundary cases such as a
drawdown of exactly 15% against a 15% limit are exact.
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Deque, Dict, Optional

import structlog

from arena.core.models import PositionRisk, RiskAction, TradeAction, to_decimal, utc_now

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")

DAILY_WINDOW = timedelta(hours=24)
TRADE_HISTORY_LIMIT = 100
MAX_TOTAL_LOSS_PERCENT = Decimal("50")
HIGH_VOLATILITY = Decimal("0.05")
MAX_SAFE_LEVERAGE = Decimal("3")


@dataclass(frozen=True)
class RiskConfig:
    """Static risk thresholds for one agent.

    Attributes:
        max_drawdown_percent: Drawdown from peak that stops trading
        max_position_size_percent: Max share of equity per position (and max risk %)
        max_daily_trades: Trades allowed per rolling 24h window
        min_win_rate: Minimum acceptable win rate (0-1)
        slippage_percent: Expected adverse slippage/fees per fill
        risk_reward_ratio: Minimum reward:risk for a new position
    """
    max_drawdown_percent: Decimal = Decimal("15")
    max_position_size_percent: Decimal = Decimal("10")
    max_daily_trades: int = 20
    min_win_rate: Decimal = Decimal("0.4")
    slippage_percent: Decimal = Decimal("0.15")
    risk_reward_ratio: Decimal = Decimal("1.5")

    @classmethod
    def build(cls, **overrides: Any) -> "RiskConfig":
        """Build a config from plain numbers."""
        values = {}
        for key, value in overrides.items():
            values[key] = value if key == "max_daily_trades" else to_decimal(value)
        return cls(**values)


@dataclass
class CircuitBreakerCheck:
    """Result of a circuit breaker evaluation.

    Attributes:
        should_stop: True if no new trades may be opened
        reason: Human-readable explanation
        drawdown_percent: Current drawdown from peak equity
    """
    should_stop: bool
    reason: str
    drawdown_percent: Decimal


@dataclass
class DailyLimitCheck:
    """Result of a daily trade limit check."""
    can_trade: bool
    reason: str
    trades_remaining: int


@dataclass
class TradeOutcome:
    time: datetime
    pnl: Decimal
    result: str


class RiskManager:
    """
    Risk controls for a single trading agent.

    - Position sizing scaled down by volatility and leverage
    - Pre-trade assessment (max loss, risk %, reward:risk, slippage)
    - Circuit breaker on drawdown from peak or loss from start
    - Rolling 24h trade counter
    - Win-rate tracking over the last 100 outcomes
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or RiskConfig()
        self._clock = clock

        self.peak_equity: Decimal = ZERO
        self.max_drawdown_seen: Decimal = ZERO

        self.daily_trade_count = 0
        self.daily_reset_at: datetime = clock()

        self.trade_history: Deque[TradeOutcome] = deque(maxlen=TRADE_HISTORY_LIMIT)

    # =========================================================================
    # Position Sizing
    # =========================================================================

    def calculate_position_size(
        self,
        equity: Any,
        volatility: Any,
        leverage: Any,
        price: Any,
    ) -> int:
        """Whole number of base units to trade.

        Returns 0 for non-positive equity or price.
        """
        equity = to_decimal(equity)
        volatility = to_decimal(volatility)
        leverage = to_decimal(leverage)
        price = to_decimal(price)

        if equity <= 0 or price <= 0:
            return 0

        base_size = equity * self.config.max_position_size_percent / HUNDRED
        volatility_factor = max(Decimal("0.5"), ONE - volatility * 2)
        leverage_factor = ONE / max(ONE, leverage)
        size = base_size * volatility_factor * leverage_factor

        quantity = self._floor(size / price)

        # Expensive assets: allow one whole unit if equity can carry it
        if quantity < 1 and price > 50 and equity >= price * 2:
            size = min(price * Decimal("1.5"), equity * Decimal("0.25"))
            quantity = self._floor(size / price)

        return max(quantity, 0)

    @staticmethod
    def _floor(value: Decimal) -> int:
        return int(value.quantize(ONE, rounding=ROUND_DOWN))

    # =========================================================================
    # Pre-trade Assessment
    # =========================================================================

    def assess_position_risk(
        self,
        entry_price: Any,
        stop_loss_price: Any,
        take_profit_price: Any,
        quantity: int,
        equity: Any,
        leverage: Any,
        volatility: Any,
        side: TradeAction = TradeAction.BUY,
    ) -> PositionRisk:
        """Evaluate a prospective position.

        Slippage tightens the take profit and widens the stop loss in the
        direction of the trade. The last failing rule determines the
        assessment text.
        """
        entry = to_decimal(entry_price)
        stop = to_decimal(stop_loss_price)
        target = to_decimal(take_profit_price)
        equity = to_decimal(equity)
        leverage = to_decimal(leverage)
        volatility = to_decimal(volatility)
        qty = to_decimal(quantity)

        risk_per_unit = abs(entry - stop)
        max_loss = risk_per_unit * qty
        max_gain = abs(target - entry) * qty
        risk_percent = max_loss / equity * HUNDRED if equity > 0 else HUNDRED
        if max_loss > 0:
            risk_reward = max_gain / max_loss
        else:
            risk_reward = ZERO

        slippage = entry * self.config.slippage_percent / HUNDRED
        if side == TradeAction.SELL:
            adjusted_tp = target + slippage
            adjusted_sl = stop + slippage
            default_action = RiskAction.SELL
        else:
            adjusted_tp = target - slippage
            adjusted_sl = stop - slippage
            default_action = RiskAction.BUY

        action = default_action
        assessment = "OK"

        if risk_percent > self.config.max_position_size_percent:
            action = RiskAction.REDUCE
            assessment = (
                f"Risk {risk_percent:.1f}% exceeds limit "
                f"{self.config.max_position_size_percent}%"
            )
        if risk_reward < self.config.risk_reward_ratio:
            action = RiskAction.REDUCE
            assessment = (
                f"Risk:Reward {risk_reward:.2f} below {self.config.risk_reward_ratio}"
            )
        if volatility > HIGH_VOLATILITY:
            action = RiskAction.REDUCE
            assessment = f"High volatility {volatility * HUNDRED:.2f}% - reduce position"
        if leverage > MAX_SAFE_LEVERAGE:
            action = RiskAction.REDUCE
            assessment = f"Leverage {leverage}x too high"

        return PositionRisk(
            max_loss_amount=max_loss,
            risk_percent=risk_percent,
            risk_reward_ratio=risk_reward,
            recommended_action=action,
            position_size=quantity,
            adjusted_leverage=leverage * (ONE - volatility),
            adjusted_take_profit=adjusted_tp,
            adjusted_stop_loss=adjusted_sl,
            risk_assessment=assessment,
        )

    # =========================================================================
    # Circuit Breaker
    # =========================================================================

    def check_circuit_breaker(self, equity: Any, starting_equity: Any) -> CircuitBreakerCheck:
        """Update peak equity and decide whether trading must stop."""
        equity = to_decimal(equity)
        starting_equity = to_decimal(starting_equity)

        if equity > self.peak_equity:
            self.peak_equity = equity

        if self.peak_equity > 0:
            drawdown = (self.peak_equity - equity) / self.peak_equity * HUNDRED
        else:
            drawdown = ZERO
        self.max_drawdown_seen = max(self.max_drawdown_seen, drawdown)

        if drawdown > self.config.max_drawdown_percent:
            logger.warning(
                "risk.circuit_breaker_triggered",
                drawdown_percent=str(drawdown),
                limit=str(self.config.max_drawdown_percent),
            )
            return CircuitBreakerCheck(
                should_stop=True,
                reason=(
                    f"Drawdown {drawdown:.1f}% exceeds limit "
                    f"{self.config.max_drawdown_percent}%"
                ),
                drawdown_percent=drawdown,
            )

        if starting_equity > 0:
            total_loss = (starting_equity - equity) / starting_equity * HUNDRED
            if total_loss > MAX_TOTAL_LOSS_PERCENT:
                logger.warning("risk.total_loss_exceeded", total_loss_percent=str(total_loss))
                return CircuitBreakerCheck(
                    should_stop=True,
                    reason=f"Total loss {total_loss:.1f}% exceeds {MAX_TOTAL_LOSS_PERCENT}%",
                    drawdown_percent=drawdown,
                )

        return CircuitBreakerCheck(
            should_stop=False, reason="Within risk limits", drawdown_percent=drawdown
        )

    # =========================================================================
    # Daily Limits & Trade History
    # =========================================================================

    def _roll_daily_window(self) -> None:
        now = self._clock()
        if now - self.daily_reset_at >= DAILY_WINDOW:
            self.daily_trade_count = 0
            self.daily_reset_at = now

    def check_daily_trade_limit(self) -> DailyLimitCheck:
        """Whether another trade fits in the rolling 24h window."""
        self._roll_daily_window()
        max_trades = self.config.max_daily_trades

        if self.daily_trade_count >= max_trades:
            return DailyLimitCheck(
                can_trade=False,
                reason=f"Daily trade limit ({max_trades}) reached",
                trades_remaining=0,
            )
        return DailyLimitCheck(
            can_trade=True,
            reason="Within daily trade limit",
            trades_remaining=max_trades - self.daily_trade_count,
        )

    def register_trade(self) -> None:
        """Count an opened trade whose P&L is not known yet."""
        self._roll_daily_window()
        self.daily_trade_count += 1

    def record_trade(self, pnl: Any) -> None:
        """Record a closed trade's realised P&L."""
        pnl = to_decimal(pnl)
        self._roll_daily_window()
        self.daily_trade_count += 1
        self.trade_history.append(
            TradeOutcome(time=self._clock(), pnl=pnl, result="WIN" if pnl >= 0 else "LOSS")
        )

    def get_win_rate(self) -> Decimal:
        """Share of winning trades; 0.5 with no history."""
        if not self.trade_history:
            return Decimal("0.5")
        wins = sum(1 for t in self.trade_history if t.result == "WIN")
        return Decimal(wins) / Decimal(len(self.trade_history))

    def is_win_rate_acceptable(self) -> bool:
        return self.get_win_rate() >= self.config.min_win_rate

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of risk counters for telemetry."""
        total_pnl = sum((t.pnl for t in self.trade_history), ZERO)
        count = len(self.trade_history)
        return {
            "total_trades": count,
            "win_rate": self.get_win_rate(),
            "total_pnl": total_pnl,
            "avg_pnl": total_pnl / count if count else ZERO,
            "peak_equity": self.peak_equity,
            "max_drawdown": self.max_drawdown_seen,
            "daily_trades_used": self.daily_trade_count,
            "daily_trades_remaining": max(
                self.config.max_daily_trades - self.daily_trade_count, 0
            ),
        }

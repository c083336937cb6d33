"""Multi-indicator scoring strategy.

Scores trend, RSI, MACD and short-term price patterns into a directional
prediction with a confidence. Trades only when the confidence clears a
threshold that moves with volatility and RSI, and when the pre-trade risk
assessment accepts the resulting targets.
"""
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from arena.analysis import indicators
from arena.core.models import Candle, ExchangePosition, StrategyType, TradeAction, TradeSignal
from arena.strategies.base import BaseStrategy

HOUR_SECONDS = 3600.0
CANDLE_SECONDS = 60.0
MAX_CANDLES = 60


@dataclass
class Prediction:
    """Directional call produced by the scoring model.

    Attributes:
        predicted_price: Current price nudged by pattern and RSI signals
        confidence: Score in [0.4, 0.95] when any signal fired
        direction: "UP" when bullish signals outnumber bearish ones, else "DOWN"
        bullish: Number of bullish signals
        bearish: Number of bearish signals
    """
    predicted_price: float
    confidence: float
    direction: str
    bullish: int = 0
    bearish: int = 0


class MLScoringStrategy(BaseStrategy):
    """Indicator-scoring predictor with dynamic thresholds (strategy id ``ml``)."""

    strategy_type = StrategyType.ML
    HISTORY_LENGTH = 300
    CANDLE_TIMEFRAME = "1m"

    DEFAULT_PARAMS = {
        "leverage": 2.0,
        "position_size": 0.15,
        "base_confidence_threshold": 0.65,
        "min_trade_interval_seconds": 10.0,
        "max_trades_per_hour": 10,
        "min_history": 15,
        "min_movement_percent": 0.3,
    }

    RISK_CONFIG = {
        "max_drawdown_percent": 12,
        "max_position_size_percent": 15,
        "max_daily_trades": 30,
        "min_win_rate": 0.45,
        "slippage_percent": 0.2,
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.recent_trades: deque = deque()
        self.candles: List[Candle] = []

    # =========================================================================
    # Scoring
    # =========================================================================

    def predict(self, prices: List[float], volatility: float, rsi: float, macd_strength: float) -> Prediction:
        """Score the indicators into a direction, confidence and target price."""
        current = prices[-1]
        predicted = current
        confidence = 0.5
        bullish = bearish = 0

        short_trend = indicators.linear_trend(prices[-15:])
        medium_trend = indicators.linear_trend(prices[-50:])

        if short_trend > 0.01:
            bullish += 1
            confidence += 0.1
        elif short_trend < -0.01:
            bearish += 1
            confidence += 0.1

        # Multi-timeframe confirmation
        if medium_trend > 0 and short_trend > 0:
            bullish += 1
            confidence += 0.08
        elif medium_trend < 0 and short_trend < 0:
            bearish += 1
            confidence += 0.08

        if rsi < 30:
            bullish += 1
            confidence += 0.12
            predicted += current * 0.005
        elif rsi > 70:
            bearish += 1
            confidence += 0.12
            predicted -= current * 0.005

        if macd_strength > 20:
            bullish += 1
            confidence += 0.12
        elif macd_strength < -20:
            bearish += 1
            confidence += 0.12

        reversal = indicators.detect_reversal(prices)
        trend = indicators.detect_trend(prices)
        if reversal == "UP" and trend == "UP":
            bullish += 1
            confidence += 0.08
            predicted += current * 0.008
        elif reversal == "DOWN" and trend == "DOWN":
            bearish += 1
            confidence += 0.08
            predicted -= current * 0.008

        if volatility > 0.08:
            confidence *= 0.8
        elif volatility < 0.01:
            confidence *= 1.1

        if bullish + bearish > 0:
            confidence = min(confidence, 0.95)
        confidence = max(confidence, 0.4)

        return Prediction(
            predicted_price=predicted,
            confidence=confidence,
            direction="UP" if bullish > bearish else "DOWN",
            bullish=bullish,
            bearish=bearish,
        )

    def dynamic_threshold(self, volatility: float, rsi: float) -> float:
        """Confidence bar: higher in volatile or neutral-RSI markets, in [0.55, 0.85]."""
        threshold = self.params["base_confidence_threshold"]

        if volatility > 0.05:
            threshold += 0.05
        elif volatility < 0.01:
            threshold -= 0.03

        if rsi < 25 or rsi > 75:
            threshold -= 0.05
        elif 40 < rsi < 60:
            threshold += 0.05

        return max(0.55, min(0.85, threshold))

    def update_candles(self, price: float) -> None:
        """Fold the tick into one-minute candles, keeping the last hour."""
        now = self.now()
        if not self.candles or now - self.candles[-1].timestamp / 1000 > CANDLE_SECONDS:
            self.candles.append(
                Candle(
                    timestamp=int(now * 1000),
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    volume=1,
                )
            )
        else:
            last = self.candles[-1]
            self.candles[-1] = last.model_copy(update={
                "high": max(last.high, price),
                "low": min(last.low, price),
                "close": price,
                "volume": last.volume + 1,
            })

        if len(self.candles) > MAX_CANDLES:
            self.candles.pop(0)

    def seed_candles(self, candles: Sequence[Candle]) -> None:
        self.candles = list(candles)[-MAX_CANDLES:]
        self.logger.info("strategy.candles_seeded", candles=len(self.candles))

    # =========================================================================
    # Evaluation
    # =========================================================================

    def mark_trade(self) -> None:
        super().mark_trade()
        self.recent_trades.append(self.now())

    def trades_last_hour(self) -> int:
        now = self.now()
        while self.recent_trades and now - self.recent_trades[0] >= HOUR_SECONDS:
            self.recent_trades.popleft()
        return len(self.recent_trades)

    def evaluate(
        self,
        price: float,
        equity: float,
        position: Optional[ExchangePosition],
    ) -> TradeSignal:
        signal = self.initial_buy(price, equity, "ML trading")
        if signal:
            return signal

        if self.is_rate_limited():
            return TradeSignal.hold("Rate limited - minimum interval between trades")

        max_per_hour = self.params["max_trades_per_hour"]
        if self.trades_last_hour() >= max_per_hour:
            return TradeSignal.hold(f"Hourly trade limit ({max_per_hour}) reached")

        prices = self.state.prices
        min_history = self.params["min_history"]
        if len(prices) < min_history:
            return TradeSignal.hold(f"Building prediction model ({len(prices)}/{min_history})")

        # Scale out on gain alone; the scoring model handles overbought exits
        if position is not None:
            gain = self.gain_percent(price, position)
            if gain is not None and gain >= self.params["scale_out_percent"]:
                return self.scale_out_signal(price, position, 0.85, f"Scale Out ({gain:.2f}% gain)")

        self.update_candles(price)

        volatility = indicators.volatility(prices, 20)
        rsi = indicators.rsi(prices, 14)
        macd = indicators.macd(prices)

        prediction = self.predict(prices, volatility, rsi, macd.strength)
        threshold = self.dynamic_threshold(volatility, rsi)
        if prediction.confidence < threshold:
            return TradeSignal.hold(
                f"ML confidence {prediction.confidence * 100:.1f}% below dynamic threshold "
                f"{threshold * 100:.1f}% (vol: {volatility * 100:.2f}%)"
            )

        quantity = self.risk_manager.calculate_position_size(
            equity, volatility, self.params["leverage"], price
        )
        if quantity <= 0:
            return TradeSignal.hold(f"Invalid position size: {quantity}")

        change_percent = (prediction.predicted_price - price) / price * 100
        movement_threshold = max(self.params["min_movement_percent"], volatility * 10)

        action = None
        if change_percent > movement_threshold and prediction.direction == "UP":
            action = TradeAction.BUY
        elif change_percent < -movement_threshold and prediction.direction == "DOWN":
            action = TradeAction.SELL

        if action is None:
            return TradeSignal.hold(
                f"Minimal movement ({change_percent:.2f}%), threshold: "
                f"±{movement_threshold:.2f}%. {self.position_summary(position)}"
            )

        targets = indicators.adaptive_targets(
            price, volatility, action, atr_value=indicators.atr(self.candles)
        )
        risk = self.risk_manager.assess_position_risk(
            entry_price=price,
            stop_loss_price=targets.stop_loss,
            take_profit_price=targets.take_profit,
            quantity=quantity,
            equity=equity,
            leverage=self.params["leverage"],
            volatility=volatility,
            side=action,
        )
        if risk.should_reduce:
            return TradeSignal.hold(f"Risk check failed: {risk.risk_assessment}")

        self.mark_trade()
        return TradeSignal(
            action=action,
            quantity=quantity,
            price=price,
            take_profit=risk.adjusted_take_profit,
            stop_loss=risk.adjusted_stop_loss,
            confidence=min(prediction.confidence, 0.95),
            reason=(
                f"ML: {change_percent:.2f}% move expected (vol: {volatility * 100:.1f}%, "
                f"RSI: {rsi:.0f}, MACD: {macd.strength:.0f})"
            ),
        )

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats['candles'] = len(self.candles)
        stats['trades_last_hour'] = self.trades_last_hour()
        return stats

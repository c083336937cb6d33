"""Technical indicator library.

Pure functions over price series (floats) or OHLC candles. Nothing here
performs I/O or keeps state. Every function is total over finite input:
short or empty series return a neutral value instead of raising. Callers
must filter non-finite prices before they reach a history buffer.
"""
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from arena.core.models import Candle, TradeAction

# Floor on target distance so TP/SL stay on opposite sides of price
MIN_TARGET_RISK_FRACTION = 0.001


@dataclass(frozen=True)
class MACDResult:
    """MACD line, signal line and histogram.

    strength is the histogram in basis points of the latest price,
    clamped to [-100, 100]; positive means bullish bias.
    """
    macd: float
    signal: float
    histogram: float
    strength: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class SupportResistance:
    support: float
    resistance: float


@dataclass(frozen=True)
class AdaptiveTargets:
    take_profit: float
    stop_loss: float
    risk_amount: float
    multiplier: float


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# =============================================================================
# Moving Averages
# =============================================================================

def sma(prices: Sequence[float], period: int) -> float:
    """Simple moving average; the latest price when history is short."""
    if not prices:
        return 0.0
    if period <= 0 or len(prices) < period:
        return float(prices[-1])
    window = prices[-period:]
    return sum(window) / period


def ema_series(prices: Sequence[float], period: int) -> List[float]:
    """Exponential moving average for every point, seeded with the first price."""
    if not prices:
        return []
    multiplier = 2.0 / (max(period, 1) + 1)
    values = [float(prices[0])]
    for price in prices[1:]:
        values.append(price * multiplier + values[-1] * (1 - multiplier))
    return values


def ema(prices: Sequence[float], period: int) -> float:
    """Exponential moving average; the latest price when history is short."""
    if not prices:
        return 0.0
    if period <= 0 or len(prices) < period:
        return float(prices[-1])
    return ema_series(prices, period)[-1]


# =============================================================================
# Oscillators
# =============================================================================

def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Relative Strength Index with Wilder smoothing.

    Returns 50 until period+1 samples exist, 100 when there were no losses
    over the window.
    """
    if period <= 0 or len(prices) < period + 1:
        return 50.0

    changes = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
    gains = [max(c, 0.0) for c in changes]
    losses = [max(-c, 0.0) for c in changes]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0

    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(
    prices: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    """MACD with a signal line computed over the MACD series."""
    if len(prices) < slow or prices[-1] == 0:
        return MACDResult(macd=0.0, signal=0.0, histogram=0.0, strength=0.0)

    fast_series = ema_series(prices, fast)
    slow_series = ema_series(prices, slow)
    macd_series = [f - s for f, s in zip(fast_series, slow_series)]
    # Only the part of the series where the slow EMA has warmed up
    macd_series = macd_series[slow - 1:]
    signal_series = ema_series(macd_series, signal_period)

    macd_line = macd_series[-1]
    signal_line = signal_series[-1]
    histogram = macd_line - signal_line
    strength = _clamp(histogram / prices[-1] * 10000, -100.0, 100.0)

    return MACDResult(
        macd=macd_line, signal=signal_line, histogram=histogram, strength=strength
    )


def momentum(prices: Sequence[float], period: int = 10) -> float:
    """Percent change over the last period samples."""
    if len(prices) <= period or period <= 0:
        return 0.0
    past = prices[-period - 1]
    if past == 0:
        return 0.0
    return (prices[-1] - past) / past * 100


# =============================================================================
# Volatility & Bands
# =============================================================================

def volatility(prices: Sequence[float], window: int = 20) -> float:
    """Standard deviation of simple returns over the trailing window."""
    recent = prices[-(window + 1):] if window > 0 else prices
    returns = [
        (recent[i] - recent[i - 1]) / recent[i - 1]
        for i in range(1, len(recent))
        if recent[i - 1] != 0
    ]
    if len(returns) < 2:
        return 0.0
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    return math.sqrt(variance)


def bollinger_bands(
    prices: Sequence[float], period: int = 20, std_dev: float = 2.0
) -> BollingerBands:
    """Bollinger bands around the SMA."""
    if not prices:
        return BollingerBands(upper=0.0, middle=0.0, lower=0.0)
    window = prices[-period:] if len(prices) >= period else prices
    middle = sum(window) / len(window)
    variance = sum((p - middle) ** 2 for p in window) / len(window)
    deviation = math.sqrt(variance) * std_dev
    return BollingerBands(upper=middle + deviation, middle=middle, lower=middle - deviation)


def atr(candles: Sequence[Candle], period: int = 14) -> float:
    """Average True Range over candles; 0 without at least two candles."""
    if len(candles) < 2:
        return 0.0

    true_ranges = []
    for i in range(1, len(candles)):
        high, low, prev_close = candles[i].high, candles[i].low, candles[i - 1].close
        true_ranges.append(max(high - low, abs(high - prev_close), abs(low - prev_close)))

    window = true_ranges[-period:]
    return sum(window) / len(window)


# =============================================================================
# Levels & Patterns
# =============================================================================

def support_resistance(prices: Sequence[float], window: int = 20) -> SupportResistance:
    """Local min/max over the trailing window."""
    if not prices:
        return SupportResistance(support=0.0, resistance=0.0)
    recent = prices[-window:] if window > 0 else prices
    return SupportResistance(support=min(recent), resistance=max(recent))


def linear_trend(prices: Sequence[float]) -> float:
    """Least-squares slope normalised by the latest price."""
    n = len(prices)
    if n < 2 or prices[-1] == 0:
        return 0.0

    sum_x = n * (n - 1) / 2
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(prices)
    sum_xy = sum(i * p for i, p in enumerate(prices))

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    return slope / prices[-1]


def detect_reversal(prices: Sequence[float]) -> Optional[str]:
    """V-shaped reversal over the last five points: "UP", "DOWN" or None."""
    if len(prices) < 5:
        return None
    p = prices[-5:]

    valley = p[1] < p[0] and p[2] < p[1] and p[3] > p[2]
    if valley and p[3] > p[2] * 1.005:
        return "UP"

    peak = p[1] > p[0] and p[2] > p[1] and p[3] < p[2]
    if peak and p[3] < p[2] * 0.995:
        return "DOWN"

    return None


def detect_trend(prices: Sequence[float], lookback: int = 8) -> Optional[str]:
    """Direction of at least 60% of recent moves: "UP", "DOWN" or None."""
    if len(prices) < lookback:
        return None
    recent = prices[-lookback:]
    ups = sum(1 for a, b in zip(recent, recent[1:]) if b > a)
    downs = sum(1 for a, b in zip(recent, recent[1:]) if b < a)
    threshold = lookback * 0.6
    if ups >= threshold:
        return "UP"
    if downs >= threshold:
        return "DOWN"
    return None


def signal_strength(rsi_value: float, macd_strength: float, momentum_value: float) -> float:
    """Blend RSI, MACD and momentum into a score in [-100, 100]."""
    rsi_component = (50.0 - rsi_value) * 2
    momentum_component = _clamp(momentum_value * 10, -100.0, 100.0)
    score = rsi_component * 0.4 + macd_strength * 0.4 + momentum_component * 0.2
    return _clamp(score, -100.0, 100.0)


# =============================================================================
# Targets
# =============================================================================

def adaptive_targets(
    price: float,
    volatility_value: float,
    side: TradeAction,
    atr_value: Optional[float] = None,
) -> AdaptiveTargets:
    """Take-profit and stop-loss levels that widen with volatility.

    BUY: take_profit > price > stop_loss.
    SELL: stop_loss > price > take_profit.
    """
    vol = max(volatility_value, 0.0)
    risk = atr_value if atr_value and atr_value > 0 else price * vol
    risk = max(risk, price * MIN_TARGET_RISK_FRACTION)
    # Never let the stop cross zero on a long
    risk = min(risk, price * 0.5)
    multiplier = _clamp(1 + vol * 5, 1.0, 3.0)

    if side == TradeAction.SELL:
        take_profit = max(price - risk * multiplier, price * 0.01)
        stop_loss = price + risk * 0.5
    else:
        take_profit = price + risk * multiplier
        stop_loss = price - risk * 0.5

    return AdaptiveTargets(
        take_profit=take_profit,
        stop_loss=stop_loss,
        risk_amount=risk,
        multiplier=multiplier,
    )

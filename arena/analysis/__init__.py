"""Technical analysis for trading strategies."""

from arena.analysis.indicators import (
    AdaptiveTargets,
    BollingerBands,
    MACDResult,
    SupportResistance,
    adaptive_targets,
    atr,
    bollinger_bands,
    detect_reversal,
    detect_trend,
    ema,
    ema_series,
    linear_trend,
    macd,
    momentum,
    rsi,
    signal_strength,
    sma,
    support_resistance,
    volatility,
)

__all__ = [
    "AdaptiveTargets",
    "BollingerBands",
    "MACDResult",
    "SupportResistance",
    "adaptive_targets",
    "atr",
    "bollinger_bands",
    "detect_reversal",
    "detect_trend",
    "ema",
    "ema_series",
    "linear_trend",
    "macd",
    "momentum",
    "rsi",
    "signal_strength",
    "sma",
    "support_resistance",
    "volatility",
]

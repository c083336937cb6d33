"""
Trading strategies for the arena agents.

Each agent runs one strategy per traded symbol:
- arbitrage: mean reversion with a spread filter
- momentum: adaptive-threshold multi-indicator momentum
- grid: dip accumulation and rally exit around a moving average
- ml: indicator-scoring predictor with dynamic confidence thresholds
- buy_and_hold: single fixed-notional buy, the benchmark agent
"""

from typing import Union

from arena.core.models import AgentConfig, StrategyType
from arena.strategies.base import BaseStrategy, StrategyState
from arena.strategies.buy_and_hold import BuyAndHoldStrategy
from arena.strategies.grid_accumulation import GridAccumulationStrategy
from arena.strategies.mean_reversion import MeanReversionStrategy
from arena.strategies.ml_scoring import MLScoringStrategy, Prediction
from arena.strategies.momentum import MomentumStrategy

STRATEGY_MAP = {
    StrategyType.ARBITRAGE: MeanReversionStrategy,
    StrategyType.MOMENTUM: MomentumStrategy,
    StrategyType.GRID: GridAccumulationStrategy,
    StrategyType.ML: MLScoringStrategy,
    StrategyType.BUY_AND_HOLD: BuyAndHoldStrategy,
}


def create_strategy(
    strategy_type: Union[StrategyType, str],
    config: AgentConfig,
    **kwargs,
) -> BaseStrategy:
    """Factory function to create strategies by type."""
    try:
        strategy_class = STRATEGY_MAP[StrategyType(strategy_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown strategy type: {strategy_type}") from None
    return strategy_class(config, **kwargs)


__all__ = [
    # Base classes
    "BaseStrategy",
    "StrategyState",
    # Strategies
    "MeanReversionStrategy",
    "MomentumStrategy",
    "GridAccumulationStrategy",
    "MLScoringStrategy",
    "BuyAndHoldStrategy",
    "Prediction",
    # Factory
    "STRATEGY_MAP",
    "create_strategy",
]

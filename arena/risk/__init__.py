"""Risk management for trading agents."""

from arena.risk.risk_manager import (
    CircuitBreakerCheck,
    DailyLimitCheck,
    RiskConfig,
    RiskManager,
)

__all__ = ["RiskManager", "RiskConfig", "CircuitBreakerCheck", "DailyLimitCheck"]

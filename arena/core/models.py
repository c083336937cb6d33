"""Data models for the Arena trading engine.

This module defines the data structures shared by the exchange client,
strategies, risk manager and runtime:
- Agent configuration (immutable per agent task)
- Trade signals produced by strategies
- Typed projections of exchange account/position/order payloads
- Risk assessment results

All monetary values use Decimal for precision. Indicator math works on
floats and is converted at the signal boundary.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Convert a float/int/str to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# =============================================================================
# Enums
# =============================================================================

class TradeAction(str, Enum):
    """Action carried by a trade signal."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class OrderType(str, Enum):
    """Order types accepted by the exchange."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"


class TimeInForce(str, Enum):
    """Time in force for limit orders."""
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


class PositionSide(str, Enum):
    """Direction of an open position."""
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    """Status of a recorded trade after reconciliation."""
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    ERROR = "error"


class AgentStatus(str, Enum):
    """Heartbeat status of an agent."""
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    PAUSED = "paused"


class ThinkingType(str, Enum):
    """Kinds of analysis notes an agent emits."""
    ANALYSIS = "analysis"
    DECISION = "decision"
    ERROR = "error"
    MARKET_ANALYSIS = "market_analysis"


class StrategyType(str, Enum):
    """Known strategy variants, keyed by strategy identifier."""
    ARBITRAGE = "arbitrage"       # Mean reversion with spread filter
    MOMENTUM = "momentum"         # Multi-indicator momentum
    GRID = "grid"                 # Dip accumulation / rally exit
    ML = "ml"                     # Multi-indicator scoring model
    BUY_AND_HOLD = "buy_and_hold"  # Single entry, hold forever


class RiskAction(str, Enum):
    """Recommendation returned by a position risk assessment."""
    BUY = "BUY"
    SELL = "SELL"
    REDUCE = "REDUCE"


# Exchange order status -> recorded trade status
ORDER_STATUS_MAP: Dict[str, TradeStatus] = {
    "FILLED": TradeStatus.CLOSED,
    "PARTIALLY_FILLED": TradeStatus.OPEN,
    "CANCELED": TradeStatus.CANCELLED,
    "REJECTED": TradeStatus.ERROR,
}


def map_order_status(status: Optional[str]) -> TradeStatus:
    """Map an exchange order status to a recorded trade status."""
    return ORDER_STATUS_MAP.get((status or "").upper(), TradeStatus.OPEN)


# =============================================================================
# Agent Configuration
# =============================================================================

class AgentConfig(BaseModel):
    """Identity, credentials and target of one agent task.

    Attributes:
        agent_id: Short agent identifier used to tag telemetry
        name: Human-readable display name
        signer_address: Agent signer wallet address
        agent_private_key: Agent private key
        user_address: Main account wallet address
        api_key: REST API key (sent in the API-key header)
        api_secret: REST API secret (used for HMAC signing only)
        symbol: Trading symbol, e.g. "ASTERUSDT"
        strategy: Strategy variant identifier
        model: Model label shown in telemetry
        model_id: Identifier used to look up configured symbols
    """
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    agent_id: str
    name: str
    signer_address: str
    agent_private_key: str = Field(repr=False)
    user_address: str
    api_key: str = Field(repr=False)
    api_secret: str = Field(repr=False)
    symbol: str
    strategy: StrategyType
    model: str = ""
    model_id: str = ""

    @property
    def base_asset(self) -> str:
        """Base asset of the symbol ("ASTER" for "ASTERUSDT")."""
        for quote in ("USDT", "USDC", "BUSD", "USD"):
            if self.symbol.endswith(quote) and len(self.symbol) > len(quote):
                return self.symbol[: -len(quote)]
        return self.symbol


# =============================================================================
# Trade Signals
# =============================================================================

class TradeSignal(BaseModel):
    """Signal produced by a strategy for a single tick.

    A HOLD signal never results in an exchange call.
    """
    model_config = ConfigDict(frozen=True)

    action: TradeAction
    quantity: int = Field(default=0, ge=0)
    price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("price", "stop_loss", "take_profit", mode="before")
    @classmethod
    def coerce_price(cls, v):
        """Accept floats from indicator math."""
        if v is None:
            return None
        if isinstance(v, float):
            return to_decimal(v)
        return v

    @field_validator("price", "stop_loss", "take_profit")
    @classmethod
    def price_positive(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        """Prices must be finite and positive."""
        if v is not None and (not v.is_finite() or v <= 0):
            raise ValueError("Prices must be finite and positive")
        return v

    @model_validator(mode="after")
    def hold_has_no_quantity(self) -> "TradeSignal":
        """HOLD carries no size; BUY/SELL must carry one."""
        if self.action == TradeAction.HOLD and self.quantity != 0:
            raise ValueError("HOLD signals must have quantity 0")
        if self.action != TradeAction.HOLD and self.quantity < 1:
            raise ValueError(f"{self.action.value} signals need a quantity of at least 1")
        return self

    @classmethod
    def hold(cls, reason: str, confidence: float = 0.0) -> "TradeSignal":
        """Build a HOLD signal."""
        return cls(action=TradeAction.HOLD, quantity=0, confidence=confidence, reason=reason)

    @property
    def is_hold(self) -> bool:
        return self.action == TradeAction.HOLD

    @property
    def has_exit_plan(self) -> bool:
        """True if the signal carries a take profit or a stop loss."""
        return self.take_profit is not None or self.stop_loss is not None


# =============================================================================
# Exchange Projections
# =============================================================================

class ExchangeModel(BaseModel):
    """Base for models parsed from exchange payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExchangePosition(ExchangeModel):
    """Position entry as returned in the account payload."""

    symbol: str
    position_amt: Decimal = Field(default=Decimal("0"), validation_alias="positionAmt")
    entry_price: Decimal = Field(default=Decimal("0"), validation_alias="entryPrice")
    mark_price: Decimal = Field(default=Decimal("0"), validation_alias="markPrice")
    unrealized_profit: Decimal = Field(default=Decimal("0"), validation_alias="unrealizedProfit")
    leverage: Decimal = Field(default=Decimal("1"), validation_alias="leverage")
    notional: Decimal = Field(default=Decimal("0"), validation_alias="notional")
    liquidation_price: Decimal = Field(default=Decimal("0"), validation_alias="liquidationPrice")
    isolated: bool = False

    @property
    def quantity(self) -> Decimal:
        """Absolute position size."""
        return abs(self.position_amt)

    @property
    def side(self) -> PositionSide:
        return PositionSide.SHORT if self.position_amt < 0 else PositionSide.LONG

    @property
    def is_open(self) -> bool:
        return self.quantity > 0


class AccountInfo(ExchangeModel):
    """Account summary derived from the account endpoint.

    equity is the total wallet balance; roi is unrealized PnL relative to
    the wallet balance, in percent.
    """

    total_wallet_balance: Decimal = Field(validation_alias="totalWalletBalance")
    total_unrealized_profit: Decimal = Field(
        default=Decimal("0"), validation_alias="totalUnrealizedProfit"
    )
    total_cross_collateral: Decimal = Field(
        default=Decimal("0"), validation_alias="totalCrossCollateral"
    )
    available_balance: Decimal = Field(default=Decimal("0"), validation_alias="availableBalance")
    positions: List[ExchangePosition] = Field(default_factory=list)

    @property
    def equity(self) -> Decimal:
        return self.total_wallet_balance

    @property
    def total_pnl(self) -> Decimal:
        return self.total_unrealized_profit + self.total_cross_collateral

    @property
    def roi(self) -> Decimal:
        if self.total_wallet_balance <= 0:
            return Decimal("0")
        return self.total_unrealized_profit / self.total_wallet_balance * 100

    @property
    def open_positions(self) -> List[ExchangePosition]:
        return [p for p in self.positions if p.is_open]


class OrderResult(ExchangeModel):
    """Order state as returned by the order endpoints."""

    order_id: str = Field(validation_alias="orderId")
    symbol: str
    status: str = "NEW"
    side: Optional[str] = None
    type: Optional[str] = None
    client_order_id: Optional[str] = Field(default=None, validation_alias="clientOrderId")
    price: Decimal = Decimal("0")
    orig_qty: Decimal = Field(default=Decimal("0"), validation_alias="origQty")
    executed_qty: Decimal = Field(default=Decimal("0"), validation_alias="executedQty")
    cum_quote: Decimal = Field(default=Decimal("0"), validation_alias="cumQuote")
    avg_price: Decimal = Field(default=Decimal("0"), validation_alias="avgPrice")
    stop_price: Decimal = Field(default=Decimal("0"), validation_alias="stopPrice")
    update_time: Optional[int] = Field(default=None, validation_alias="updateTime")

    @field_validator("order_id", mode="before")
    @classmethod
    def order_id_to_str(cls, v):
        """Exchange returns numeric order ids."""
        if isinstance(v, bool) or v is None:
            raise ValueError("orderId is required")
        return str(v)

    @property
    def trade_status(self) -> TradeStatus:
        return map_order_status(self.status)


class Candle(BaseModel):
    """OHLCV candle used by the indicator library."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


# =============================================================================
# Reconciliation & Risk Results
# =============================================================================

class ReconciledFill(BaseModel):
    """Authoritative execution values for a placed order."""
    model_config = ConfigDict(frozen=True)

    order_id: Optional[str]
    executed_price: Decimal
    executed_quantity: Decimal
    status: TradeStatus
    reconciled: bool = True


class PositionRisk(BaseModel):
    """Result of a pre-trade risk assessment.

    Attributes:
        max_loss_amount: |entry - stop| * quantity
        risk_percent: max loss as a percentage of equity
        risk_reward_ratio: |tp - entry| / |entry - stop|
        recommended_action: REDUCE, or the caller's side when acceptable
        position_size: quantity assessed
        adjusted_leverage: leverage scaled down by volatility
        adjusted_take_profit: take profit tightened by slippage
        adjusted_stop_loss: stop loss widened by slippage
        risk_assessment: human-readable summary
    """
    model_config = ConfigDict(frozen=True)

    max_loss_amount: Decimal
    risk_percent: Decimal
    risk_reward_ratio: Decimal
    recommended_action: RiskAction
    position_size: int
    adjusted_leverage: Decimal
    adjusted_take_profit: Decimal
    adjusted_stop_loss: Decimal
    risk_assessment: str

    @property
    def should_reduce(self) -> bool:
        return self.recommended_action == RiskAction.REDUCE

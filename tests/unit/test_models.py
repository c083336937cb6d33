"""Unit tests for core data models."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from arena.core.models import (
    AccountInfo,
    ExchangePosition,
    OrderResult,
    PositionSide,
    StrategyType,
    TradeAction,
    TradeSignal,
    TradeStatus,
    map_order_status,
    to_decimal,
)


# =============================================================================
# TradeSignal Tests
# =============================================================================

class TestTradeSignal:
    """Test TradeSignal validation."""

    def test_hold_factory(self):
        signal = TradeSignal.hold("Waiting for history")
        assert signal.is_hold
        assert signal.quantity == 0
        assert signal.confidence == 0.0
        assert not signal.has_exit_plan

    def test_buy_with_targets(self):
        signal = TradeSignal(
            action=TradeAction.BUY,
            quantity=10,
            price=2.0,
            stop_loss=1.9,
            take_profit=2.2,
            confidence=0.7,
        )
        assert signal.price == Decimal("2.0")
        assert signal.stop_loss == Decimal("1.9")
        assert signal.has_exit_plan

    def test_hold_with_quantity_rejected(self):
        with pytest.raises(ValidationError):
            TradeSignal(action=TradeAction.HOLD, quantity=5)

    def test_buy_without_quantity_rejected(self):
        with pytest.raises(ValidationError):
            TradeSignal(action=TradeAction.BUY, quantity=0)

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            TradeSignal(action=TradeAction.BUY, quantity=1, confidence=1.2)

    def test_non_positive_price_rejected(self):
        with pytest.raises(ValidationError):
            TradeSignal(action=TradeAction.SELL, quantity=1, price=0.0)

    def test_nan_price_rejected(self):
        with pytest.raises(ValidationError):
            TradeSignal(action=TradeAction.SELL, quantity=1, price=float("nan"))

    def test_signal_is_immutable(self):
        signal = TradeSignal.hold("x")
        with pytest.raises(ValidationError):
            signal.reason = "y"


# =============================================================================
# Exchange Projection Tests
# =============================================================================

class TestExchangeModels:
    """Test parsing of exchange payloads."""

    def test_account_from_payload(self):
        account = AccountInfo.model_validate({
            "totalWalletBalance": "1000",
            "totalUnrealizedProfit": "50",
            "totalCrossCollateral": "10",
            "availableBalance": "800",
            "positions": [
                {"symbol": "ASTERUSDT", "positionAmt": "25", "entryPrice": "2", "unrealizedProfit": "5"},
                {"symbol": "BTCUSDT", "positionAmt": "0"},
            ],
            "assets": [],
        })
        assert account.equity == Decimal("1000")
        assert account.total_pnl == Decimal("60")
        assert account.roi == Decimal("5")
        assert [p.symbol for p in account.open_positions] == ["ASTERUSDT"]

    def test_roi_without_balance(self):
        account = AccountInfo(total_wallet_balance=Decimal("0"))
        assert account.roi == Decimal("0")

    def test_position_side_and_quantity(self):
        short = ExchangePosition(symbol="ASTERUSDT", position_amt=Decimal("-3"))
        long = ExchangePosition(symbol="ASTERUSDT", position_amt=Decimal("3"))
        assert short.side == PositionSide.SHORT
        assert short.quantity == Decimal("3")
        assert long.side == PositionSide.LONG
        assert not ExchangePosition(symbol="ASTERUSDT").is_open

    def test_order_id_from_number(self):
        order = OrderResult.model_validate({"orderId": 123456789, "symbol": "ASTERUSDT", "status": "FILLED"})
        assert order.order_id == "123456789"
        assert order.trade_status == TradeStatus.CLOSED

    def test_order_id_required(self):
        with pytest.raises(ValidationError):
            OrderResult.model_validate({"orderId": None, "symbol": "ASTERUSDT"})


# =============================================================================
# Helper Tests
# =============================================================================

class TestHelpers:
    """Test status mapping and conversions."""

    @pytest.mark.parametrize("status,expected", [
        ("FILLED", TradeStatus.CLOSED),
        ("PARTIALLY_FILLED", TradeStatus.OPEN),
        ("CANCELED", TradeStatus.CANCELLED),
        ("REJECTED", TradeStatus.ERROR),
        ("NEW", TradeStatus.OPEN),
        ("filled", TradeStatus.CLOSED),
        (None, TradeStatus.OPEN),
    ])
    def test_map_order_status(self, status, expected):
        assert map_order_status(status) == expected

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(Decimal("2.5")) == Decimal("2.5")

    def test_base_asset(self, agent_config_factory):
        assert agent_config_factory("ETHUSDT").base_asset == "ETH"
        assert agent_config_factory("ASTERUSDC").base_asset == "ASTER"
        assert agent_config_factory("USDT").base_asset == "USDT"

    def test_strategy_identifiers(self):
        assert StrategyType("buy_and_hold") == StrategyType.BUY_AND_HOLD
        with pytest.raises(ValueError):
            StrategyType("martingale")

"""Pytest fixtures and utilities for the Arena trading engine test suite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from arena.core.models import (
    AccountInfo,
    AgentConfig,
    ExchangePosition,
    OrderResult,
    StrategyType,
)
from arena.risk.risk_manager import RiskManager
from arena.storage.database import Database


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, timezone.utc)


class FakeDateTimeClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clock_factory():
    """Independent clocks for comparing strategy instances."""
    return FakeClock


@pytest.fixture
def datetime_clock():
    return FakeDateTimeClock()


# =============================================================================
# Model Fixtures
# =============================================================================

def make_agent_config(
    symbol: str = "ASTERUSDT",
    strategy: StrategyType = StrategyType.ARBITRAGE,
    agent_id: str = "Claude",
) -> AgentConfig:
    return AgentConfig(
        agent_id=agent_id,
        name=f"{agent_id} Test Agent ({symbol})",
        signer_address="0xsigner",
        agent_private_key="0xprivate",
        user_address="0xuser",
        api_key="test_api_key",
        api_secret="test_api_secret",
        symbol=symbol,
        strategy=strategy,
        model="test-model",
        model_id=agent_id.lower(),
    )


def make_account(equity="1000", positions: Optional[List[ExchangePosition]] = None) -> AccountInfo:
    return AccountInfo(
        total_wallet_balance=Decimal(str(equity)),
        available_balance=Decimal(str(equity)),
        positions=positions or [],
    )


def make_position(symbol: str = "ASTERUSDT", amount="10", unrealized="0", entry="0") -> ExchangePosition:
    return ExchangePosition(
        symbol=symbol,
        position_amt=Decimal(str(amount)),
        entry_price=Decimal(str(entry)),
        unrealized_profit=Decimal(str(unrealized)),
    )


def make_order(order_id="12345", status="FILLED", executed_qty="10", cum_quote="20", price="2") -> OrderResult:
    return OrderResult(
        order_id=order_id,
        symbol="ASTERUSDT",
        status=status,
        price=Decimal(price),
        executed_qty=Decimal(executed_qty),
        cum_quote=Decimal(cum_quote),
    )


@pytest.fixture
def agent_config():
    """Agent configuration for the default test symbol."""
    return make_agent_config()


@pytest.fixture
def account_info():
    """Account with 1000 USDT equity and no positions."""
    return make_account("1000")


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def risk_manager(datetime_clock):
    """Create a fresh risk manager on a controllable clock."""
    return RiskManager(clock=datetime_clock)


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def mock_exchange():
    """Create a mock Aster client."""
    exchange = MagicMock()

    exchange.sync_server_time = AsyncMock(return_value=0)
    exchange.get_account_info = AsyncMock(return_value=make_account("1000"))
    exchange.place_order = AsyncMock(return_value=make_order())
    exchange.get_order = AsyncMock(return_value=make_order())
    exchange.get_open_orders = AsyncMock(return_value=[])
    exchange.cancel_order = AsyncMock()
    exchange.close_position = AsyncMock(return_value={})
    exchange.set_leverage = AsyncMock(return_value={})
    exchange.close = AsyncMock()

    return exchange


@pytest.fixture
def mock_price_source():
    """Create a mock price source quoting 2.0."""
    source = MagicMock()
    source.exchange_id = "binance"
    source.fetch_price = AsyncMock(return_value=Decimal("2.0"))
    source.fetch_candles = AsyncMock(return_value=[])
    source.close = AsyncMock()
    return source


@pytest.fixture
def mock_database():
    """Create a mock telemetry sink where every save succeeds."""
    db = MagicMock()
    for method in (
        "save_trade",
        "save_signal",
        "save_thinking",
        "update_status",
        "save_decision",
        "save_exit_plan",
        "save_chat_message",
    ):
        setattr(db, method, AsyncMock(return_value=True))
    db.get_agent_symbols = AsyncMock(return_value=[])
    db.set_agent_symbols = AsyncMock(return_value=True)
    db.initialize = AsyncMock()
    db.close = AsyncMock()
    return db


# =============================================================================
# Helper Functions
# =============================================================================

async def feed(strategy, prices, account=None, positions=None, clock=None, interval=0.0):
    """Run a strategy over a price series; returns the last signal."""
    account = account or make_account("1000")
    signal = None
    for price in prices:
        signal = await strategy.generate_signal(price, account, positions or [])
        if clock is not None and interval:
            clock.advance(interval)
    return signal


# =============================================================================
# Factory Fixtures
# =============================================================================

@pytest.fixture
def agent_config_factory():
    return make_agent_config


@pytest.fixture
def account_factory():
    return make_account


@pytest.fixture
def position_factory():
    return make_position


@pytest.fixture
def order_factory():
    return make_order


@pytest.fixture
def feed_prices():
    return feed

"""Integration tests for the per-agent trading runtime.

These tests drive AgentEngine through whole ticks:
- Strategy signal flow into order placement
- Protective orders and reconciliation
- Error containment inside a tick
- Telemetry written to a real in-memory database
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from arena.core.engine import AgentEngine
from arena.core.models import (
    AgentStatus,
    Candle,
    OrderType,
    PositionSide,
    StrategyType,
    ThinkingType,
    TimeInForce,
    TradeAction,
    TradeSignal,
    TradeStatus,
)
from arena.exchange.aster_client import AsterAPIError, ExchangeConnectionError, RetryPolicy
from arena.market.price_source import PriceSourceError
from arena.strategies import BuyAndHoldStrategy, MLScoringStrategy


def stub_strategy(signal):
    """Strategy double that always returns the given signal."""
    strategy = MagicMock()
    strategy.strategy_type = StrategyType.ARBITRAGE
    strategy.generate_signal = AsyncMock(return_value=signal)
    strategy.get_stats = MagicMock(return_value={})
    strategy.exchange_leverage = MagicMock(return_value=2)
    strategy.CANDLE_TIMEFRAME = None
    return strategy


def buy_signal(**overrides):
    values = dict(
        action=TradeAction.BUY,
        quantity=10,
        price=Decimal("2"),
        stop_loss=Decimal("1.9"),
        take_profit=Decimal("2.2"),
        confidence=0.8,
        reason="test setup",
    )
    values.update(overrides)
    return TradeSignal(**values)


@pytest.fixture
def make_engine(agent_config, mock_exchange, mock_price_source, mock_database):
    """Engine wired to the shared mocks around a given strategy."""
    def _make(strategy, database=None, config=None):
        return AgentEngine(
            config=config or agent_config,
            strategy=strategy,
            exchange=mock_exchange,
            price_source=mock_price_source,
            database=database or mock_database,
            scan_interval=0,
        )
    return _make


# =============================================================================
# Signal Flow Tests
# =============================================================================

class TestSignalFlow:
    """Test how signals turn into exchange calls."""

    @pytest.mark.asyncio
    async def test_hold_places_no_orders(self, make_engine, mock_exchange, mock_database):
        engine = make_engine(stub_strategy(TradeSignal.hold("Waiting")))

        signal = await engine.run_once()

        assert signal.is_hold
        mock_exchange.place_order.assert_not_awaited()
        mock_database.save_trade.assert_not_awaited()
        mock_database.save_signal.assert_awaited_once()
        assert mock_database.update_status.await_args.kwargs["message"] == "Last analysis: HOLD"

    @pytest.mark.asyncio
    async def test_tick_records_analysis(self, make_engine, mock_database):
        engine = make_engine(stub_strategy(TradeSignal.hold("Waiting")))

        await engine.run_once()

        kwargs = mock_database.save_thinking.await_args.kwargs
        assert kwargs["thinking_type"] == ThinkingType.ANALYSIS
        assert kwargs["content"] == "Analyzing ASTERUSDT at $2.0"
        assert kwargs["metadata"]["price_source"] == "binance"
        assert mock_database.save_signal.await_args.kwargs["price"] == Decimal("2.0")

    @pytest.mark.asyncio
    async def test_strategy_sees_independent_price(self, make_engine, mock_price_source):
        strategy = stub_strategy(TradeSignal.hold("Waiting"))
        engine = make_engine(strategy)

        await engine.run_once()

        mock_price_source.fetch_price.assert_awaited_once_with("ASTERUSDT")
        assert strategy.generate_signal.await_args.args[0] == Decimal("2.0")

    @pytest.mark.asyncio
    async def test_positions_from_single_account_fetch(
        self, make_engine, mock_exchange, account_factory, position_factory
    ):
        account = account_factory("1000", positions=[
            position_factory(amount="10"),
            position_factory(symbol="BTCUSDT", amount="0"),
        ])
        mock_exchange.get_account_info.return_value = account
        strategy = stub_strategy(TradeSignal.hold("Waiting"))
        engine = make_engine(strategy)

        await engine.run_once()

        mock_exchange.get_account_info.assert_awaited_once()
        positions = strategy.generate_signal.await_args.args[2]
        assert [(p.symbol, p.quantity) for p in positions] == [("ASTERUSDT", Decimal("10"))]

    @pytest.mark.asyncio
    async def test_buy_places_limit_and_protective_orders(self, make_engine, mock_exchange):
        engine = make_engine(stub_strategy(buy_signal()))

        await engine.run_once()

        calls = [c.kwargs for c in mock_exchange.place_order.await_args_list]
        assert len(calls) == 3
        assert calls[0]["side"] == TradeAction.BUY
        assert calls[0]["order_type"] == OrderType.LIMIT
        assert calls[0]["time_in_force"] == TimeInForce.GTC
        assert calls[0]["price"] == Decimal("2")
        assert calls[1]["order_type"] == OrderType.STOP_MARKET
        assert calls[1]["side"] == TradeAction.SELL
        assert calls[1]["stop_price"] == Decimal("1.9")
        assert calls[2]["order_type"] == OrderType.TAKE_PROFIT_MARKET
        assert calls[2]["stop_price"] == Decimal("2.2")
        assert engine.trades_placed == 1

    @pytest.mark.asyncio
    async def test_sell_protects_with_buy_orders(self, make_engine, mock_exchange, mock_database):
        signal = buy_signal(
            action=TradeAction.SELL, stop_loss=Decimal("2.1"), take_profit=Decimal("1.8")
        )
        engine = make_engine(stub_strategy(signal))

        await engine.run_once()

        calls = [c.kwargs for c in mock_exchange.place_order.await_args_list]
        assert calls[0]["side"] == TradeAction.SELL
        assert {c["side"] for c in calls[1:]} == {TradeAction.BUY}
        assert mock_database.save_exit_plan.await_args.kwargs["side"] == PositionSide.SHORT

    @pytest.mark.asyncio
    async def test_signal_without_targets_has_no_exit_plan(self, make_engine, mock_exchange, mock_database):
        engine = make_engine(stub_strategy(buy_signal(stop_loss=None, take_profit=None)))

        await engine.run_once()

        assert mock_exchange.place_order.await_count == 1
        mock_database.save_trade.assert_awaited_once()
        mock_database.save_exit_plan.assert_not_awaited()
        mock_database.save_chat_message.assert_not_awaited()


# =============================================================================
# Reconciliation Tests
# =============================================================================

class TestReconciliation:
    """Test recorded trades use exchange-reported fills."""

    @pytest.mark.asyncio
    async def test_trade_recorded_with_executed_values(
        self, make_engine, mock_exchange, mock_database, order_factory
    ):
        mock_exchange.get_order.return_value = order_factory(
            status="FILLED", executed_qty="8", cum_quote="16.4"
        )
        engine = make_engine(stub_strategy(buy_signal()))

        await engine.run_once()

        mock_exchange.get_order.assert_awaited_once_with("ASTERUSDT", "12345")
        trade = mock_database.save_trade.await_args.kwargs
        assert trade["quantity"] == Decimal("8")
        assert trade["executed_price"] == Decimal("2.05")
        assert trade["entry_price"] == Decimal("2")
        assert trade["status"] == TradeStatus.CLOSED
        assert trade["order_id"] == "12345"

        decision = mock_database.save_decision.await_args.kwargs
        assert decision["outcome"] == "pending"
        assert decision["market_context"]["reconciled"] is True

    @pytest.mark.asyncio
    async def test_reconcile_failure_falls_back_to_signal(self, make_engine, mock_exchange, mock_database):
        mock_exchange.get_order.side_effect = ExchangeConnectionError("timeout")
        engine = make_engine(stub_strategy(buy_signal()))

        await engine.run_once()

        trade = mock_database.save_trade.await_args.kwargs
        assert trade["executed_price"] == Decimal("2")
        assert trade["quantity"] == Decimal("10")
        assert trade["status"] == TradeStatus.OPEN
        assert mock_database.save_decision.await_args.kwargs["market_context"]["reconciled"] is False

    @pytest.mark.asyncio
    async def test_chat_announcement(self, make_engine, mock_database):
        engine = make_engine(stub_strategy(buy_signal()))

        await engine.run_once()

        message = mock_database.save_chat_message.await_args.kwargs
        assert message["message_type"] == "trade_signal"
        assert message["symbol"] == "ASTER"
        assert message["content"] == (
            "LONG 10 ASTER @ $2.00. Risk-Reward: TP $2.20 / SL $1.90 "
            "(80% confidence). Reason: test setup"
        )


# =============================================================================
# Failure Handling Tests
# =============================================================================

class TestFailureHandling:
    """Test that failures are recorded and never escape a tick."""

    @pytest.mark.asyncio
    async def test_failed_placement_records_error_trade(self, make_engine, mock_exchange, mock_database):
        mock_exchange.place_order.side_effect = AsterAPIError(400, -2019, "Margin is insufficient.")
        engine = make_engine(stub_strategy(buy_signal()))

        signal = await engine.run_once()

        assert signal.action == TradeAction.BUY
        assert mock_exchange.place_order.await_count == 1
        trade = mock_database.save_trade.await_args.kwargs
        assert trade["status"] == TradeStatus.ERROR
        assert "order_id" not in trade
        mock_database.save_exit_plan.assert_not_awaited()
        thinking = [c.kwargs for c in mock_database.save_thinking.await_args_list]
        assert thinking[-1]["thinking_type"] == ThinkingType.ERROR
        assert thinking[-1]["content"].startswith("Trade execution failed: Aster API Error (400)")
        assert engine.errors == 1

    @pytest.mark.asyncio
    async def test_protective_failure_still_records_trade(
        self, make_engine, mock_exchange, mock_database, order_factory
    ):
        mock_exchange.place_order.side_effect = [
            order_factory(),
            AsterAPIError(400, -2021, "Order would immediately trigger."),
            order_factory(order_id="3"),
        ]
        engine = make_engine(stub_strategy(buy_signal()))

        await engine.run_once()

        assert mock_exchange.place_order.await_count == 3
        mock_database.save_trade.assert_awaited_once()
        assert engine.errors == 0

    @pytest.mark.asyncio
    async def test_price_failure_records_error_status(self, make_engine, mock_price_source, mock_database):
        mock_price_source.fetch_price.side_effect = PriceSourceError("feed down")
        strategy = stub_strategy(TradeSignal.hold("Waiting"))
        engine = make_engine(strategy)

        signal = await engine.run_once()

        assert signal is None
        strategy.generate_signal.assert_not_awaited()
        status = mock_database.update_status.await_args.kwargs
        assert status["status"] == AgentStatus.ERROR
        assert status["message"] == "Error: feed down"
        thinking = mock_database.save_thinking.await_args.kwargs
        assert thinking["content"] == "Error in trading loop: feed down"
        assert engine.errors == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, make_engine, mock_exchange):
        mock_exchange.get_account_info.side_effect = asyncio.CancelledError()
        engine = make_engine(stub_strategy(TradeSignal.hold("Waiting")))

        with pytest.raises(asyncio.CancelledError):
            await engine.run_once()

    def test_retry_policy(self):
        assert AgentEngine.retry_policy == RetryPolicy.NEXT_TICK


# =============================================================================
# Loop Tests
# =============================================================================

class TestLoop:
    """Test the run loop lifecycle."""

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, agent_config, mock_exchange, mock_price_source, mock_database):
        waits = []
        engine = None

        async def fake_sleep(seconds):
            waits.append(seconds)
            if len(waits) == 3:
                engine.stop()

        engine = AgentEngine(
            config=agent_config,
            strategy=stub_strategy(TradeSignal.hold("Waiting")),
            exchange=mock_exchange,
            price_source=mock_price_source,
            database=mock_database,
            scan_interval=15,
            sleep=fake_sleep,
        )

        await engine.run()

        assert engine.ticks == 3
        assert waits == [15, 15, 15]
        assert not engine.is_running
        mock_exchange.sync_server_time.assert_awaited_once()
        first_status = mock_database.update_status.await_args_list[0].kwargs
        assert first_status["status"] == AgentStatus.RUNNING
        assert first_status["message"] == "Trading loop started"

    @pytest.mark.asyncio
    async def test_loop_continues_after_errors(
        self, agent_config, mock_exchange, mock_price_source, mock_database
    ):
        mock_exchange.get_account_info.side_effect = ExchangeConnectionError("reset")
        engine = None

        async def fake_sleep(seconds):
            if engine.ticks == 2:
                engine.stop()

        engine = AgentEngine(
            config=agent_config,
            strategy=stub_strategy(TradeSignal.hold("Waiting")),
            exchange=mock_exchange,
            price_source=mock_price_source,
            database=mock_database,
            sleep=fake_sleep,
        )

        await engine.run()

        assert engine.errors == 2
        assert engine.get_status()["ticks"] == 2

    @pytest.mark.asyncio
    async def test_prepare_sets_leverage_and_seeds_candles(
        self, agent_config_factory, make_engine, mock_exchange, mock_price_source, clock
    ):
        config = agent_config_factory(strategy=StrategyType.ML, agent_id="DeepSeek")
        strategy = MLScoringStrategy(config, clock=clock)
        mock_price_source.fetch_candles.return_value = [
            Candle(timestamp=1_700_000_000_000 + i * 60_000, open=2.0, high=2.1, low=1.9, close=2.0, volume=10)
            for i in range(3)
        ]
        engine = make_engine(strategy, config=config)

        await engine.prepare()

        mock_exchange.set_leverage.assert_awaited_once_with("ASTERUSDT", 2)
        mock_price_source.fetch_candles.assert_awaited_once_with("ASTERUSDT", timeframe="1m")
        assert len(strategy.candles) == 3

    @pytest.mark.asyncio
    async def test_prepare_failures_do_not_stop_the_agent(
        self, make_engine, mock_exchange, mock_price_source
    ):
        mock_exchange.set_leverage.side_effect = AsterAPIError(400, -4028, "Leverage is not valid")
        mock_price_source.fetch_candles.side_effect = PriceSourceError("feed down")
        strategy = stub_strategy(TradeSignal.hold("Waiting"))
        strategy.CANDLE_TIMEFRAME = "1m"
        engine = make_engine(strategy)

        await engine.prepare()

        strategy.seed_candles.assert_not_called()
        assert await engine.run_once() is not None


# =============================================================================
# Database Integration Tests
# =============================================================================

class TestWithDatabase:
    """Test a real strategy writing to an in-memory database."""

    @pytest.mark.asyncio
    async def test_buy_and_hold_tick(self, agent_config_factory, make_engine, test_database, mock_exchange):
        config = agent_config_factory(strategy=StrategyType.BUY_AND_HOLD, agent_id="BuyHold")
        engine = make_engine(BuyAndHoldStrategy(config), database=test_database, config=config)

        signal = await engine.run_once()
        assert signal.action == TradeAction.BUY
        assert signal.quantity == 50

        await engine.run_once()

        trades = await test_database.get_trades("BuyHold")
        assert len(trades) == 1
        assert trades[0].status == "closed"
        assert trades[0].side == "BUY"
        assert mock_exchange.place_order.await_count == 1

        signals = await test_database.get_signals("BuyHold")
        assert [s.action for s in signals] == ["HOLD", "BUY"]

        status = await test_database.get_status("BuyHold")
        assert status.status == "running"
        assert status.message == "Last analysis: HOLD"

        assert await test_database.get_exit_plans("BuyHold") == []
        notes = await test_database.get_thinking("BuyHold")
        assert all(n.thinking_type == "analysis" for n in notes)

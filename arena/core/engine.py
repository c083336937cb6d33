"""Per-agent trading runtime - one loop per agent and symbol."""
import asyncio
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from arena.core.config import runtime_config
from arena.core.models import (
    AgentConfig,
    AgentStatus,
    OrderResult,
    OrderType,
    PositionSide,
    ReconciledFill,
    ThinkingType,
    TimeInForce,
    TradeAction,
    TradeSignal,
    TradeStatus,
)
from arena.exchange.aster_client import AsterClient, ExchangeError, RetryPolicy, reconcile_order
from arena.market.price_source import PriceSource, PriceSourceError
from arena.storage.database import Database
from arena.strategies.base import BaseStrategy

logger = structlog.get_logger(__name__)


def _money(value: Optional[Decimal]) -> str:
    return f"${value:.2f}" if value is not None else "n/a"


class AgentEngine:
    """
    Trading loop for one agent on one symbol.

    Each tick:
    - Fetches account, positions and an independent market price
    - Records analysis telemetry and asks the strategy for a signal
    - Places the order and best-effort protective orders for BUY/SELL
    - Reconciles the fill and records trade, decision and exit plan
    - Updates the agent heartbeat

    Errors inside a tick are logged and recorded; the loop then waits one
    scan interval and tries again (RetryPolicy.NEXT_TICK).
    """

    retry_policy = RetryPolicy.NEXT_TICK

    def __init__(
        self,
        config: AgentConfig,
        strategy: BaseStrategy,
        exchange: AsterClient,
        price_source: PriceSource,
        database: Database,
        scan_interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.symbol = config.symbol
        self.strategy = strategy
        self.exchange = exchange
        self.price_source = price_source
        self.database = database
        self.scan_interval = (
            scan_interval if scan_interval is not None else runtime_config.scan_interval_seconds
        )
        self._sleep = sleep

        self._running = False
        self.ticks = 0
        self.errors = 0
        self.trades_placed = 0

        self.logger = logger.bind(agent_id=config.agent_id, symbol=config.symbol)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Run until stopped or cancelled."""
        self._running = True
        self.logger.info(
            "engine.starting",
            strategy=self.strategy.strategy_type.value,
            scan_interval=self.scan_interval,
        )
        await self.update_status(AgentStatus.RUNNING, "Trading loop started")
        await self.exchange.sync_server_time()
        await self.prepare()

        try:
            while self._running:
                await self.run_once()
                await self._sleep(self.scan_interval)
        finally:
            self._running = False
            self.logger.info("engine.stopped", ticks=self.ticks, errors=self.errors)

    async def prepare(self) -> None:
        """Set the symbol's leverage and preload candles. Both are best effort."""
        leverage = self.strategy.exchange_leverage()
        try:
            await self.exchange.set_leverage(self.symbol, leverage)
        except ExchangeError as e:
            self.logger.warning("engine.leverage_failed", leverage=leverage, error=str(e))

        timeframe = self.strategy.CANDLE_TIMEFRAME
        if not timeframe:
            return
        try:
            candles = await self.price_source.fetch_candles(self.symbol, timeframe=timeframe)
        except PriceSourceError as e:
            self.logger.warning("engine.candles_failed", timeframe=timeframe, error=str(e))
            return
        self.strategy.seed_candles(candles)

    def stop(self) -> None:
        """Stop after the current tick."""
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> Optional[TradeSignal]:
        """Execute one tick. Returns the signal, or None if the tick failed."""
        self.ticks += 1
        try:
            return await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors += 1
            self.logger.error("engine.tick_error", error=str(e), exc_info=True)
            await self.log_thinking(ThinkingType.ERROR, f"Error in trading loop: {e}")
            await self.update_status(AgentStatus.ERROR, f"Error: {e}")
            return None

    async def _tick(self) -> TradeSignal:
        account = await self.exchange.get_account_info()
        price = await self.price_source.fetch_price(self.symbol)
        positions = account.open_positions

        await self.log_thinking(
            ThinkingType.ANALYSIS,
            f"Analyzing {self.symbol} at ${price}",
            {
                "price": price,
                "equity": account.equity,
                "open_positions": len(positions),
                "price_source": self.price_source.exchange_id,
            },
        )

        signal = await self.strategy.generate_signal(price, account, positions)

        await self.database.save_signal(
            agent_id=self.config.agent_id,
            symbol=self.symbol,
            action=signal.action,
            confidence=signal.confidence,
            reason=signal.reason,
            price=price,
        )
        self.logger.info(
            "engine.signal",
            action=signal.action.value,
            quantity=signal.quantity,
            confidence=signal.confidence,
            reason=signal.reason,
        )

        if not signal.is_hold:
            await self.execute(signal)

        await self.update_status(AgentStatus.RUNNING, f"Last analysis: {signal.action.value}")
        return signal

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, signal: TradeSignal) -> Optional[OrderResult]:
        """Place the primary order and its protective orders, then record the trade.

        A failed primary placement is recorded as an error trade.
        """
        await self.update_status(AgentStatus.RUNNING, f"Executing {signal.action.value} trade")

        order_type = OrderType.LIMIT if signal.price is not None else OrderType.MARKET
        try:
            order = await self.exchange.place_order(
                symbol=self.symbol,
                side=signal.action,
                order_type=order_type,
                quantity=signal.quantity,
                price=signal.price,
                time_in_force=TimeInForce.GTC if order_type == OrderType.LIMIT else None,
            )
        except (ExchangeError, ValueError) as e:
            self.errors += 1
            self.logger.error("engine.order_failed", action=signal.action.value, error=str(e))
            await self.log_thinking(ThinkingType.ERROR, f"Trade execution failed: {e}")
            await self.database.save_trade(
                agent_id=self.config.agent_id,
                symbol=self.symbol,
                side=signal.action,
                quantity=Decimal(signal.quantity),
                status=TradeStatus.ERROR,
                entry_price=signal.price,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
                reason=signal.reason,
                confidence=signal.confidence,
            )
            return None

        self.trades_placed += 1
        await self.place_protective_orders(signal)
        await self.log_trade(signal, order.order_id)
        return order

    async def place_protective_orders(self, signal: TradeSignal) -> None:
        """Stop-loss and take-profit orders on the opposite side. Failures are logged only."""
        exit_side = TradeAction.SELL if signal.action == TradeAction.BUY else TradeAction.BUY
        protective = (
            (OrderType.STOP_MARKET, signal.stop_loss),
            (OrderType.TAKE_PROFIT_MARKET, signal.take_profit),
        )
        for order_type, stop_price in protective:
            if stop_price is None:
                continue
            try:
                await self.exchange.place_order(
                    symbol=self.symbol,
                    side=exit_side,
                    order_type=order_type,
                    quantity=signal.quantity,
                    stop_price=stop_price,
                )
            except (ExchangeError, ValueError) as e:
                self.logger.warning(
                    "engine.protective_order_failed",
                    order_type=order_type.value,
                    stop_price=str(stop_price),
                    error=str(e),
                )

    async def reconcile(self, signal: TradeSignal, order_id: Optional[str]) -> ReconciledFill:
        """Authoritative fill for an order, or the signal's values if the lookup fails."""
        fallback = ReconciledFill(
            order_id=order_id,
            executed_price=signal.price or Decimal("0"),
            executed_quantity=Decimal(signal.quantity),
            status=TradeStatus.OPEN,
            reconciled=False,
        )
        if not order_id:
            return fallback

        try:
            order = await self.exchange.get_order(self.symbol, order_id)
        except ExchangeError as e:
            self.logger.warning("engine.reconcile_failed", order_id=order_id, error=str(e))
            return fallback

        fill = reconcile_order(order, fallback_price=signal.price)
        self.logger.info(
            "engine.order_reconciled",
            order_id=order_id,
            intended_quantity=signal.quantity,
            intended_price=str(signal.price),
            executed_quantity=str(fill.executed_quantity),
            executed_price=str(fill.executed_price),
            exchange_status=order.status,
            status=fill.status.value,
        )
        return fill

    async def log_trade(self, signal: TradeSignal, order_id: Optional[str]) -> ReconciledFill:
        """Record the reconciled trade, the decision and any exit plan."""
        fill = await self.reconcile(signal, order_id)

        await self.database.save_trade(
            agent_id=self.config.agent_id,
            symbol=self.symbol,
            side=signal.action,
            quantity=fill.executed_quantity,
            status=fill.status,
            entry_price=signal.price,
            executed_price=fill.executed_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            reason=signal.reason,
            confidence=signal.confidence,
            order_id=order_id,
        )
        await self.database.save_decision(
            agent_id=self.config.agent_id,
            symbol=self.symbol,
            decision=signal.action,
            reasoning=signal.reason,
            confidence=signal.confidence,
            market_context={
                "intended_price": signal.price,
                "executed_price": fill.executed_price,
                "quantity": fill.executed_quantity,
                "reconciled": fill.reconciled,
            },
            outcome="pending",
        )

        if signal.has_exit_plan:
            await self.announce_exit_plan(signal, fill)
        return fill

    async def announce_exit_plan(self, signal: TradeSignal, fill: ReconciledFill) -> None:
        side = PositionSide.LONG if signal.action == TradeAction.BUY else PositionSide.SHORT
        await self.database.save_exit_plan(
            agent_id=self.config.agent_id,
            symbol=self.symbol,
            side=side,
            position_size=fill.executed_quantity,
            entry_price=fill.executed_price,
            take_profit=signal.take_profit,
            stop_loss=signal.stop_loss,
            confidence=signal.confidence,
            reasoning=signal.reason,
        )

        base = self.config.base_asset
        content = (
            f"{side.value} {fill.executed_quantity} {base} @ {_money(fill.executed_price)}. "
            f"Risk-Reward: TP {_money(signal.take_profit)} / SL {_money(signal.stop_loss)} "
            f"({signal.confidence * 100:.0f}% confidence). Reason: {signal.reason}"
        )
        await self.database.save_chat_message(
            agent_id=self.config.agent_id,
            agent_name=self.config.name,
            message_type="trade_signal",
            content=content,
            symbol=base,
            confidence=signal.confidence,
        )

    # =========================================================================
    # Telemetry
    # =========================================================================

    async def log_thinking(
        self,
        thinking_type: ThinkingType,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.database.save_thinking(
            agent_id=self.config.agent_id,
            thinking_type=thinking_type,
            content=content,
            metadata=metadata,
        )

    async def update_status(self, status: AgentStatus, message: str) -> None:
        await self.database.update_status(
            agent_id=self.config.agent_id,
            name=self.config.name,
            status=status,
            message=message,
        )

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        return {
            'agent_id': self.config.agent_id,
            'symbol': self.symbol,
            'running': self._running,
            'ticks': self.ticks,
            'errors': self.errors,
            'trades_placed': self.trades_placed,
            'strategy': self.strategy.get_stats(),
        }

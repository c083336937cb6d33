"""
Arena Trading Engine - Main Entry Point

Runs the competing trading agents against the Aster futures API, one task
per agent and symbol.

Usage:
    # Check configuration
    python main.py --check

    # Initialize the telemetry database
    python main.py --init-db

    # Run all agents
    python main.py

    # Run agents 1 and 4 only
    python main.py --agent 1 --agent 4

    # Run a single tick per agent and exit
    python main.py --once

    # Cancel open orders and close positions for the configured agents
    python main.py --cleanup

    # Trade ETH and BTC with agent 2
    python main.py --agent 2 --set-symbols ETHUSDT BTCUSDT
"""

import argparse
import asyncio
import signal
import sys
from typing import Dict, List, Optional

import structlog

from arena.core.config import (
    AGENT_SLOT_DEFAULTS,
    MAX_AGENT_SLOTS,
    ConfigurationError,
    database_config,
    exchange_config,
    load_agent_configs,
    load_agent_slot,
    price_source_config,
    resolve_fallback_symbols,
    runtime_config,
)
from arena.core.engine import AgentEngine
from arena.core.models import AgentConfig, PositionSide
from arena.exchange.aster_client import AsterClient, ExchangeError
from arena.market.price_source import PriceSource
from arena.storage.database import Database
from arena.strategies import create_strategy
from arena.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)

ALL_SLOTS = list(range(1, MAX_AGENT_SLOTS + 1))


def directory_id(slot: int) -> str:
    """Key of a slot's row in the symbol directory."""
    settings = load_agent_slot(slot)
    return settings.model_id or AGENT_SLOT_DEFAULTS[slot][0].lower()


class ArenaBot:
    """
    Launcher for the agent tasks.

    Resolves each agent's symbols, builds one AgentEngine per agent and
    symbol, runs them concurrently and shuts everything down on SIGINT or
    SIGTERM.
    """

    def __init__(self, slots: Optional[List[int]] = None, database: Optional[Database] = None):
        self.slots = slots or ALL_SLOTS
        self.database = database

        # Components
        self.engines: List[AgentEngine] = []
        self.clients: List[AsterClient] = []
        self.price_sources: List[PriceSource] = []

        # State
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def resolve_symbols(self, slot: int) -> List[str]:
        """Symbols for a slot: the symbol directory first, then the environment."""
        settings = load_agent_slot(slot)
        lookup_id = directory_id(slot)

        symbols = await self.database.get_agent_symbols(lookup_id) if self.database else []
        if symbols:
            logger.info("bot.symbols_from_directory", slot=slot, symbols=symbols)
            return symbols

        symbols = resolve_fallback_symbols(settings)
        logger.info("bot.symbols_from_environment", slot=slot, symbols=symbols)
        return symbols

    async def load_configs(self) -> List[AgentConfig]:
        """
        Build every agent/symbol configuration.

        Raises:
            ConfigurationError: if any selected slot is missing credentials
        """
        configs: List[AgentConfig] = []
        for slot in self.slots:
            symbols = await self.resolve_symbols(slot)
            configs.extend(load_agent_configs(slot, symbols))
        return configs

    async def initialize(self):
        """Initialize the database and one engine per agent and symbol."""
        logger.info("bot.initializing", slots=self.slots)

        if self.database is None:
            self.database = Database()
        await self.database.initialize()
        logger.info("bot.database_initialized")

        configs = await self.load_configs()

        for config in configs:
            client = AsterClient.from_agent(config)
            price_source = PriceSource()
            strategy = create_strategy(config.strategy, config)
            engine = AgentEngine(
                config=config,
                strategy=strategy,
                exchange=client,
                price_source=price_source,
                database=self.database,
                scan_interval=runtime_config.scan_interval_seconds,
            )
            self.clients.append(client)
            self.price_sources.append(price_source)
            self.engines.append(engine)
            logger.info(
                "bot.agent_loaded",
                agent_id=config.agent_id,
                symbol=config.symbol,
                strategy=config.strategy.value,
            )

        self._initialized = True
        logger.info("bot.initialized", agents=len(self.engines))

    async def run(self):
        """Run every agent until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        logger.info("bot.starting", agents=len(self.engines), api_url=exchange_config.api_url)

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        self._tasks = [
            asyncio.create_task(engine.run(), name=f"{engine.config.agent_id}:{engine.symbol}")
            for engine in self.engines
        ]
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for engine, result in zip(self.engines, results):
                if isinstance(result, Exception):
                    logger.error(
                        "bot.agent_failed",
                        agent_id=engine.config.agent_id,
                        symbol=engine.symbol,
                        error=str(result),
                    )
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    async def run_once(self) -> Dict[str, Optional[str]]:
        """One tick per agent, concurrently. Returns the action taken per task."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        try:
            signals = await asyncio.gather(*(engine.run_once() for engine in self.engines))
        finally:
            await self.shutdown()

        return {
            f"{engine.config.agent_id}:{engine.symbol}": (sig.action.value if sig else None)
            for engine, sig in zip(self.engines, signals)
        }

    async def cleanup(self):
        """Cancel open orders and close LONG and SHORT positions for every agent symbol."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        try:
            for engine in self.engines:
                await self._cleanup_agent(engine.exchange, engine.symbol, engine.config.agent_id)
        finally:
            await self.shutdown()

    async def _cleanup_agent(self, client: AsterClient, symbol: str, agent_id: str):
        log = logger.bind(agent_id=agent_id, symbol=symbol)
        try:
            open_orders = await client.get_open_orders(symbol)
        except ExchangeError as e:
            log.error("bot.cleanup_failed", error=str(e))
            return

        for order in open_orders:
            try:
                await client.cancel_order(symbol, order.order_id)
            except ExchangeError as e:
                log.warning("bot.cancel_failed", order_id=order.order_id, error=str(e))

        for side in (PositionSide.LONG, PositionSide.SHORT):
            try:
                await client.close_position(symbol, side)
            except ExchangeError as e:
                log.info("bot.no_position_to_close", side=side.value, error=str(e))

        log.info("bot.cleanup_complete", cancelled=len(open_orders))

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("bot.shutting_down")

        for engine in self.engines:
            engine.stop()
        for client in self.clients:
            await client.close()
        for price_source in self.price_sources:
            await price_source.close()
        if self.database:
            await self.database.close()

        logger.info("bot.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("bot.shutdown_signal_received")
        self._shutdown_event.set()
        for task in self._tasks:
            task.cancel()


def print_banner():
    """Print the startup banner."""
    banner = """
==================================================================
                  ARENA TRADING ENGINE v1.0.0
       Autonomous strategy agents on the Aster futures API
==================================================================
"""
    print(banner)


def check_configuration(slots: List[int]) -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    issues = []
    warnings = []
    agents = []

    for slot in slots:
        settings = load_agent_slot(slot)
        agent_id, name, default_strategy, _ = AGENT_SLOT_DEFAULTS[slot]
        missing = settings.missing_fields(slot)
        if missing:
            issues.append(f"{name}: missing {', '.join(missing)}")
        if not settings.symbol_list:
            warnings.append(f"{name}: no AGENT_{slot}_SYMBOLS set, using directory or default")
        agents.append({
            "slot": slot,
            "agent_id": agent_id,
            "strategy": (settings.strategy or default_strategy).value,
            "symbols": resolve_fallback_symbols(settings),
        })

    return {
        "valid": len(issues) == 0,
        "issues": issues,
        "warnings": warnings,
        "agents": agents,
        "api_url": exchange_config.api_url,
        "price_source": price_source_config.exchange_id,
        "database_url": database_config.database_url,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Arena Trading Engine - autonomous strategy agents"
    )
    parser.add_argument(
        "--agent",
        type=int,
        action="append",
        choices=ALL_SLOTS,
        metavar="N",
        help=f"Run agent slot N (1-{MAX_AGENT_SLOTS}); repeatable (default: all)",
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single tick per agent and exit"
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Cancel open orders and close positions for the selected agents",
    )
    parser.add_argument(
        "--set-symbols",
        nargs="+",
        metavar="SYMBOL",
        help="Store the trading symbols for the selected agent in the symbol directory and exit",
    )
    return parser


async def set_symbols(slot: int, symbols: List[str], database: Optional[Database] = None) -> bool:
    """Write a slot's symbols to the directory read at startup."""
    db = database or Database()
    await db.initialize()
    try:
        stored = await db.set_agent_symbols(directory_id(slot), symbols)
    finally:
        await db.close()
    logger.info("bot.symbols_stored", slot=slot, symbols=symbols, stored=stored)
    return stored


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    slots = sorted(set(args.agent)) if args.agent else ALL_SLOTS

    # Setup logging
    setup_logging()

    if args.check:
        config_check = check_configuration(slots)
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        for agent in config_check["agents"]:
            print(
                f"  Agent {agent['slot']} ({agent['agent_id']}): "
                f"{agent['strategy']} on {', '.join(agent['symbols'])}"
            )
        for warning in config_check["warnings"]:
            print(f"  ! {warning}")
        if config_check["valid"]:
            print("\n✓ Configuration is valid")
            return 0
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        return 1

    if args.set_symbols:
        if len(slots) != 1:
            print("✗ --set-symbols needs exactly one --agent")
            return 1
        if not await set_symbols(slots[0], args.set_symbols):
            print("✗ Could not store symbols")
            return 1
        print(f"✓ Agent {slots[0]} symbols: {', '.join(s.upper() for s in args.set_symbols)}")
        return 0

    if args.init_db:
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return 0

    print_banner()

    bot = ArenaBot(slots=slots)
    try:
        await bot.initialize()
    except ConfigurationError as e:
        logger.error("bot.configuration_error", error=str(e))
        print(f"\n✗ Configuration error: {e}")
        await bot.shutdown()
        return 1

    if args.cleanup:
        await bot.cleanup()
        return 0

    if args.once:
        results = await bot.run_once()
        for task_name, action in results.items():
            print(f"  {task_name}: {action or 'error'}")
        return 0

    await bot.run()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

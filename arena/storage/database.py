"""Telemetry storage for trading agents.

The engine writes here and never reads back for decisions. Every save is best
effort: database failures are logged and reported as ``False`` so a broken
sink can never stop a trading loop.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import JSON, Column, DateTime, Float, Integer, Numeric, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from arena.core.config import database_config
from arena.core.models import utc_now

logger = structlog.get_logger(__name__)

Base = declarative_base()


def _jsonable(value: Any) -> Any:
    """Make telemetry context JSON-serialisable."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# =============================================================================
# Tables
# =============================================================================

class AgentTradeModel(Base):
    """Executed (or failed) trade, after reconciliation."""
    __tablename__ = 'agent_trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=True)
    executed_price = Column(Numeric(36, 18), nullable=True)
    stop_loss = Column(Numeric(36, 18), nullable=True)
    take_profit = Column(Numeric(36, 18), nullable=True)
    reason = Column(Text, default="")
    confidence = Column(Float, default=0.0)
    status = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    trade_timestamp = Column(DateTime(timezone=True), default=utc_now)


class AgentSignalModel(Base):
    """Every signal an agent produced, HOLD included."""
    __tablename__ = 'agent_signals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)
    confidence = Column(Float, default=0.0)
    reason = Column(Text, default="")
    price = Column(Numeric(36, 18), nullable=True)
    signal_timestamp = Column(DateTime(timezone=True), default=utc_now)


class AgentThinkingModel(Base):
    """Free-form analysis notes."""
    __tablename__ = 'agent_thinking'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    thinking_type = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, default=dict)
    thinking_timestamp = Column(DateTime(timezone=True), default=utc_now)


class AgentStatusModel(Base):
    """Latest heartbeat per agent (one row per agent)."""
    __tablename__ = 'agent_status'

    agent_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    last_heartbeat = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)


class AgentDecisionModel(Base):
    """Decision branch taken for an executed trade."""
    __tablename__ = 'agent_decisions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    decision = Column(String, nullable=False)
    reasoning = Column(Text, default="")
    confidence = Column(Float, default=0.0)
    outcome = Column(String, nullable=True)
    market_context = Column(JSON, default=dict)
    decision_timestamp = Column(DateTime(timezone=True), default=utc_now)


class ExitPlanModel(Base):
    """Take-profit / stop-loss plan attached to a position."""
    __tablename__ = 'exit_plans'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    position_size = Column(Numeric(36, 18), nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    take_profit = Column(Numeric(36, 18), default=0)
    stop_loss = Column(Numeric(36, 18), default=0)
    confidence = Column(Float, default=0.0)
    reasoning = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now)


class AgentChatMessageModel(Base):
    """Human-readable trade announcements."""
    __tablename__ = 'agent_chat_messages'

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String, nullable=False, index=True)
    agent_name = Column(String, nullable=False)
    message_type = Column(String, nullable=False)
    symbol = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    confidence = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utc_now)


class AgentTradingSymbolModel(Base):
    """Symbols an agent is configured to trade."""
    __tablename__ = 'agent_trading_symbols'

    agent_id = Column(String, primary_key=True)
    symbols = Column(JSON, default=list)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


# =============================================================================
# Database
# =============================================================================

class Database:
    """Async telemetry sink shared by all agent tasks."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.database_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables, and the SQLite file's directory if needed."""
        db_file = self.engine.url.database
        if self.engine.url.get_backend_name() == "sqlite" and db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.engine.url.render_as_string(hide_password=True))

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    async def _add(self, operation: str, record: Base) -> bool:
        try:
            async with self.session_maker() as session:
                session.add(record)
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"database.{operation}_failed", error=str(e))
            return False

    # Trade operations
    async def save_trade(
        self,
        agent_id: str,
        symbol: str,
        side: Any,
        quantity: Decimal,
        status: Any,
        entry_price: Optional[Decimal] = None,
        executed_price: Optional[Decimal] = None,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
        reason: str = "",
        confidence: float = 0.0,
        order_id: Optional[str] = None,
        trade_timestamp: Optional[datetime] = None,
    ) -> bool:
        """Record a trade."""
        return await self._add("save_trade", AgentTradeModel(
            agent_id=agent_id,
            symbol=symbol,
            side=_enum_value(side),
            quantity=quantity,
            entry_price=entry_price,
            executed_price=executed_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            reason=reason,
            confidence=confidence,
            status=_enum_value(status),
            order_id=order_id,
            trade_timestamp=trade_timestamp or utc_now(),
        ))

    async def save_signal(
        self,
        agent_id: str,
        symbol: str,
        action: Any,
        confidence: float,
        reason: str,
        price: Optional[Decimal] = None,
    ) -> bool:
        return await self._add("save_signal", AgentSignalModel(
            agent_id=agent_id,
            symbol=symbol,
            action=_enum_value(action),
            confidence=confidence,
            reason=reason,
            price=price,
            signal_timestamp=utc_now(),
        ))

    async def save_thinking(
        self,
        agent_id: str,
        thinking_type: Any,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return await self._add("save_thinking", AgentThinkingModel(
            agent_id=agent_id,
            thinking_type=_enum_value(thinking_type),
            content=content,
            metadata_json=_jsonable(metadata or {}),
            thinking_timestamp=utc_now(),
        ))

    async def update_status(
        self,
        agent_id: str,
        name: str,
        status: Any,
        message: Optional[str] = None,
    ) -> bool:
        """Insert or replace the agent's heartbeat row."""
        now = utc_now()
        try:
            async with self.session_maker() as session:
                record = await session.get(AgentStatusModel, agent_id)
                if record is None:
                    record = AgentStatusModel(agent_id=agent_id)
                    session.add(record)
                record.name = name
                record.status = _enum_value(status)
                record.message = message
                record.last_heartbeat = now
                record.updated_at = now
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error("database.update_status_failed", agent_id=agent_id, error=str(e))
            return False

    async def save_decision(
        self,
        agent_id: str,
        symbol: str,
        decision: Any,
        reasoning: str,
        confidence: float = 0.0,
        market_context: Optional[Dict[str, Any]] = None,
        outcome: Optional[str] = None,
    ) -> bool:
        return await self._add("save_decision", AgentDecisionModel(
            agent_id=agent_id,
            symbol=symbol,
            decision=_enum_value(decision),
            reasoning=reasoning,
            confidence=confidence,
            outcome=outcome,
            market_context=_jsonable(market_context or {}),
            decision_timestamp=utc_now(),
        ))

    async def save_exit_plan(
        self,
        agent_id: str,
        symbol: str,
        side: Any,
        position_size: Decimal,
        entry_price: Decimal,
        take_profit: Optional[Decimal],
        stop_loss: Optional[Decimal],
        confidence: float,
        reasoning: str,
    ) -> bool:
        return await self._add("save_exit_plan", ExitPlanModel(
            agent_id=agent_id,
            symbol=symbol,
            side=_enum_value(side),
            position_size=position_size,
            entry_price=entry_price,
            take_profit=take_profit or Decimal("0"),
            stop_loss=stop_loss or Decimal("0"),
            confidence=confidence,
            reasoning=reasoning,
            created_at=utc_now(),
        ))

    async def save_chat_message(
        self,
        agent_id: str,
        agent_name: str,
        message_type: str,
        content: str,
        symbol: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> bool:
        return await self._add("save_chat_message", AgentChatMessageModel(
            agent_id=agent_id,
            agent_name=agent_name,
            message_type=message_type,
            symbol=symbol,
            content=content,
            confidence=confidence,
            timestamp=utc_now(),
        ))

    # Symbol directory
    async def get_agent_symbols(self, agent_id: str) -> List[str]:
        """Configured symbols for an agent; empty if none or on failure."""
        try:
            async with self.session_maker() as session:
                record = await session.get(AgentTradingSymbolModel, agent_id)
        except SQLAlchemyError as e:
            logger.warning("database.get_agent_symbols_failed", agent_id=agent_id, error=str(e))
            return []

        if record is None or not isinstance(record.symbols, list):
            return []
        return [str(s).strip().upper() for s in record.symbols if str(s).strip()]

    async def set_agent_symbols(self, agent_id: str, symbols: Iterable[str]) -> bool:
        try:
            async with self.session_maker() as session:
                record = await session.get(AgentTradingSymbolModel, agent_id)
                if record is None:
                    record = AgentTradingSymbolModel(agent_id=agent_id)
                    session.add(record)
                record.symbols = [s.upper() for s in symbols]
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error("database.set_agent_symbols_failed", agent_id=agent_id, error=str(e))
            return False

    # Read helpers
    async def _fetch(self, model, agent_id: Optional[str], order_column, limit: int) -> List:
        async with self.session_maker() as session:
            query = select(model).order_by(order_column.desc(), model.id.desc()).limit(limit)
            if agent_id:
                query = query.where(model.agent_id == agent_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_trades(self, agent_id: Optional[str] = None, limit: int = 100) -> List[AgentTradeModel]:
        return await self._fetch(AgentTradeModel, agent_id, AgentTradeModel.trade_timestamp, limit)

    async def get_signals(self, agent_id: Optional[str] = None, limit: int = 100) -> List[AgentSignalModel]:
        return await self._fetch(AgentSignalModel, agent_id, AgentSignalModel.signal_timestamp, limit)

    async def get_thinking(self, agent_id: Optional[str] = None, limit: int = 100) -> List[AgentThinkingModel]:
        return await self._fetch(AgentThinkingModel, agent_id, AgentThinkingModel.thinking_timestamp, limit)

    async def get_decisions(self, agent_id: Optional[str] = None, limit: int = 100) -> List[AgentDecisionModel]:
        return await self._fetch(AgentDecisionModel, agent_id, AgentDecisionModel.decision_timestamp, limit)

    async def get_exit_plans(self, agent_id: Optional[str] = None, limit: int = 100) -> List[ExitPlanModel]:
        return await self._fetch(ExitPlanModel, agent_id, ExitPlanModel.created_at, limit)

    async def get_chat_messages(self, agent_id: Optional[str] = None, limit: int = 100) -> List[AgentChatMessageModel]:
        return await self._fetch(AgentChatMessageModel, agent_id, AgentChatMessageModel.timestamp, limit)

    async def get_status(self, agent_id: str) -> Optional[AgentStatusModel]:
        async with self.session_maker() as session:
            return await session.get(AgentStatusModel, agent_id)

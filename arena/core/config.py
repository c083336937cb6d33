"""Configuration management for the Arena trading engine."""

from typing import Dict, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from arena.core.models import AgentConfig, StrategyType

DEFAULT_SYMBOL = "ASTERUSDT"
MAX_AGENT_SLOTS = 5


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


# =============================================================================
# Exchange API Configuration
# =============================================================================


class ExchangeConfig(BaseSettings):
    """Aster futures API configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    api_url: str = Field(
        default="https://fapi.asterdex.com", validation_alias="ASTER_API_URL"
    )
    api_prefix: str = Field(default="/fapi/v1", validation_alias="ASTER_API_PREFIX")
    # 10 seconds to absorb clock skew between us and the exchange
    recv_window: int = Field(default=10000, validation_alias="ASTER_RECV_WINDOW")
    timeout: float = Field(default=10.0, validation_alias="ASTER_TIMEOUT")

    @field_validator("recv_window")
    @classmethod
    def validate_recv_window(cls, v):
        """Exchange rejects windows above 60s."""
        if v <= 0 or v > 60000:
            raise ValueError("recv_window must be between 1 and 60000 ms")
        return v


# =============================================================================
# Price Source Configuration
# =============================================================================


class PriceSourceConfig(BaseSettings):
    """Independent (unauthenticated) price source configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    exchange_id: str = Field(default="binance", validation_alias="PRICE_SOURCE_EXCHANGE")
    cache_ttl_seconds: float = Field(default=5.0, validation_alias="PRICE_CACHE_TTL")
    timeout_ms: int = Field(default=5000, validation_alias="PRICE_SOURCE_TIMEOUT_MS")


# =============================================================================
# Runtime Configuration
# =============================================================================


class RuntimeConfig(BaseSettings):
    """Agent loop settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # 15s keeps every agent well under the exchange's REST rate limits
    scan_interval_seconds: float = Field(default=15.0, validation_alias="SCAN_INTERVAL")
    trading_symbol: Optional[str] = Field(default=None, validation_alias="TRADING_SYMBOL")
    default_symbol: str = Field(default=DEFAULT_SYMBOL, validation_alias="DEFAULT_SYMBOL")

    @field_validator("scan_interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        """Scan interval must be positive."""
        if v <= 0:
            raise ValueError("Scan interval must be positive")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Telemetry database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/arena.db", validation_alias="TELEMETRY_DATABASE_URL"
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/arena.log", validation_alias="LOG_FILE")


# =============================================================================
# Agent Slots
# =============================================================================

# Slot number -> (agent id, display name, default strategy, model label)
AGENT_SLOT_DEFAULTS: Dict[int, tuple] = {
    1: ("Claude", "Claude Arbitrage Agent", StrategyType.ARBITRAGE, "claude-3-5-sonnet"),
    2: ("GPT", "GPT-4 Momentum Agent", StrategyType.MOMENTUM, "gpt-4o"),
    3: ("Gemini", "Gemini Grid Agent", StrategyType.GRID, "gemini-1.5-pro"),
    4: ("DeepSeek", "DeepSeek ML Agent", StrategyType.ML, "deepseek-coder"),
    5: ("BuyHold", "Buy & Hold Agent", StrategyType.BUY_AND_HOLD, "gemini-1.5-pro"),
}

REQUIRED_AGENT_FIELDS = ("signer", "private_key", "address", "api_key", "api_secret")


class AgentSlotSettings(BaseSettings):
    """Credentials and overrides for one agent slot.

    Instantiate with ``_env_prefix="AGENT_<N>_"`` so each slot reads its own
    variables (``AGENT_1_SIGNER``, ``AGENT_1_API_KEY``, ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", protected_namespaces=()
    )

    signer: str = ""
    private_key: str = ""
    address: str = ""
    api_key: str = ""
    api_secret: str = ""
    model_id: str = ""
    strategy: Optional[StrategyType] = None
    symbols: str = ""

    @property
    def symbol_list(self) -> List[str]:
        """Parse comma-separated symbols into a list."""
        return [s.strip().upper() for s in self.symbols.split(",") if s.strip()]

    def missing_fields(self, slot: int) -> List[str]:
        """Names of required environment variables that are unset."""
        return [
            f"AGENT_{slot}_{name.upper()}"
            for name in REQUIRED_AGENT_FIELDS
            if not getattr(self, name)
        ]


def load_agent_slot(slot: int) -> AgentSlotSettings:
    """Read the settings for one agent slot from the environment."""
    if slot not in AGENT_SLOT_DEFAULTS:
        raise ConfigurationError(f"Unknown agent slot: {slot}")
    return AgentSlotSettings(_env_prefix=f"AGENT_{slot}_")


def build_agent_config(slot: int, symbol: str, settings: Optional[AgentSlotSettings] = None) -> AgentConfig:
    """Build an immutable AgentConfig for one slot and symbol.

    Raises:
        ConfigurationError: if any credential is missing
    """
    settings = settings or load_agent_slot(slot)
    missing = settings.missing_fields(slot)
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    agent_id, name, default_strategy, model = AGENT_SLOT_DEFAULTS[slot]
    return AgentConfig(
        agent_id=agent_id,
        name=f"{name} ({symbol})",
        signer_address=settings.signer,
        agent_private_key=settings.private_key,
        user_address=settings.address,
        api_key=settings.api_key,
        api_secret=settings.api_secret,
        symbol=symbol,
        strategy=settings.strategy or default_strategy,
        model=model,
        model_id=settings.model_id or agent_id.lower(),
    )


def resolve_fallback_symbols(settings: AgentSlotSettings) -> List[str]:
    """Symbols to use when the symbol directory has nothing for an agent.

    Order: the slot's own ``AGENT_<N>_SYMBOLS``, then ``TRADING_SYMBOL``,
    then the built-in default.
    """
    if settings.symbol_list:
        return settings.symbol_list
    if runtime_config.trading_symbol:
        return [runtime_config.trading_symbol.strip().upper()]
    return [runtime_config.default_symbol]


def load_agent_configs(slot: int, symbols: Optional[List[str]] = None) -> List[AgentConfig]:
    """One AgentConfig per symbol for an agent slot.

    Without explicit symbols the environment fallbacks are used.

    Raises:
        ConfigurationError: unknown slot or missing credentials
    """
    settings = load_agent_slot(slot)
    symbols = symbols or resolve_fallback_symbols(settings)
    return [build_agent_config(slot, symbol, settings) for symbol in symbols]


# =============================================================================
# Global Configuration Instances
# =============================================================================

exchange_config = ExchangeConfig()
price_source_config = PriceSourceConfig()
runtime_config = RuntimeConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()


__all__ = [
    "ConfigurationError",
    "DEFAULT_SYMBOL",
    "MAX_AGENT_SLOTS",
    "AGENT_SLOT_DEFAULTS",
    "ExchangeConfig",
    "PriceSourceConfig",
    "RuntimeConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "AgentSlotSettings",
    "load_agent_slot",
    "build_agent_config",
    "resolve_fallback_symbols",
    "load_agent_configs",
    "exchange_config",
    "price_source_config",
    "runtime_config",
    "database_config",
    "logging_config",
]

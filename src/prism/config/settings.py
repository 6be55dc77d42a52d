"""Runtime settings for the trading loop.

Three pydantic models cover the three moving parts: ``TradingConfig``
(symbols, schedule, risk limits), ``ExchangeConfig`` (paper vs live, API
credentials) and ``LLMConfig`` (decision-step provider). ``Settings``
bundles them and can be built from ``PRISM_*`` environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT"]


class TradingConfig(BaseModel):
    """Trading loop and risk-limit configuration."""

    symbols: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SYMBOLS),
        description="Contracts the decision step may trade",
    )
    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=59,
        description="Cycle cadence; the cycle fires every N minutes on the clock",
    )
    run_immediately: bool = Field(
        default=True,
        description="Run one cycle right after start() instead of waiting for the first tick",
    )
    min_leverage: int = Field(default=3, ge=1, description="Lowest leverage accepted on open")
    max_leverage: int = Field(default=10, ge=1, description="Highest leverage accepted on open")
    max_positions: int = Field(default=3, ge=1, description="Maximum concurrent open positions")
    min_margin: float = Field(
        default=5.0,
        description="Minimum margin in USDT for a new position",
    )
    stop_loss_balance: float = Field(
        default=0.0,
        description="Close everything and stop when balance <= this line (0 disables)",
    )
    take_profit_balance: float = Field(
        default=0.0,
        description="Close everything and stop when balance >= this line (0 disables)",
    )
    max_drawdown_percent: float = Field(
        default=20.0,
        description="Close everything and stop when drawdown from peak reaches this",
    )
    open_block_drawdown_percent: float = Field(
        default=15.0,
        description="Refuse new positions when drawdown from peak reaches this",
    )
    max_holding_hours: float = Field(
        default=36.0,
        description="Force-close positions held at least this long",
    )
    min_holding_hours: float = Field(
        default=1.0,
        description="Non-urgent closes are rejected before this holding time",
    )
    sync_interval_seconds: float = Field(
        default=10.0,
        description="Background position sync cadence",
    )
    kline_intervals: list[str] = Field(
        default_factory=lambda: ["5m", "15m", "1h", "4h"],
        description="Kline intervals collected for each symbol",
    )
    kline_limit: int = Field(default=60, description="Candles per interval")

    @field_validator("symbols")
    @classmethod
    def _upper_symbols(cls, value: list[str]) -> list[str]:
        return [s.strip().upper() for s in value if s.strip()]


class ExchangeConfig(BaseModel):
    """Exchange connection configuration."""

    mode: str = Field(default="paper", description='"paper" or "live"')
    api_key: str = Field(default="", description="Binance API key (live only)")
    api_secret: str = Field(default="", description="Binance API secret (live only)")
    testnet: bool = Field(default=False, description="Use the Binance futures testnet")
    paper_initial_balance: float = Field(
        default=10_000.0,
        description="Starting USDT balance of the simulated wallet",
    )

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        value = value.lower()
        if value not in ("paper", "live"):
            raise ValueError(f"exchange mode must be 'paper' or 'live', got {value!r}")
        return value

    @property
    def is_live(self) -> bool:
        return self.mode == "live"


class LLMConfig(BaseModel):
    """Configuration for the decision-step LLM client."""

    api_key: str | None = Field(default=None, description="OpenAI-compatible API key")
    base_url: str | None = Field(
        default=None,
        description="OpenAI-compatible endpoint (None uses the SDK default)",
    )
    model: str = Field(default="deepseek-chat", description="Chat model id")
    max_tool_rounds: int = Field(
        default=10,
        ge=1,
        description="Maximum model/tool round trips per cycle",
    )
    temperature: float = Field(default=0.7)


class Settings(BaseModel):
    """All runtime settings."""

    trading: TradingConfig = Field(default_factory=TradingConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    db_path: Path = Field(
        default=Path("~/.prism/prism.db"),
        description="SQLite ledger location",
    )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from ``PRISM_*`` environment variables.

        Unset variables keep the model defaults. Symbols are a comma
        separated list (``PRISM_SYMBOLS=BTCUSDT,ETHUSDT``).
        """
        env = os.environ if environ is None else environ

        trading: dict = {}
        if env.get("PRISM_SYMBOLS"):
            trading["symbols"] = env["PRISM_SYMBOLS"].split(",")
        for key, name in (
            ("interval_minutes", "PRISM_INTERVAL_MINUTES"),
            ("min_leverage", "PRISM_MIN_LEVERAGE"),
            ("max_leverage", "PRISM_MAX_LEVERAGE"),
            ("max_positions", "PRISM_MAX_POSITIONS"),
        ):
            if env.get(name):
                trading[key] = int(env[name])
        for key, name in (
            ("stop_loss_balance", "PRISM_STOP_LOSS_BALANCE"),
            ("take_profit_balance", "PRISM_TAKE_PROFIT_BALANCE"),
            ("max_drawdown_percent", "PRISM_MAX_DRAWDOWN_PERCENT"),
            ("sync_interval_seconds", "PRISM_SYNC_INTERVAL_SECONDS"),
        ):
            if env.get(name):
                trading[key] = float(env[name])
        if env.get("PRISM_RUN_IMMEDIATELY"):
            trading["run_immediately"] = env["PRISM_RUN_IMMEDIATELY"].lower() == "true"

        exchange: dict = {
            "mode": env.get("PRISM_EXCHANGE_MODE", "paper"),
            "api_key": env.get("PRISM_BINANCE_API_KEY", ""),
            "api_secret": env.get("PRISM_BINANCE_API_SECRET", ""),
            "testnet": env.get("PRISM_BINANCE_TESTNET", "").lower() == "true",
        }
        if env.get("PRISM_PAPER_BALANCE"):
            exchange["paper_initial_balance"] = float(env["PRISM_PAPER_BALANCE"])

        llm: dict = {
            "api_key": env.get("PRISM_LLM_API_KEY") or None,
            "base_url": env.get("PRISM_LLM_BASE_URL") or None,
        }
        if env.get("PRISM_LLM_MODEL"):
            llm["model"] = env["PRISM_LLM_MODEL"]

        data: dict = {
            "trading": TradingConfig(**trading),
            "exchange": ExchangeConfig(**exchange),
            "llm": LLMConfig(**llm),
        }
        if env.get("PRISM_DB_PATH"):
            data["db_path"] = Path(env["PRISM_DB_PATH"])
        return cls(**data)

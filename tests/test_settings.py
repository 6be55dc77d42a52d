"""Tests for Settings and its PRISM_* environment mapping."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from prism.config.settings import ExchangeConfig, Settings, TradingConfig


class TestDefaults:
    def test_trading_defaults(self):
        cfg = TradingConfig()
        assert cfg.symbols == ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT"]
        assert cfg.interval_minutes == 15
        assert (cfg.min_leverage, cfg.max_leverage) == (3, 10)
        assert cfg.max_drawdown_percent == 20.0
        assert cfg.max_holding_hours == 36.0

    def test_symbols_normalized(self):
        assert TradingConfig(symbols=[" btcusdt", "", "EthUsdt"]).symbols == ["BTCUSDT", "ETHUSDT"]

    def test_interval_bounds(self):
        with pytest.raises(ValidationError):
            TradingConfig(interval_minutes=0)
        with pytest.raises(ValidationError):
            TradingConfig(interval_minutes=60)

    def test_exchange_mode(self):
        assert ExchangeConfig(mode="LIVE").is_live
        assert not ExchangeConfig().is_live
        with pytest.raises(ValidationError):
            ExchangeConfig(mode="sandbox")


class TestFromEnv:
    def test_empty_env_uses_defaults(self):
        settings = Settings.from_env({})
        assert settings.exchange.mode == "paper"
        assert settings.llm.api_key is None
        assert settings.db_path == Path("~/.prism/prism.db")

    def test_env_overrides(self):
        settings = Settings.from_env(
            {
                "PRISM_SYMBOLS": "btcusdt,solusdt",
                "PRISM_INTERVAL_MINUTES": "5",
                "PRISM_MAX_POSITIONS": "2",
                "PRISM_MAX_DRAWDOWN_PERCENT": "12.5",
                "PRISM_RUN_IMMEDIATELY": "false",
                "PRISM_EXCHANGE_MODE": "live",
                "PRISM_BINANCE_API_KEY": "k",
                "PRISM_BINANCE_API_SECRET": "s",
                "PRISM_BINANCE_TESTNET": "true",
                "PRISM_PAPER_BALANCE": "2500",
                "PRISM_LLM_API_KEY": "sk-test",
                "PRISM_LLM_MODEL": "gpt-4o-mini",
                "PRISM_DB_PATH": "/tmp/prism-test.db",
            }
        )
        assert settings.trading.symbols == ["BTCUSDT", "SOLUSDT"]
        assert settings.trading.interval_minutes == 5
        assert settings.trading.max_positions == 2
        assert settings.trading.max_drawdown_percent == 12.5
        assert settings.trading.run_immediately is False
        assert settings.exchange.is_live
        assert settings.exchange.testnet is True
        assert settings.exchange.paper_initial_balance == 2_500.0
        assert settings.llm.api_key == "sk-test"
        assert settings.llm.model == "gpt-4o-mini"
        assert settings.db_path == Path("/tmp/prism-test.db")

    def test_blank_llm_key_is_none(self):
        assert Settings.from_env({"PRISM_LLM_API_KEY": ""}).llm.api_key is None

    def test_invalid_number_raises(self):
        with pytest.raises(ValueError):
            Settings.from_env({"PRISM_INTERVAL_MINUTES": "often"})

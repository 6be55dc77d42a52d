"""Configuration models.

Public API:
    - Settings: bundle of all runtime settings, ``Settings.from_env()``
    - TradingConfig: symbols, schedule, and risk limits
    - ExchangeConfig: paper/live mode and API credentials
    - LLMConfig: decision-step provider settings
"""

from prism.config.settings import ExchangeConfig, LLMConfig, Settings, TradingConfig

__all__ = ["ExchangeConfig", "LLMConfig", "Settings", "TradingConfig"]

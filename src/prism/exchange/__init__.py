"""Exchange layer: gateway interface, live Binance client, and simulated wallet.

Public API:
    - ExchangeGateway: async capability surface consumed by the trading core
    - ExchangeError: transport/API failure, carries the exchange error code
    - BinanceFuturesGateway: USDⓈ-M futures REST client (httpx, HMAC signed)
    - PaperExchange: in-memory wallet with instant fills and simulated order ids
"""

from prism.exchange.base import ExchangeError, ExchangeGateway
from prism.exchange.binance import BinanceFuturesGateway
from prism.exchange.paper import PaperExchange

__all__ = [
    "BinanceFuturesGateway",
    "ExchangeError",
    "ExchangeGateway",
    "PaperExchange",
]

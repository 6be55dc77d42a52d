"""BinanceFuturesGateway: USDⓈ-M perpetual futures REST client over httpx.

Signed endpoints use HMAC-SHA256 over the url-encoded query string with
the API secret, plus ``timestamp`` and ``recvWindow``. Every failure
(transport error, non-2xx status, API error payload) is raised as
``ExchangeError`` with the Binance error ``code`` when one was returned.

Symbol trading rules from ``/fapi/v1/exchangeInfo`` are cached for
``SYMBOL_INFO_TTL_SECONDS``.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timezone
from urllib.parse import urlencode

import httpx
import structlog

from prism.exchange.base import ExchangeError, ExchangeGateway, precision_from_step
from prism.exchange.types import (
    AccountInfo,
    ExchangePosition,
    Kline,
    MarginType,
    OrderResult,
    OrderSide,
    SymbolInfo,
    TradeFill,
)

logger = structlog.get_logger(__name__)

MAINNET_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binancefuture.com"


def _ms_to_dt(ms: int | str) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


def _f(value: object, default: float = 0.0) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


class BinanceFuturesGateway(ExchangeGateway):
    """Live gateway for Binance USDⓈ-M futures.

    Parameters
    ----------
    api_key : str
        API key, sent as ``X-MBX-APIKEY``.
    api_secret : str
        Secret used to sign requests.
    base_url : str
        REST root (mainnet by default; ``TESTNET_URL`` for the testnet).
    client : httpx.AsyncClient | None
        Pre-built client (tests inject one with ``httpx.MockTransport``).
    timeout : float
        Per-request timeout in seconds.
    recv_window : int
        Signed-request validity window in milliseconds.
    """

    SYMBOL_INFO_TTL_SECONDS: float = 300.0

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = MAINNET_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        recv_window: int = 5000,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._recv_window = recv_window
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._symbol_cache: dict[str, tuple[float, SymbolInfo]] = {}

        logger.info("binance_gateway_init", base_url=str(self._client.base_url))

    async def close(self) -> None:
        await self._client.aclose()

    # -- transport -----------------------------------------------------------

    def _sign(self, params: dict) -> dict:
        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000)
        signed["recvWindow"] = self._recv_window
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self._api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return signed

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        signed: bool = False,
    ) -> object:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {}
        if signed:
            params = self._sign(params)
            headers["X-MBX-APIKEY"] = self._api_key

        try:
            response = await self._client.request(method, path, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ExchangeError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            code = payload.get("code") if isinstance(payload, dict) else None
            msg = payload.get("msg") if isinstance(payload, dict) else response.text
            raise ExchangeError(f"{method} {path}: {msg}", code=code)
        if isinstance(payload, dict) and payload.get("code", 0) < 0:
            raise ExchangeError(f"{method} {path}: {payload.get('msg')}", code=payload["code"])
        return payload

    # -- account & positions -------------------------------------------------

    async def get_account_info(self) -> AccountInfo:
        data = await self._request("GET", "/fapi/v2/account", signed=True)
        return AccountInfo(
            total_balance=_f(data.get("totalMarginBalance", data.get("totalWalletBalance"))),
            available=_f(data.get("availableBalance")),
            unrealized_pnl=_f(data.get("totalUnrealizedProfit")),
        )

    async def get_positions(self) -> list[ExchangePosition]:
        data = await self._request("GET", "/fapi/v2/positionRisk", signed=True)
        positions = []
        for row in data:
            amount = _f(row.get("positionAmt"))
            if amount == 0:
                continue
            positions.append(
                ExchangePosition(
                    symbol=row["symbol"],
                    side="long" if amount > 0 else "short",
                    quantity=abs(amount),
                    entry_price=_f(row.get("entryPrice")),
                    mark_price=_f(row.get("markPrice")),
                    liquidation_price=_f(row.get("liquidationPrice")),
                    unrealized_pnl=_f(row.get("unRealizedProfit")),
                    leverage=int(_f(row.get("leverage"), 1)),
                )
            )
        return positions

    # -- market data ---------------------------------------------------------

    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Kline]:
        data = await self._request(
            "GET", "/fapi/v1/klines", {"symbol": symbol, "interval": interval, "limit": limit}
        )
        return [
            Kline(
                open_time=_ms_to_dt(row[0]),
                open=_f(row[1]),
                high=_f(row[2]),
                low=_f(row[3]),
                close=_f(row[4]),
                volume=_f(row[5]),
                close_time=_ms_to_dt(row[6]),
            )
            for row in data
        ]

    async def get_current_price(self, symbol: str) -> float:
        data = await self._request("GET", "/fapi/v1/ticker/price", {"symbol": symbol})
        return _f(data["price"])

    async def get_funding_rate(self, symbol: str) -> float:
        data = await self._request("GET", "/fapi/v1/fundingRate", {"symbol": symbol, "limit": 1})
        if not data:
            raise ExchangeError(f"No funding rate data for {symbol}")
        return _f(data[-1]["fundingRate"])

    # -- configuration -------------------------------------------------------

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await self._request(
            "POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True
        )
        logger.info("leverage_set", symbol=symbol, leverage=leverage)

    async def set_margin_type(self, symbol: str, margin_type: MarginType) -> None:
        await self._request(
            "POST",
            "/fapi/v1/marginType",
            {"symbol": symbol, "marginType": MarginType(margin_type).value},
            signed=True,
        )

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        cached = self._symbol_cache.get(symbol)
        if cached is not None and time.monotonic() - cached[0] < self.SYMBOL_INFO_TTL_SECONDS:
            return cached[1]

        data = await self._request("GET", "/fapi/v1/exchangeInfo")
        for entry in data.get("symbols", []):
            if entry.get("symbol") != symbol:
                continue
            filters = {f["filterType"]: f for f in entry.get("filters", [])}
            lot = filters.get("LOT_SIZE", {})
            notional = filters.get("MIN_NOTIONAL", {})
            step_size = _f(lot.get("stepSize"))
            info = SymbolInfo(
                symbol=symbol,
                step_size=step_size,
                min_qty=_f(lot.get("minQty")),
                max_qty=_f(lot.get("maxQty")),
                min_notional=_f(notional.get("notional", notional.get("minNotional"))),
                quantity_precision=int(
                    entry.get("quantityPrecision", precision_from_step(step_size))
                ),
                price_precision=int(entry.get("pricePrecision", 2)),
                filters=filters,
            )
            self._symbol_cache[symbol] = (time.monotonic(), info)
            return info
        raise ExchangeError(f"Symbol {symbol} not found")

    # -- orders --------------------------------------------------------------

    async def create_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        qty = await self.format_quantity(symbol, quantity)
        info = await self.get_symbol_info(symbol)
        params = {
            "symbol": symbol,
            "side": OrderSide(side).value,
            "type": "MARKET",
            "quantity": f"{qty:.{info.quantity_precision}f}",
        }
        if reduce_only:
            params["reduceOnly"] = "true"
        data = await self._request("POST", "/fapi/v1/order", params, signed=True)
        logger.info(
            "market_order_placed",
            symbol=symbol,
            side=params["side"],
            quantity=params["quantity"],
            reduce_only=reduce_only,
            order_id=data.get("orderId"),
        )
        return self._to_order_result(data)

    async def _create_conditional(
        self,
        symbol: str,
        position_side: str,
        quantity: float,
        stop_price: float,
        order_type: str,
    ) -> OrderResult:
        qty = await self.format_quantity(symbol, quantity)
        info = await self.get_symbol_info(symbol)
        exit_side = OrderSide.SELL if position_side == "long" else OrderSide.BUY
        params = {
            "symbol": symbol,
            "side": exit_side.value,
            "type": order_type,
            "quantity": f"{qty:.{info.quantity_precision}f}",
            "stopPrice": f"{stop_price:.{info.price_precision}f}",
            "reduceOnly": "true",
            "workingType": "MARK_PRICE",
        }
        data = await self._request("POST", "/fapi/v1/order", params, signed=True)
        logger.info(
            "conditional_order_placed",
            symbol=symbol,
            order_type=order_type,
            stop_price=params["stopPrice"],
            order_id=data.get("orderId"),
        )
        return self._to_order_result(data)

    async def create_stop_loss_order(
        self, symbol: str, position_side: str, quantity: float, stop_price: float
    ) -> OrderResult:
        return await self._create_conditional(
            symbol, position_side, quantity, stop_price, "STOP_MARKET"
        )

    async def create_take_profit_order(
        self, symbol: str, position_side: str, quantity: float, stop_price: float
    ) -> OrderResult:
        return await self._create_conditional(
            symbol, position_side, quantity, stop_price, "TAKE_PROFIT_MARKET"
        )

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        await self._request(
            "DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )

    async def cancel_all_orders(self, symbol: str) -> None:
        await self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol}, signed=True)

    async def get_order_status(self, symbol: str, order_id: int) -> OrderResult:
        data = await self._request(
            "GET", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id}, signed=True
        )
        return self._to_order_result(data)

    async def get_trade_history(
        self, symbol: str, order_id: int | None = None, limit: int = 500
    ) -> list[TradeFill]:
        data = await self._request(
            "GET",
            "/fapi/v1/userTrades",
            {"symbol": symbol, "orderId": order_id, "limit": limit},
            signed=True,
        )
        return [
            TradeFill(
                symbol=row["symbol"],
                order_id=int(row["orderId"]),
                price=_f(row.get("price")),
                quantity=_f(row.get("qty")),
                commission=_f(row.get("commission")),
                realized_pnl=_f(row.get("realizedPnl")),
                time=_ms_to_dt(row["time"]),
                side=row.get("side", ""),
            )
            for row in data
        ]

    @staticmethod
    def _to_order_result(data: dict) -> OrderResult:
        return OrderResult(
            order_id=int(data["orderId"]),
            symbol=data.get("symbol", ""),
            status=data.get("status", ""),
            side=data.get("side", ""),
            order_type=data.get("type", ""),
            price=_f(data.get("price")),
            avg_price=_f(data.get("avgPrice")),
            quantity=_f(data.get("origQty")),
            executed_qty=_f(data.get("executedQty")),
            stop_price=_f(data.get("stopPrice")),
        )

"""ExchangeGateway: the capability surface the trading core depends on.

Concrete gateways implement the primitive calls (positions, account,
market data, market and conditional orders, order status, trade history,
symbol rules). Directional helpers (``open_long``, ``close_short``, ...)
and quantity formatting are derived from those primitives here, so the
simulated and live gateways share identical semantics.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from decimal import ROUND_DOWN, Decimal

import structlog

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

logger = structlog.get_logger()


class ExchangeError(Exception):
    """Transport or API failure reported by an exchange gateway.

    Parameters
    ----------
    message : str
        Human-readable description.
    code : int | None
        Exchange error code when the API returned one.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}" if code is not None else message)


class ExchangeGateway(ABC):
    """Async perpetual-futures gateway."""

    # -- account & positions -------------------------------------------------

    @abstractmethod
    async def get_account_info(self) -> AccountInfo: ...

    @abstractmethod
    async def get_positions(self) -> list[ExchangePosition]:
        """Return only positions with a non-zero amount."""

    # -- market data ---------------------------------------------------------

    @abstractmethod
    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Kline]: ...

    @abstractmethod
    async def get_current_price(self, symbol: str) -> float: ...

    @abstractmethod
    async def get_funding_rate(self, symbol: str) -> float: ...

    # -- configuration -------------------------------------------------------

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None: ...

    @abstractmethod
    async def set_margin_type(self, symbol: str, margin_type: MarginType) -> None: ...

    @abstractmethod
    async def get_symbol_info(self, symbol: str) -> SymbolInfo: ...

    # -- orders --------------------------------------------------------------

    @abstractmethod
    async def create_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderResult: ...

    @abstractmethod
    async def create_stop_loss_order(
        self,
        symbol: str,
        position_side: str,
        quantity: float,
        stop_price: float,
    ) -> OrderResult:
        """Place a reduce-only stop-market order that exits ``position_side``."""

    @abstractmethod
    async def create_take_profit_order(
        self,
        symbol: str,
        position_side: str,
        quantity: float,
        stop_price: float,
    ) -> OrderResult:
        """Place a reduce-only take-profit-market order that exits ``position_side``."""

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: int) -> None: ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None: ...

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: int) -> OrderResult: ...

    @abstractmethod
    async def get_trade_history(
        self,
        symbol: str,
        order_id: int | None = None,
        limit: int = 500,
    ) -> list[TradeFill]: ...

    async def close(self) -> None:
        """Release transport resources. No-op by default."""

    # -- derived helpers -----------------------------------------------------

    async def open_long(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        await self.set_leverage(symbol, leverage)
        return await self.create_market_order(symbol, OrderSide.BUY, quantity)

    async def open_short(self, symbol: str, quantity: float, leverage: int) -> OrderResult:
        await self.set_leverage(symbol, leverage)
        return await self.create_market_order(symbol, OrderSide.SELL, quantity)

    async def close_long(self, symbol: str, quantity: float) -> OrderResult:
        return await self.create_market_order(
            symbol, OrderSide.SELL, quantity, reduce_only=True
        )

    async def close_short(self, symbol: str, quantity: float) -> OrderResult:
        return await self.create_market_order(
            symbol, OrderSide.BUY, quantity, reduce_only=True
        )

    async def close_position(self, symbol: str, side: str, quantity: float) -> OrderResult:
        """Reduce-only market close of the full ``quantity`` on ``side``."""
        if side == "long":
            return await self.close_long(symbol, quantity)
        return await self.close_short(symbol, quantity)

    async def format_quantity(self, symbol: str, quantity: float) -> float:
        """Round a raw quantity to the contract's lot rules.

        Floors to ``step_size`` and then to ``quantity_precision`` decimals.

        Raises
        ------
        ExchangeError
            If the rounded quantity falls outside ``[min_qty, max_qty]``.
        """
        info = await self.get_symbol_info(symbol)
        qty = Decimal(str(quantity))
        if info.step_size > 0:
            step = Decimal(str(info.step_size))
            qty = (qty / step).to_integral_value(rounding=ROUND_DOWN) * step
        exponent = Decimal(1).scaleb(-info.quantity_precision)
        qty = qty.quantize(exponent, rounding=ROUND_DOWN)
        result = float(qty)

        if result < info.min_qty:
            raise ExchangeError(
                f"Quantity {result} for {symbol} is below minimum {info.min_qty}"
            )
        if info.max_qty > 0 and result > info.max_qty:
            raise ExchangeError(
                f"Quantity {result} for {symbol} exceeds maximum {info.max_qty}"
            )
        return result


def precision_from_step(step_size: float) -> int:
    """Number of decimals implied by a step size (0.001 -> 3)."""
    if step_size <= 0 or step_size >= 1:
        return 0
    return max(0, int(round(-math.log10(step_size))))

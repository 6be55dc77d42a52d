"""PaperExchange: simulated futures wallet for risk-free runs.

Market data (prices, klines, funding) comes from an optional upstream
gateway, normally a ``BinanceFuturesGateway`` used for public endpoints
only, or from prices pinned with ``set_price()``. Orders never leave the
process:

- Order ids are simulated, starting at 1,000,000.
- Market orders fill instantly at the current price.
- Adding to a position re-averages the entry price by quantity.
- Reduce-only orders realize pnl into the wallet balance.
- Stop-loss / take-profit orders rest as ``NEW`` until the price crosses
  their trigger, then fill like a reduce-only market order.
- Every fill is kept in a trade history so fill aggregation behaves the
  same as against the live API.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from prism.exchange.base import ExchangeError, ExchangeGateway
from prism.exchange.types import (
    STATUS_CANCELED,
    STATUS_FILLED,
    STATUS_NEW,
    AccountInfo,
    ExchangePosition,
    Kline,
    MarginType,
    OrderResult,
    OrderSide,
    SymbolInfo,
    TradeFill,
)
from prism.store.models import utcnow

logger = structlog.get_logger()

FIRST_ORDER_ID = 1_000_000


@dataclass
class _PaperPosition:
    symbol: str
    side: str
    quantity: float
    entry_price: float
    leverage: int
    mark_price: float


class PaperExchange(ExchangeGateway):
    """In-memory exchange with instant-fill execution.

    Parameters
    ----------
    initial_balance : float
        Starting wallet balance in USDT.
    market_data : ExchangeGateway | None
        Upstream source for prices, klines, funding and symbol rules. If
        None, prices must be pinned via ``set_price()``.
    fee_rate : float
        Commission charged on fill notional (default 0).
    simulate_triggers : bool
        Fill resting stop-loss / take-profit orders when ``get_positions``
        observes the price crossing their trigger.
    """

    def __init__(
        self,
        initial_balance: float = 10_000.0,
        market_data: ExchangeGateway | None = None,
        fee_rate: float = 0.0,
        simulate_triggers: bool = True,
    ) -> None:
        self._market_data = market_data
        self._fee_rate = fee_rate
        self._simulate_triggers = simulate_triggers

        self.balance = initial_balance
        self.initial_balance = initial_balance
        self._positions: dict[tuple[str, str], _PaperPosition] = {}
        self._orders: dict[int, OrderResult] = {}
        self._conditional: dict[int, tuple[str, str]] = {}  # id -> (position_side, kind)
        self._fills: list[TradeFill] = []
        self._prices: dict[str, float] = {}
        self._leverages: dict[str, int] = {}
        self._margin_types: dict[str, MarginType] = {}
        self._next_order_id = FIRST_ORDER_ID

        logger.info("paper_exchange_init", initial_balance=initial_balance)

    async def close(self) -> None:
        if self._market_data is not None:
            await self._market_data.close()

    # -- simulation controls -------------------------------------------------

    def set_price(self, symbol: str, price: float) -> None:
        """Pin the current price for ``symbol`` (overrides upstream data)."""
        self._prices[symbol] = price

    def _new_order_id(self) -> int:
        order_id = self._next_order_id
        self._next_order_id += 1
        return order_id

    # -- market data ---------------------------------------------------------

    async def get_current_price(self, symbol: str) -> float:
        if symbol in self._prices:
            return self._prices[symbol]
        if self._market_data is None:
            raise ExchangeError(f"No price available for {symbol}")
        return await self._market_data.get_current_price(symbol)

    async def get_klines(self, symbol: str, interval: str, limit: int = 60) -> list[Kline]:
        if self._market_data is None:
            return []
        return await self._market_data.get_klines(symbol, interval, limit)

    async def get_funding_rate(self, symbol: str) -> float:
        if self._market_data is None:
            return 0.0
        return await self._market_data.get_funding_rate(symbol)

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        if self._market_data is not None:
            return await self._market_data.get_symbol_info(symbol)
        return SymbolInfo(
            symbol=symbol,
            step_size=0.001,
            min_qty=0.001,
            max_qty=1_000_000.0,
            min_notional=5.0,
            quantity_precision=3,
        )

    # -- account -------------------------------------------------------------

    async def get_account_info(self) -> AccountInfo:
        unrealized = 0.0
        used_margin = 0.0
        for pos in self._positions.values():
            unrealized += self._pnl(pos, pos.mark_price)
            used_margin += pos.quantity * pos.entry_price / pos.leverage
        total = self.balance + unrealized
        return AccountInfo(
            total_balance=total,
            available=total - used_margin,
            unrealized_pnl=unrealized,
        )

    async def get_positions(self) -> list[ExchangePosition]:
        for pos in list(self._positions.values()):
            try:
                pos.mark_price = await self.get_current_price(pos.symbol)
            except ExchangeError as exc:
                logger.warning("paper_price_unavailable", symbol=pos.symbol, error=str(exc))

        if self._simulate_triggers:
            self._check_triggers()

        return [
            ExchangePosition(
                symbol=pos.symbol,
                side=pos.side,
                quantity=pos.quantity,
                entry_price=pos.entry_price,
                mark_price=pos.mark_price,
                liquidation_price=0.0,
                unrealized_pnl=self._pnl(pos, pos.mark_price),
                leverage=pos.leverage,
            )
            for pos in self._positions.values()
        ]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self._leverages[symbol] = leverage
        logger.info("paper_set_leverage", symbol=symbol, leverage=leverage)

    async def set_margin_type(self, symbol: str, margin_type: MarginType) -> None:
        self._margin_types[symbol] = MarginType(margin_type)

    # -- orders --------------------------------------------------------------

    async def create_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        side = OrderSide(side)
        price = await self.get_current_price(symbol)
        order_id = self._new_order_id()

        if reduce_only:
            position_side = "long" if side is OrderSide.SELL else "short"
            self._reduce(symbol, position_side, quantity, price, order_id, side)
        else:
            position_side = "long" if side is OrderSide.BUY else "short"
            self._increase(symbol, position_side, quantity, price, order_id, side)

        result = OrderResult(
            order_id=order_id,
            symbol=symbol,
            status=STATUS_FILLED,
            side=side.value,
            order_type="MARKET",
            price=price,
            avg_price=price,
            quantity=quantity,
            executed_qty=quantity,
        )
        self._orders[order_id] = result
        logger.info(
            "paper_order_filled",
            symbol=symbol,
            side=side.value,
            quantity=quantity,
            price=price,
            reduce_only=reduce_only,
            order_id=order_id,
        )
        return result

    async def create_stop_loss_order(
        self, symbol: str, position_side: str, quantity: float, stop_price: float
    ) -> OrderResult:
        return self._rest_conditional(symbol, position_side, quantity, stop_price, "STOP_MARKET")

    async def create_take_profit_order(
        self, symbol: str, position_side: str, quantity: float, stop_price: float
    ) -> OrderResult:
        return self._rest_conditional(
            symbol, position_side, quantity, stop_price, "TAKE_PROFIT_MARKET"
        )

    async def cancel_order(self, symbol: str, order_id: int) -> None:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise ExchangeError(f"Unknown order {order_id}", code=-2011)
        if order.status != STATUS_NEW:
            raise ExchangeError(f"Order {order_id} is {order.status}", code=-2011)
        self._orders[order_id] = replace(order, status=STATUS_CANCELED)
        self._conditional.pop(order_id, None)

    async def cancel_all_orders(self, symbol: str) -> None:
        for order_id, order in list(self._orders.items()):
            if order.symbol == symbol and order.status == STATUS_NEW:
                await self.cancel_order(symbol, order_id)

    async def get_order_status(self, symbol: str, order_id: int) -> OrderResult:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            raise ExchangeError(f"Order does not exist: {order_id}", code=-2013)
        return order

    async def get_trade_history(
        self, symbol: str, order_id: int | None = None, limit: int = 500
    ) -> list[TradeFill]:
        fills = [
            f
            for f in self._fills
            if f.symbol == symbol and (order_id is None or f.order_id == order_id)
        ]
        return fills[-limit:]

    # -- internals -----------------------------------------------------------

    @staticmethod
    def _pnl(pos: _PaperPosition, price: float) -> float:
        if pos.side == "long":
            return (price - pos.entry_price) * pos.quantity
        return (pos.entry_price - price) * pos.quantity

    def _record_fill(
        self,
        symbol: str,
        order_id: int,
        side: OrderSide,
        price: float,
        quantity: float,
        realized_pnl: float,
    ) -> float:
        commission = price * quantity * self._fee_rate
        self.balance -= commission
        self._fills.append(
            TradeFill(
                symbol=symbol,
                order_id=order_id,
                price=price,
                quantity=quantity,
                commission=commission,
                realized_pnl=realized_pnl,
                time=utcnow(),
                side=side.value,
            )
        )
        return commission

    def _increase(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        order_id: int,
        order_side: OrderSide,
    ) -> None:
        leverage = self._leverages.get(symbol, 1)
        required_margin = price * quantity / leverage
        available = self.balance - sum(
            p.quantity * p.entry_price / p.leverage for p in self._positions.values()
        )
        if required_margin > available:
            raise ExchangeError(
                f"Insufficient balance: required {required_margin:.2f}, "
                f"available {available:.2f}",
                code=-2019,
            )

        key = (symbol, side)
        existing = self._positions.get(key)
        if existing is None:
            self._positions[key] = _PaperPosition(
                symbol=symbol,
                side=side,
                quantity=quantity,
                entry_price=price,
                leverage=leverage,
                mark_price=price,
            )
        else:
            total_qty = existing.quantity + quantity
            existing.entry_price = (
                existing.entry_price * existing.quantity + price * quantity
            ) / total_qty
            existing.quantity = total_qty
            existing.mark_price = price
        self._record_fill(symbol, order_id, order_side, price, quantity, 0.0)

    def _reduce(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float,
        order_id: int,
        order_side: OrderSide,
    ) -> None:
        key = (symbol, side)
        pos = self._positions.get(key)
        if pos is None:
            raise ExchangeError(f"No {side} position to close for {symbol}", code=-2022)

        closed_qty = min(quantity, pos.quantity)
        pnl = (
            (price - pos.entry_price) * closed_qty
            if side == "long"
            else (pos.entry_price - price) * closed_qty
        )
        self.balance += pnl
        if closed_qty >= pos.quantity:
            del self._positions[key]
        else:
            pos.quantity -= closed_qty
        self._record_fill(symbol, order_id, order_side, price, closed_qty, pnl)

    def _rest_conditional(
        self,
        symbol: str,
        position_side: str,
        quantity: float,
        stop_price: float,
        order_type: str,
    ) -> OrderResult:
        order_id = self._new_order_id()
        exit_side = OrderSide.SELL if position_side == "long" else OrderSide.BUY
        result = OrderResult(
            order_id=order_id,
            symbol=symbol,
            status=STATUS_NEW,
            side=exit_side.value,
            order_type=order_type,
            quantity=quantity,
            stop_price=stop_price,
        )
        self._orders[order_id] = result
        self._conditional[order_id] = (position_side, order_type)
        logger.info(
            "paper_conditional_order",
            symbol=symbol,
            order_type=order_type,
            stop_price=stop_price,
            order_id=order_id,
        )
        return result

    def _check_triggers(self) -> None:
        for order_id, (position_side, order_type) in list(self._conditional.items()):
            order = self._orders[order_id]
            pos = self._positions.get((order.symbol, position_side))
            if pos is None:
                continue
            price = pos.mark_price
            is_long = position_side == "long"
            if order_type == "STOP_MARKET":
                crossed = price <= order.stop_price if is_long else price >= order.stop_price
            else:
                crossed = price >= order.stop_price if is_long else price <= order.stop_price
            if crossed:
                self.fill_order(order_id)

    def fill_order(self, order_id: int, price: float | None = None) -> OrderResult:
        """Fill a resting conditional order as a reduce-only market exit."""
        order = self._orders.get(order_id)
        if order is None or order.status != STATUS_NEW:
            raise ExchangeError(f"Order {order_id} is not open", code=-2013)
        position_side, _ = self._conditional.pop(order_id)
        pos = self._positions.get((order.symbol, position_side))
        if pos is None:
            raise ExchangeError(f"No {position_side} position for {order.symbol}", code=-2022)
        fill_price = price if price is not None else pos.mark_price
        quantity = min(order.quantity, pos.quantity)
        self._reduce(
            order.symbol, position_side, quantity, fill_price, order_id, OrderSide(order.side)
        )
        filled = replace(
            order,
            status=STATUS_FILLED,
            avg_price=fill_price,
            executed_qty=quantity,
        )
        self._orders[order_id] = filled
        logger.info(
            "paper_conditional_filled",
            symbol=order.symbol,
            order_type=order.order_type,
            price=fill_price,
            order_id=order_id,
        )
        return filled

"""Exchange-facing value types shared by every gateway implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class MarginType(str, Enum):
    ISOLATED = "ISOLATED"
    CROSSED = "CROSSED"


# Exchange order status strings as reported by the futures API.
STATUS_NEW = "NEW"
STATUS_PARTIALLY_FILLED = "PARTIALLY_FILLED"
STATUS_FILLED = "FILLED"
STATUS_CANCELED = "CANCELED"
STATUS_REJECTED = "REJECTED"
STATUS_EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Kline:
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: datetime | None = None


@dataclass(frozen=True)
class AccountInfo:
    """Futures wallet summary.

    Attributes
    ----------
    total_balance : float
        Wallet balance including unrealized pnl (margin balance).
    available : float
        Balance available for new margin.
    unrealized_pnl : float
        Sum of unrealized pnl across open positions.
    """

    total_balance: float
    available: float
    unrealized_pnl: float


@dataclass(frozen=True)
class ExchangePosition:
    """A non-zero position as reported by the exchange.

    ``side`` is derived from the sign of the signed position amount;
    ``quantity`` is always the absolute magnitude.
    """

    symbol: str
    side: str
    quantity: float
    entry_price: float
    mark_price: float
    liquidation_price: float
    unrealized_pnl: float
    leverage: int


@dataclass(frozen=True)
class OrderResult:
    order_id: int
    symbol: str
    status: str
    side: str = ""
    order_type: str = ""
    price: float = 0.0
    avg_price: float = 0.0
    quantity: float = 0.0
    executed_qty: float = 0.0
    stop_price: float = 0.0


@dataclass(frozen=True)
class TradeFill:
    """One fill from the exchange trade history."""

    symbol: str
    order_id: int
    price: float
    quantity: float
    commission: float
    realized_pnl: float
    time: datetime
    side: str = ""


@dataclass(frozen=True)
class SymbolInfo:
    """Trading rules for a contract.

    Attributes
    ----------
    step_size : float
        Quantity increment (LOT_SIZE filter).
    min_qty, max_qty : float
        Quantity bounds.
    min_notional : float
        Minimum ``price * quantity`` for a new order.
    quantity_precision : int
        Decimal places accepted for quantities.
    """

    symbol: str
    step_size: float
    min_qty: float
    max_qty: float
    min_notional: float
    quantity_precision: int
    price_precision: int = 2
    filters: dict = field(default_factory=dict)

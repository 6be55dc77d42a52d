"""Canonical ledger records for positions, orders, trades, and audits.

These dataclasses are the single source of truth for persisted state. The
``Ledger`` serializes them to SQLite; every other module (reconciler, risk
engine, validation gate, orchestrator) reads and writes through them.

Zero storage dependency -- pure dataclasses and enums.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record id."""
    return uuid.uuid4().hex


class PositionSide(str, Enum):
    """Direction of a perpetual-futures position."""

    LONG = "long"
    SHORT = "short"


class OrderType(str, Enum):
    """Conditional exit orders tracked against a position."""

    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderStatus(str, Enum):
    """Lifecycle of a conditional order.

    ACTIVE is the only non-terminal state. TRIGGERED, CANCELED and FAILED
    are terminal: no transition leaves them.
    """

    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.ACTIVE


class TradeType(str, Enum):
    OPEN = "open"
    CLOSE = "close"


@dataclass
class Position:
    """A live position mirrored from the exchange.

    Attributes
    ----------
    symbol : str
        Contract symbol, e.g. ``"BTCUSDT"``.
    side : PositionSide
        Long or short.
    quantity : float
        Absolute position size in base units.
    entry_price : float
        Average entry price reported by the exchange.
    current_price : float
        Latest mark price.
    liquidation_price : float
        Exchange-reported liquidation price (0 when unknown).
    leverage : int
        Position leverage.
    margin : float
        Isolated margin, ``entry_price * quantity / leverage``.
    unrealized_pnl : float
        Unrealized pnl in quote currency.
    peak_pnl_percent : float
        Highest leveraged pnl percent observed while the position is live.
        Never decreases.
    entry_reason : str
        Why the position was opened.
    exit_plan : str
        Free-text exit plan stored at open time.
    order_id : str
        Exchange id of the opening order, if known.
    opened_at : datetime
        When the position was first seen or opened (UTC).
    id : str
        Ledger id.
    """

    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    current_price: float = 0.0
    liquidation_price: float = 0.0
    leverage: int = 1
    margin: float = 0.0
    unrealized_pnl: float = 0.0
    peak_pnl_percent: float = 0.0
    entry_reason: str = ""
    exit_plan: str = ""
    order_id: str = ""
    opened_at: datetime | None = None
    updated_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        self.side = PositionSide(self.side)
        if not self.id:
            self.id = new_id()
        if self.opened_at is None:
            self.opened_at = utcnow()

    @property
    def key(self) -> tuple[str, str]:
        """Reconciliation key ``(symbol, side)``."""
        return (self.symbol, self.side.value)

    def pnl_percent(self) -> float:
        """Leveraged pnl percent: price move percent times leverage."""
        if self.entry_price == 0:
            return 0.0
        price_change = (self.current_price - self.entry_price) / self.entry_price * 100
        if self.side is PositionSide.SHORT:
            price_change = -price_change
        return price_change * self.leverage

    def holding_hours(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return (now - self.opened_at).total_seconds() / 3600.0


@dataclass
class Order:
    """A conditional stop-loss or take-profit order placed on the exchange."""

    symbol: str
    position_id: str
    position_side: PositionSide
    order_type: OrderType
    trigger_price: float
    quantity: float
    exchange_id: str = ""
    status: OrderStatus = OrderStatus.ACTIVE
    reason: str = ""
    created_at: datetime | None = None
    triggered_at: datetime | None = None
    canceled_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        self.position_side = PositionSide(self.position_side)
        self.order_type = OrderType(self.order_type)
        self.status = OrderStatus(self.status)
        if not self.id:
            self.id = new_id()
        if self.created_at is None:
            self.created_at = utcnow()

    @property
    def is_active(self) -> bool:
        return self.status is OrderStatus.ACTIVE


@dataclass(frozen=True)
class Trade:
    """Immutable ledger entry for an executed open or close.

    ``pnl`` and ``fee`` are meaningful for closes; opens carry zero pnl.
    """

    symbol: str
    trade_type: TradeType
    side: PositionSide
    price: float
    quantity: float
    leverage: int = 0
    fee: float = 0.0
    pnl: float = 0.0
    reason: str = ""
    order_id: str = ""
    position_id: str = ""
    executed_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "trade_type", TradeType(self.trade_type))
        object.__setattr__(self, "side", PositionSide(self.side))
        if not self.id:
            object.__setattr__(self, "id", new_id())
        if self.executed_at is None:
            object.__setattr__(self, "executed_at", utcnow())


@dataclass(frozen=True)
class Decision:
    """Append-only audit row: one per trading cycle."""

    iteration: int
    account_value: float
    position_count: int
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""
    executed_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", new_id())
        if self.executed_at is None:
            object.__setattr__(self, "executed_at", utcnow())


@dataclass
class AccountMetrics:
    """Derived account state for one point in time.

    Drawdowns are expressed as non-negative percentages: ``12.5`` means the
    balance is 12.5% below the reference.
    """

    total_balance: float
    available: float
    unrealized_pnl: float
    initial_balance: float
    peak_balance: float
    return_percent: float = 0.0
    drawdown_from_peak: float = 0.0
    drawdown_from_initial: float = 0.0
    sharpe_ratio: float = 0.0


@dataclass(frozen=True)
class AccountSnapshot:
    """Persisted ``AccountMetrics`` tagged with the cycle iteration."""

    metrics: AccountMetrics
    iteration: int
    recorded_at: datetime | None = None
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", new_id())
        if self.recorded_at is None:
            object.__setattr__(self, "recorded_at", utcnow())

"""Persistence layer: ledger records and the SQLite ledger.

Public API:
    - Ledger: SQLite store for positions, orders, trades, decisions, account history
    - PositionNotFoundError: raised when no live position matches a lookup
    - Position, Order, Trade, Decision: ledger records
    - AccountMetrics, AccountSnapshot: derived account state and its persisted form
    - PositionSide, OrderType, OrderStatus, TradeType: record enums
"""

from prism.store.ledger import Ledger, PositionNotFoundError
from prism.store.models import (
    AccountMetrics,
    AccountSnapshot,
    Decision,
    Order,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Trade,
    TradeType,
)

__all__ = [
    "AccountMetrics",
    "AccountSnapshot",
    "Decision",
    "Ledger",
    "Order",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionNotFoundError",
    "PositionSide",
    "Trade",
    "TradeType",
]

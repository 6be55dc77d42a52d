"""SQLite ledger for positions, conditional orders, trades, and audit rows.

The ledger is the single mutable store of the trading loop. Positions and
orders are mutable mirrors of exchange state; trades, decisions, and account
history are append-only.

Storage uses SQLite with WAL mode. All writes go through ``transaction()``,
which gives all-or-nothing semantics; nested use joins the outer transaction
so a caller can group several ledger operations (delete position + cancel its
orders + record the close trade) into one atomic unit.

Schema:
    positions(id, symbol, side, quantity, entry_price, current_price,
              liquidation_price, leverage, margin, unrealized_pnl,
              peak_pnl_percent, entry_reason, exit_plan, order_id,
              opened_at, updated_at)          -- UNIQUE(symbol, side)
    orders(id, symbol, position_id, position_side, order_type,
           trigger_price, quantity, exchange_id, status, reason,
           created_at, triggered_at, canceled_at)
    trades(id, symbol, trade_type, side, price, quantity, leverage, fee,
           pnl, reason, order_id, position_id, executed_at)
    decisions(id, iteration, account_value, position_count, content,
              prompt_tokens, completion_tokens, model, executed_at)
    account_history(id, iteration, total_balance, available,
                    unrealized_pnl, initial_balance, peak_balance,
                    return_percent, drawdown_from_peak,
                    drawdown_from_initial, sharpe_ratio, recorded_at)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

import structlog

from prism.store.models import (
    AccountMetrics,
    AccountSnapshot,
    Decision,
    Order,
    OrderStatus,
    Position,
    PositionSide,
    Trade,
    utcnow,
)

logger = structlog.get_logger()


class PositionNotFoundError(LookupError):
    """No live position exists for the requested symbol (and side)."""

    def __init__(self, symbol: str, side: str | None = None) -> None:
        self.symbol = symbol
        self.side = side
        where = f"{symbol} {side}" if side else symbol
        super().__init__(f"No open position for {where}")


_POSITION_COLUMNS = (
    "id, symbol, side, quantity, entry_price, current_price, liquidation_price, "
    "leverage, margin, unrealized_pnl, peak_pnl_percent, entry_reason, "
    "exit_plan, order_id, opened_at, updated_at"
)
_ORDER_COLUMNS = (
    "id, symbol, position_id, position_side, order_type, trigger_price, "
    "quantity, exchange_id, status, reason, created_at, triggered_at, canceled_at"
)
_TRADE_COLUMNS = (
    "id, symbol, trade_type, side, price, quantity, leverage, fee, pnl, "
    "reason, order_id, position_id, executed_at"
)
_DECISION_COLUMNS = (
    "id, iteration, account_value, position_count, content, prompt_tokens, "
    "completion_tokens, model, executed_at"
)
_HISTORY_COLUMNS = (
    "id, iteration, total_balance, available, unrealized_pnl, initial_balance, "
    "peak_balance, return_percent, drawdown_from_peak, drawdown_from_initial, "
    "sharpe_ratio, recorded_at"
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Ledger:
    """SQLite-backed store of trading state.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file. Created if it doesn't exist.
        ``":memory:"`` gives a throwaway in-process ledger.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly in transaction().
        self.conn = sqlite3.connect(
            self.db_path, isolation_level=None, check_same_thread=False
        )
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._depth = 0
        self._create_tables()
        logger.debug("ledger_opened", db_path=self.db_path)

    def _create_tables(self) -> None:
        """Create all tables and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS positions (
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                quantity REAL NOT NULL,
                entry_price REAL NOT NULL,
                current_price REAL NOT NULL DEFAULT 0,
                liquidation_price REAL NOT NULL DEFAULT 0,
                leverage INTEGER NOT NULL DEFAULT 1,
                margin REAL NOT NULL DEFAULT 0,
                unrealized_pnl REAL NOT NULL DEFAULT 0,
                peak_pnl_percent REAL NOT NULL DEFAULT 0,
                entry_reason TEXT NOT NULL DEFAULT '',
                exit_plan TEXT NOT NULL DEFAULT '',
                order_id TEXT NOT NULL DEFAULT '',
                opened_at TEXT NOT NULL,
                updated_at TEXT,
                UNIQUE(symbol, side)
            );
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                position_id TEXT NOT NULL,
                position_side TEXT NOT NULL,
                order_type TEXT NOT NULL,
                trigger_price REAL NOT NULL,
                quantity REAL NOT NULL,
                exchange_id TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                triggered_at TEXT,
                canceled_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
            CREATE INDEX IF NOT EXISTS idx_orders_position ON orders(position_id);
            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                trade_type TEXT NOT NULL,
                side TEXT NOT NULL,
                price REAL NOT NULL,
                quantity REAL NOT NULL,
                leverage INTEGER NOT NULL DEFAULT 0,
                fee REAL NOT NULL DEFAULT 0,
                pnl REAL NOT NULL DEFAULT 0,
                reason TEXT NOT NULL DEFAULT '',
                order_id TEXT NOT NULL DEFAULT '',
                position_id TEXT NOT NULL DEFAULT '',
                executed_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_trades_executed ON trades(executed_at);
            CREATE TABLE IF NOT EXISTS decisions (
                id TEXT PRIMARY KEY,
                iteration INTEGER NOT NULL,
                account_value REAL NOT NULL,
                position_count INTEGER NOT NULL,
                content TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                model TEXT NOT NULL DEFAULT '',
                executed_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS account_history (
                id TEXT PRIMARY KEY,
                iteration INTEGER NOT NULL,
                total_balance REAL NOT NULL,
                available REAL NOT NULL,
                unrealized_pnl REAL NOT NULL,
                initial_balance REAL NOT NULL,
                peak_balance REAL NOT NULL,
                return_percent REAL NOT NULL,
                drawdown_from_peak REAL NOT NULL,
                drawdown_from_initial REAL NOT NULL,
                sharpe_ratio REAL NOT NULL,
                recorded_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_history_recorded
            ON account_history(recorded_at);
        """)

    @contextmanager
    def transaction(self) -> Iterator[Ledger]:
        """All-or-nothing write scope.

        Nested ``transaction()`` blocks join the outermost one; only the
        outermost block commits or rolls back.
        """
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self.conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._depth = 0

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def insert_position(self, position: Position) -> Position:
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO positions ({_POSITION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._position_params(position),
            )
        return position

    def update_position(self, position: Position) -> None:
        """Overwrite every column of an existing position row."""
        params = self._position_params(position)
        with self.transaction():
            cursor = self.conn.execute(
                """
                UPDATE positions SET
                    symbol = ?, side = ?, quantity = ?, entry_price = ?,
                    current_price = ?, liquidation_price = ?, leverage = ?,
                    margin = ?, unrealized_pnl = ?, peak_pnl_percent = ?,
                    entry_reason = ?, exit_plan = ?, order_id = ?,
                    opened_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (*params[1:], params[0]),
            )
        if cursor.rowcount == 0:
            raise PositionNotFoundError(position.symbol, position.side.value)

    def delete_position(self, position_id: str) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM positions WHERE id = ?", (position_id,))

    def get_positions(self) -> list[Position]:
        rows = self.conn.execute(
            f"SELECT {_POSITION_COLUMNS} FROM positions ORDER BY opened_at"
        ).fetchall()
        return [self._row_to_position(row) for row in rows]

    def find_position(self, symbol: str, side: PositionSide | str | None = None) -> Position:
        """Look up a live position by symbol, optionally narrowed by side.

        Raises
        ------
        PositionNotFoundError
            If no matching row exists.
        """
        if side is None:
            row = self.conn.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE symbol = ? "
                "ORDER BY opened_at LIMIT 1",
                (symbol,),
            ).fetchone()
        else:
            side = PositionSide(side).value
            row = self.conn.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions "
                "WHERE symbol = ? AND side = ?",
                (symbol, side),
            ).fetchone()
        if row is None:
            raise PositionNotFoundError(symbol, side)
        return self._row_to_position(row)

    def count_positions(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM positions").fetchone()[0]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def insert_order(self, order: Order) -> Order:
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO orders ({_ORDER_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.id,
                    order.symbol,
                    order.position_id,
                    order.position_side.value,
                    order.order_type.value,
                    order.trigger_price,
                    order.quantity,
                    order.exchange_id,
                    order.status.value,
                    order.reason,
                    _ts(order.created_at),
                    _ts(order.triggered_at),
                    _ts(order.canceled_at),
                ),
            )
        return order

    def get_order(self, order_id: str) -> Order | None:
        row = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?", (order_id,)
        ).fetchone()
        return self._row_to_order(row) if row else None

    def find_active_orders(self, position_id: str | None = None) -> list[Order]:
        """Return orders still in the ACTIVE state, oldest first."""
        sql = f"SELECT {_ORDER_COLUMNS} FROM orders WHERE status = ?"
        params: list[object] = [OrderStatus.ACTIVE.value]
        if position_id is not None:
            sql += " AND position_id = ?"
            params.append(position_id)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_order(row) for row in rows]

    def get_orders(self, limit: int = 50) -> list[Order]:
        rows = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        at: datetime | None = None,
    ) -> bool:
        """Move an ACTIVE order to a terminal status.

        The update is guarded on ``status = 'active'`` so a terminal order
        is never rewritten.

        Returns
        -------
        bool
            True if a row transitioned, False if the order was already
            terminal or does not exist.
        """
        status = OrderStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Cannot transition an order to {status.value}")
        at = at or utcnow()
        column = {
            OrderStatus.TRIGGERED: "triggered_at",
            OrderStatus.CANCELED: "canceled_at",
            OrderStatus.FAILED: None,
        }[status]
        with self.transaction():
            if column is None:
                cursor = self.conn.execute(
                    "UPDATE orders SET status = ? WHERE id = ? AND status = ?",
                    (status.value, order_id, OrderStatus.ACTIVE.value),
                )
            else:
                cursor = self.conn.execute(
                    f"UPDATE orders SET status = ?, {column} = ? "
                    "WHERE id = ? AND status = ?",
                    (status.value, _ts(at), order_id, OrderStatus.ACTIVE.value),
                )
        return cursor.rowcount > 0

    def cancel_active_orders(self, position_id: str, at: datetime | None = None) -> int:
        """Mark every ACTIVE order of a position CANCELED. Returns the count."""
        at = at or utcnow()
        with self.transaction():
            cursor = self.conn.execute(
                "UPDATE orders SET status = ?, canceled_at = ? "
                "WHERE position_id = ? AND status = ?",
                (
                    OrderStatus.CANCELED.value,
                    _ts(at),
                    position_id,
                    OrderStatus.ACTIVE.value,
                ),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Trades, decisions, account history (append-only)
    # ------------------------------------------------------------------

    def record_trade(self, trade: Trade) -> Trade:
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO trades ({_TRADE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    trade.id,
                    trade.symbol,
                    trade.trade_type.value,
                    trade.side.value,
                    trade.price,
                    trade.quantity,
                    trade.leverage,
                    trade.fee,
                    trade.pnl,
                    trade.reason,
                    trade.order_id,
                    trade.position_id,
                    _ts(trade.executed_at),
                ),
            )
        logger.info(
            "trade_recorded",
            symbol=trade.symbol,
            trade_type=trade.trade_type.value,
            side=trade.side.value,
            price=trade.price,
            quantity=trade.quantity,
            pnl=trade.pnl,
        )
        return trade

    def get_trades(self, limit: int = 20, symbol: str | None = None) -> list[Trade]:
        """Most recent trades first."""
        if symbol is None:
            rows = self.conn.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades ORDER BY executed_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"SELECT {_TRADE_COLUMNS} FROM trades WHERE symbol = ? "
                "ORDER BY executed_at DESC, rowid DESC LIMIT ?",
                (symbol, limit),
            ).fetchall()
        return [self._row_to_trade(row) for row in rows]

    def find_trade_by_order(self, order_id: str) -> Trade | None:
        row = self.conn.execute(
            f"SELECT {_TRADE_COLUMNS} FROM trades WHERE order_id = ? LIMIT 1",
            (order_id,),
        ).fetchone()
        return self._row_to_trade(row) if row else None

    def record_decision(self, decision: Decision) -> Decision:
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO decisions ({_DECISION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    decision.id,
                    decision.iteration,
                    decision.account_value,
                    decision.position_count,
                    decision.content,
                    decision.prompt_tokens,
                    decision.completion_tokens,
                    decision.model,
                    _ts(decision.executed_at),
                ),
            )
        return decision

    def get_decisions(self, limit: int = 5) -> list[Decision]:
        rows = self.conn.execute(
            f"SELECT {_DECISION_COLUMNS} FROM decisions "
            "ORDER BY iteration DESC, executed_at DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            Decision(
                id=row[0],
                iteration=row[1],
                account_value=row[2],
                position_count=row[3],
                content=row[4],
                prompt_tokens=row[5],
                completion_tokens=row[6],
                model=row[7],
                executed_at=_parse_ts(row[8]),
            )
            for row in rows
        ]

    def latest_iteration(self) -> int:
        """Iteration of the most recent decision row, 0 when none exist."""
        row = self.conn.execute("SELECT MAX(iteration) FROM decisions").fetchone()
        return row[0] or 0

    def save_snapshot(self, snapshot: AccountSnapshot) -> AccountSnapshot:
        m = snapshot.metrics
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO account_history ({_HISTORY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    snapshot.id,
                    snapshot.iteration,
                    m.total_balance,
                    m.available,
                    m.unrealized_pnl,
                    m.initial_balance,
                    m.peak_balance,
                    m.return_percent,
                    m.drawdown_from_peak,
                    m.drawdown_from_initial,
                    m.sharpe_ratio,
                    _ts(snapshot.recorded_at),
                ),
            )
        return snapshot

    def get_snapshots(self, limit: int | None = None) -> list[AccountSnapshot]:
        """Account history in chronological order (oldest first)."""
        sql = f"SELECT {_HISTORY_COLUMNS} FROM account_history ORDER BY recorded_at, rowid"
        rows = self.conn.execute(sql).fetchall()
        if limit is not None:
            rows = rows[-limit:]
        return [self._row_to_snapshot(row) for row in rows]

    def latest_snapshot(self) -> AccountSnapshot | None:
        row = self.conn.execute(
            f"SELECT {_HISTORY_COLUMNS} FROM account_history "
            "ORDER BY recorded_at DESC, rowid DESC LIMIT 1"
        ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def initial_balance(self) -> float | None:
        """Total balance of the first recorded snapshot, if any."""
        row = self.conn.execute(
            "SELECT total_balance FROM account_history ORDER BY recorded_at, rowid LIMIT 1"
        ).fetchone()
        return row[0] if row else None

    def peak_balance(self) -> float | None:
        row = self.conn.execute("SELECT MAX(total_balance) FROM account_history").fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
        logger.debug("ledger_closed", db_path=self.db_path)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _position_params(position: Position) -> tuple:
        return (
            position.id,
            position.symbol,
            position.side.value,
            position.quantity,
            position.entry_price,
            position.current_price,
            position.liquidation_price,
            position.leverage,
            position.margin,
            position.unrealized_pnl,
            position.peak_pnl_percent,
            position.entry_reason,
            position.exit_plan,
            position.order_id,
            _ts(position.opened_at),
            _ts(position.updated_at),
        )

    @staticmethod
    def _row_to_position(row: tuple) -> Position:
        return Position(
            id=row[0],
            symbol=row[1],
            side=PositionSide(row[2]),
            quantity=row[3],
            entry_price=row[4],
            current_price=row[5],
            liquidation_price=row[6],
            leverage=row[7],
            margin=row[8],
            unrealized_pnl=row[9],
            peak_pnl_percent=row[10],
            entry_reason=row[11],
            exit_plan=row[12],
            order_id=row[13],
            opened_at=_parse_ts(row[14]),
            updated_at=_parse_ts(row[15]),
        )

    @staticmethod
    def _row_to_order(row: tuple) -> Order:
        return Order(
            id=row[0],
            symbol=row[1],
            position_id=row[2],
            position_side=row[3],
            order_type=row[4],
            trigger_price=row[5],
            quantity=row[6],
            exchange_id=row[7],
            status=row[8],
            reason=row[9],
            created_at=_parse_ts(row[10]),
            triggered_at=_parse_ts(row[11]),
            canceled_at=_parse_ts(row[12]),
        )

    @staticmethod
    def _row_to_trade(row: tuple) -> Trade:
        return Trade(
            id=row[0],
            symbol=row[1],
            trade_type=row[2],
            side=row[3],
            price=row[4],
            quantity=row[5],
            leverage=row[6],
            fee=row[7],
            pnl=row[8],
            reason=row[9],
            order_id=row[10],
            position_id=row[11],
            executed_at=_parse_ts(row[12]),
        )

    @staticmethod
    def _row_to_snapshot(row: tuple) -> AccountSnapshot:
        return AccountSnapshot(
            id=row[0],
            iteration=row[1],
            metrics=AccountMetrics(
                total_balance=row[2],
                available=row[3],
                unrealized_pnl=row[4],
                initial_balance=row[5],
                peak_balance=row[6],
                return_percent=row[7],
                drawdown_from_peak=row[8],
                drawdown_from_initial=row[9],
                sharpe_ratio=row[10],
            ),
            recorded_at=_parse_ts(row[11]),
        )

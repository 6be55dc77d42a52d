"""PositionReconciler: keep the ledger an accurate mirror of the exchange.

The exchange is the source of truth for what is open; the ledger is the
source of truth for *why* it is open (entry reason, exit plan, open time,
peak pnl). ``sync()`` merges the two:

    live (symbol, side) + local row   -> refresh price/pnl/size, keep metadata,
                                         ratchet peak pnl upward
    live (symbol, side), no local row -> insert, seed peak from positive pnl
    local row, not live               -> delete; cancel its remaining orders

Conditional orders are then polled by exchange id. A fill is aggregated
from the exchange trade history into one close trade and every sibling
order of the same position is cancelled: once one exit leg fills, the
other has nothing left to exit.

All mutating entry points (``sync``, ``open_position``, ``close_position``,
``refresh_peak``, ``update_position_plan``) share one ``asyncio.Lock``, so
the background poller and the trading cycle never reconcile concurrently;
a second caller waits for the first to finish.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from prism.exchange.base import ExchangeError, ExchangeGateway
from prism.exchange.types import (
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_FILLED,
    STATUS_NEW,
    STATUS_PARTIALLY_FILLED,
    STATUS_REJECTED,
    ExchangePosition,
    TradeFill,
)
from prism.risk.rules import ratchet_peak
from prism.store.ledger import Ledger, PositionNotFoundError
from prism.store.models import (
    Order,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Trade,
    TradeType,
    utcnow,
)

logger = structlog.get_logger(__name__)

_STATUS_MAP: dict[str, OrderStatus] = {
    STATUS_NEW: OrderStatus.ACTIVE,
    STATUS_PARTIALLY_FILLED: OrderStatus.ACTIVE,
    STATUS_FILLED: OrderStatus.TRIGGERED,
    STATUS_CANCELED: OrderStatus.CANCELED,
    STATUS_REJECTED: OrderStatus.FAILED,
    STATUS_EXPIRED: OrderStatus.FAILED,
}


def map_exchange_status(status: str) -> OrderStatus | None:
    """Map an exchange order status string to a ledger status.

    Returns None for unrecognized strings; callers leave the order as is.
    """
    return _STATUS_MAP.get(status.upper())


def parse_exchange_order_id(value: str | int | None) -> int:
    """Parse a stored exchange order id.

    Raises
    ------
    ValueError
        If the id is empty, non-numeric, or not positive.
    """
    if value is None or str(value).strip() == "":
        raise ValueError("empty exchange order id")
    order_id = int(str(value).strip())
    if order_id <= 0:
        raise ValueError(f"invalid exchange order id: {value!r}")
    return order_id


def aggregate_fills(fills: list[TradeFill]) -> tuple[float, float, float, float, datetime]:
    """Collapse fills into (avg_price, quantity, commission, realized_pnl, last_time).

    The average price is quantity-weighted; the time is the last fill's.
    """
    quantity = sum(f.quantity for f in fills)
    notional = sum(f.price * f.quantity for f in fills)
    avg_price = notional / quantity if quantity > 0 else 0.0
    commission = sum(f.commission for f in fills)
    pnl = sum(f.realized_pnl for f in fills)
    last_time = max(f.time for f in fills)
    return avg_price, quantity, commission, pnl, last_time


@dataclass
class SyncReport:
    """Counts from one reconciliation pass."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    triggered: int = 0
    canceled: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class PositionReconciler:
    """Single-flight reconciliation of positions and conditional orders.

    Parameters
    ----------
    gateway : ExchangeGateway
        Exchange capability surface (live or paper).
    ledger : Ledger
        Local store of positions, orders, and trades.
    retry_attempts : int
        Attempts for idempotent order-status queries (default 3).
    retry_base_delay : float
        First backoff delay in seconds, doubled per attempt (default 0.5).
    retry_max_delay : float
        Backoff ceiling in seconds (default 4.0).
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: Ledger,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 4.0,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task | None = None
        self._poll_stop: asyncio.Event | None = None

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def gateway(self) -> ExchangeGateway:
        return self._gateway

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Reconcile positions, then conditional orders.

        Raises
        ------
        ExchangeError
            If live positions cannot be fetched. Nothing is written.
        """
        async with self._lock:
            return await self._sync_unlocked()

    async def sync_order_status(self) -> SyncReport:
        """Poll every ACTIVE order and apply exchange-side transitions."""
        async with self._lock:
            report = SyncReport()
            await self._sync_orders(report, {p.id: p for p in self._ledger.get_positions()})
            return report

    async def _sync_unlocked(self) -> SyncReport:
        report = SyncReport()
        live = await self._gateway.get_positions()
        known = {p.id: p for p in self._ledger.get_positions()}
        stale_ids = self._sync_positions(live, report)
        unresolved = await self._sync_orders(report, known)
        for position_id in stale_ids:
            await self._cancel_position_orders(position_id, report, skip=unresolved)

        logger.debug(
            "sync_complete",
            inserted=report.inserted,
            updated=report.updated,
            deleted=report.deleted,
            triggered=report.triggered,
            canceled=report.canceled,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    def _sync_positions(self, live: list[ExchangePosition], report: SyncReport) -> list[str]:
        """Merge live positions into the ledger in one transaction.

        Returns the ids of deleted (stale) positions.
        """
        local = {p.key: p for p in self._ledger.get_positions()}
        seen: set[tuple[str, str]] = set()
        stale_ids: list[str] = []

        with self._ledger.transaction():
            for entry in live:
                key = (entry.symbol, entry.side)
                seen.add(key)
                try:
                    existing = local.get(key)
                    if existing is None:
                        self._insert_from_live(entry)
                        report.inserted += 1
                    elif self._refresh_from_live(existing, entry):
                        report.updated += 1
                except Exception as exc:
                    logger.warning(
                        "position_sync_failed",
                        symbol=entry.symbol,
                        side=entry.side,
                        error=str(exc),
                    )
                    report.errors.append(f"{entry.symbol} {entry.side}: {exc}")

            for key, position in local.items():
                if key in seen:
                    continue
                try:
                    self._ledger.delete_position(position.id)
                    stale_ids.append(position.id)
                    report.deleted += 1
                    logger.info(
                        "position_removed",
                        symbol=position.symbol,
                        side=position.side.value,
                        position_id=position.id,
                    )
                except Exception as exc:
                    logger.warning(
                        "position_delete_failed",
                        symbol=position.symbol,
                        position_id=position.id,
                        error=str(exc),
                    )
                    report.errors.append(f"{position.symbol}: {exc}")

        return stale_ids

    def _insert_from_live(self, entry: ExchangePosition) -> Position:
        position = Position(
            symbol=entry.symbol,
            side=PositionSide(entry.side),
            quantity=entry.quantity,
            entry_price=entry.entry_price,
            current_price=entry.mark_price,
            liquidation_price=entry.liquidation_price,
            leverage=entry.leverage,
            margin=_margin(entry),
            unrealized_pnl=entry.unrealized_pnl,
        )
        pnl = position.pnl_percent()
        if pnl > 0:
            position.peak_pnl_percent = pnl
        self._ledger.insert_position(position)
        logger.info(
            "position_discovered",
            symbol=position.symbol,
            side=position.side.value,
            quantity=position.quantity,
            entry_price=position.entry_price,
        )
        return position

    def _refresh_from_live(self, position: Position, entry: ExchangePosition) -> bool:
        """Refresh exchange-owned fields in place. Returns True if written."""
        before = (
            position.quantity,
            position.entry_price,
            position.current_price,
            position.liquidation_price,
            position.leverage,
            position.margin,
            position.unrealized_pnl,
            position.peak_pnl_percent,
        )
        position.quantity = entry.quantity
        position.entry_price = entry.entry_price
        position.current_price = entry.mark_price
        position.liquidation_price = entry.liquidation_price
        position.leverage = entry.leverage
        position.margin = _margin(entry)
        position.unrealized_pnl = entry.unrealized_pnl
        pnl = position.pnl_percent()
        if pnl > position.peak_pnl_percent:
            position.peak_pnl_percent = pnl

        after = (
            position.quantity,
            position.entry_price,
            position.current_price,
            position.liquidation_price,
            position.leverage,
            position.margin,
            position.unrealized_pnl,
            position.peak_pnl_percent,
        )
        if after == before:
            return False
        position.updated_at = utcnow()
        self._ledger.update_position(position)
        return True

    # ------------------------------------------------------------------
    # Order status
    # ------------------------------------------------------------------

    async def _sync_orders(self, report: SyncReport, known: dict[str, Position]) -> set[str]:
        """Apply exchange status to every ACTIVE order.

        ``known`` maps position ids to the rows seen before this pass, so
        a fill can still be attributed after its position was removed.
        Returns ids of orders whose status could not be determined.
        """
        unresolved: set[str] = set()
        handled: set[str] = set()

        for order in self._ledger.find_active_orders():
            if order.id in handled:
                continue
            log = logger.bind(order_id=order.id, symbol=order.symbol)
            try:
                exchange_id = parse_exchange_order_id(order.exchange_id)
            except ValueError as exc:
                log.warning("order_exchange_id_invalid", exchange_id=order.exchange_id, error=str(exc))
                report.skipped += 1
                continue

            try:
                result = await self._with_retry(
                    self._gateway.get_order_status, order.symbol, exchange_id
                )
            except ExchangeError as exc:
                log.warning("order_status_unavailable", exchange_id=exchange_id, error=str(exc))
                unresolved.add(order.id)
                report.errors.append(f"order {order.id}: {exc}")
                continue

            status = map_exchange_status(result.status)
            if status is None:
                log.warning("order_status_unknown", exchange_status=result.status)
                report.skipped += 1
                continue
            if status is OrderStatus.ACTIVE:
                continue

            if status is OrderStatus.TRIGGERED:
                position = known.get(order.position_id)
                leverage = position.leverage if position is not None else 0
                handled |= await self._handle_fill(order, exchange_id, leverage, report)
            else:
                if self._ledger.update_order_status(order.id, status):
                    if status is OrderStatus.CANCELED:
                        report.canceled += 1
                    else:
                        report.failed += 1
                    log.info("order_status_changed", status=status.value)

        return unresolved

    async def _handle_fill(
        self,
        order: Order,
        exchange_id: int,
        leverage: int,
        report: SyncReport,
    ) -> set[str]:
        """Record the fill of ``order`` and cancel its siblings.

        Returns the ids of orders this call moved out of ACTIVE.
        """
        log = logger.bind(order_id=order.id, symbol=order.symbol)

        trade: Trade | None = None
        filled_at = utcnow()
        try:
            fills = await self._gateway.get_trade_history(order.symbol, order_id=exchange_id)
            fills = [f for f in fills if f.order_id == exchange_id]
            if fills:
                avg_price, quantity, commission, pnl, filled_at = aggregate_fills(fills)
                trade = Trade(
                    symbol=order.symbol,
                    trade_type=TradeType.CLOSE,
                    side=order.position_side,
                    price=avg_price,
                    quantity=quantity,
                    leverage=leverage,
                    fee=commission,
                    pnl=pnl,
                    reason=f"Order triggered: {order.order_type.value} @ ${avg_price:.2f}",
                    order_id=str(exchange_id),
                    position_id=order.position_id,
                    executed_at=filled_at,
                )
            else:
                log.warning("fill_history_empty", exchange_id=exchange_id)
        except ExchangeError as exc:
            log.warning("fill_history_unavailable", exchange_id=exchange_id, error=str(exc))

        siblings = [
            o for o in self._ledger.find_active_orders(order.position_id) if o.id != order.id
        ]
        for sibling in siblings:
            await self._cancel_on_exchange(sibling)

        moved = {order.id}
        with self._ledger.transaction():
            self._ledger.update_order_status(order.id, OrderStatus.TRIGGERED, at=filled_at)
            if trade is not None and self._ledger.find_trade_by_order(trade.order_id) is None:
                self._ledger.record_trade(trade)
            for sibling in siblings:
                if self._ledger.update_order_status(sibling.id, OrderStatus.CANCELED):
                    report.canceled += 1
                    moved.add(sibling.id)
        report.triggered += 1

        log.info(
            "order_filled",
            order_type=order.order_type.value,
            price=trade.price if trade else None,
            siblings_canceled=len(siblings),
        )
        return moved

    async def _cancel_on_exchange(self, order: Order) -> None:
        """Best-effort exchange-side cancel; failures are logged only."""
        try:
            exchange_id = parse_exchange_order_id(order.exchange_id)
            await self._gateway.cancel_order(order.symbol, exchange_id)
        except (ValueError, ExchangeError) as exc:
            logger.warning(
                "order_cancel_failed",
                order_id=order.id,
                symbol=order.symbol,
                error=str(exc),
            )

    async def _cancel_position_orders(
        self,
        position_id: str,
        report: SyncReport,
        skip: set[str] | frozenset[str] = frozenset(),
    ) -> None:
        orders = [o for o in self._ledger.find_active_orders(position_id) if o.id not in skip]
        for order in orders:
            await self._cancel_on_exchange(order)
        with self._ledger.transaction():
            for order in orders:
                if self._ledger.update_order_status(order.id, OrderStatus.CANCELED):
                    report.canceled += 1

    async def _with_retry(self, fn, *args, **kwargs):
        """Call an idempotent gateway query with exponential backoff."""
        delay = self._retry_base_delay
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except ExchangeError as exc:
                if attempt >= self._retry_attempts:
                    raise
                logger.debug(
                    "exchange_query_retry",
                    attempt=attempt,
                    backoff_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._retry_max_delay)
        raise RuntimeError("unreachable")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def open_position(
        self,
        symbol: str,
        side: PositionSide | str,
        quantity: float,
        leverage: int,
        entry_reason: str = "",
        exit_plan: str = "",
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Position | None:
        """Open (or add to) a position and record the plan.

        The market order is never retried. After the fill the ledger is
        synced so the row reflects exchange truth, then the ``open`` trade
        and the plan are written in one transaction. Optional stop-loss /
        take-profit orders are placed and tracked as ACTIVE orders.

        Returns
        -------
        Position | None
            The synced position, or None if it could not be read back.
        """
        side = PositionSide(side)
        async with self._lock:
            if side is PositionSide.LONG:
                result = await self._gateway.open_long(symbol, quantity, leverage)
            else:
                result = await self._gateway.open_short(symbol, quantity, leverage)

            position: Position | None = None
            try:
                await self._sync_unlocked()
                position = self._ledger.find_position(symbol, side)
            except (ExchangeError, PositionNotFoundError) as exc:
                logger.warning("open_sync_failed", symbol=symbol, side=side.value, error=str(exc))

            trade = Trade(
                symbol=symbol,
                trade_type=TradeType.OPEN,
                side=side,
                price=result.avg_price or result.price,
                quantity=result.executed_qty or quantity,
                leverage=leverage,
                reason=entry_reason.strip(),
                order_id=str(result.order_id),
                position_id=position.id if position else "",
            )
            with self._ledger.transaction():
                self._ledger.record_trade(trade)
                if position is not None:
                    self._apply_plan(position, entry_reason, exit_plan)
                    if not position.order_id:
                        position.order_id = str(result.order_id)
                    self._ledger.update_position(position)

            if position is not None:
                if stop_loss:
                    await self._place_exit(position, OrderType.STOP_LOSS, stop_loss)
                if take_profit:
                    await self._place_exit(position, OrderType.TAKE_PROFIT, take_profit)

        logger.info(
            "position_opened",
            symbol=symbol,
            side=side.value,
            quantity=trade.quantity,
            price=trade.price,
            leverage=leverage,
        )
        return position

    async def _place_exit(self, position: Position, order_type: OrderType, trigger: float) -> None:
        try:
            if order_type is OrderType.STOP_LOSS:
                result = await self._gateway.create_stop_loss_order(
                    position.symbol, position.side.value, position.quantity, trigger
                )
            else:
                result = await self._gateway.create_take_profit_order(
                    position.symbol, position.side.value, position.quantity, trigger
                )
        except ExchangeError as exc:
            logger.warning(
                "exit_order_failed",
                symbol=position.symbol,
                order_type=order_type.value,
                trigger_price=trigger,
                error=str(exc),
            )
            return
        self._ledger.insert_order(
            Order(
                symbol=position.symbol,
                position_id=position.id,
                position_side=position.side,
                order_type=order_type,
                trigger_price=trigger,
                quantity=position.quantity,
                exchange_id=str(result.order_id),
                reason=f"{order_type.value} @ {trigger}",
            )
        )

    async def close_position(self, position: Position, reason: str) -> Trade:
        """Reduce-only market close of the whole position.

        After the exchange accepts the close, the ``close`` trade, the row
        deletion and the cancellation of its ACTIVE orders are written in
        one transaction.

        The row is re-read under the lock, so the order size and the
        recorded pnl come from the latest sync rather than from the
        caller's copy.

        Raises
        ------
        PositionNotFoundError
            If the position is no longer in the ledger.
        ExchangeError
            If the close order is rejected. The ledger is untouched.
        """
        async with self._lock:
            position = self._ledger.find_position(position.symbol, position.side)
            result = await self._gateway.close_position(
                position.symbol, position.side.value, position.quantity
            )
            active = self._ledger.find_active_orders(position.id)
            for order in active:
                await self._cancel_on_exchange(order)

            trade = Trade(
                symbol=position.symbol,
                trade_type=TradeType.CLOSE,
                side=position.side,
                price=result.avg_price or result.price or position.current_price,
                quantity=position.quantity,
                leverage=position.leverage,
                pnl=position.unrealized_pnl,
                reason=reason,
                order_id=str(result.order_id),
                position_id=position.id,
            )
            with self._ledger.transaction():
                self._ledger.record_trade(trade)
                self._ledger.delete_position(position.id)
                self._ledger.cancel_active_orders(position.id)

        logger.info(
            "position_closed",
            symbol=position.symbol,
            side=position.side.value,
            pnl=position.unrealized_pnl,
            reason=reason,
        )
        return trade

    async def refresh_peak(self, symbol: str, side: PositionSide | str) -> Position:
        """Re-read a position and persist its peak pnl if the current pnl is higher.

        Raises
        ------
        PositionNotFoundError
            If no position exists for (symbol, side).
        """
        async with self._lock:
            position = self._ledger.find_position(symbol, side)
            if ratchet_peak(position):
                self._ledger.update_position(position)
                logger.debug(
                    "peak_pnl_raised",
                    symbol=position.symbol,
                    side=position.side.value,
                    peak_pnl_percent=position.peak_pnl_percent,
                )
        return position

    async def update_position_plan(
        self,
        symbol: str,
        side: PositionSide | str,
        entry_reason: str = "",
        exit_plan: str = "",
    ) -> bool:
        """Store a new entry reason / exit plan. Returns True if changed.

        Values are trimmed; empty or unchanged values are ignored.

        Raises
        ------
        PositionNotFoundError
            If no position exists for (symbol, side).
        """
        async with self._lock:
            position = self._ledger.find_position(symbol, side)
            if not self._apply_plan(position, entry_reason, exit_plan):
                return False
            self._ledger.update_position(position)
        return True

    @staticmethod
    def _apply_plan(position: Position, entry_reason: str, exit_plan: str) -> bool:
        changed = False
        entry_reason = (entry_reason or "").strip()
        exit_plan = (exit_plan or "").strip()
        if entry_reason and entry_reason != position.entry_reason:
            position.entry_reason = entry_reason
            changed = True
        if exit_plan and exit_plan != position.exit_plan:
            position.exit_plan = exit_plan
            changed = True
        return changed

    # ------------------------------------------------------------------
    # Background poller
    # ------------------------------------------------------------------

    def start_polling(self, interval: float = 10.0) -> None:
        """Run ``sync()`` every ``interval`` seconds on the running loop."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_stop = asyncio.Event()
        self._poll_task = asyncio.create_task(self._poll_loop(interval, self._poll_stop))
        logger.info("sync_poller_started", interval_seconds=interval)

    async def stop_polling(self) -> None:
        """Stop the poller and wait for an in-flight sync. Safe to call twice."""
        task, stop = self._poll_task, self._poll_stop
        if task is None or stop is None:
            return
        self._poll_task = None
        self._poll_stop = None
        stop.set()
        await task
        logger.info("sync_poller_stopped")

    async def _poll_loop(self, interval: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.sync()
            except Exception as exc:
                logger.warning("background_sync_failed", error=str(exc))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue


def _margin(entry: ExchangePosition) -> float:
    if entry.leverage <= 0:
        return 0.0
    return entry.entry_price * entry.quantity / entry.leverage

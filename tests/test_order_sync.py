"""Tests for conditional order status sync: fills, sibling cancels, retries."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from prism.exchange.base import ExchangeError
from prism.exchange.types import OrderResult, TradeFill
from prism.execution.reconciler import (
    PositionReconciler,
    aggregate_fills,
    map_exchange_status,
    parse_exchange_order_id,
)
from prism.store.models import (
    Order,
    OrderStatus,
    OrderType,
    Position,
    Trade,
    TradeType,
    utcnow,
)


def _make_fill(price: float, quantity: float, order_id: int = 5001, minutes: int = 0) -> TradeFill:
    return TradeFill(
        symbol="BTCUSDT",
        order_id=order_id,
        price=price,
        quantity=quantity,
        commission=0.1,
        realized_pnl=-2.0,
        time=utcnow() + timedelta(minutes=minutes),
    )


def _make_gateway(positions: list | None = None) -> MagicMock:
    gateway = MagicMock()
    gateway.get_positions = AsyncMock(return_value=positions or [])
    gateway.get_order_status = AsyncMock()
    gateway.get_trade_history = AsyncMock(return_value=[])
    gateway.cancel_order = AsyncMock()
    return gateway


def _seed(ledger, exchange_ids: tuple[str, ...] = ("5001", "5002")) -> tuple[Position, list[Order]]:
    """Insert a BTC long with a stop-loss and take-profit order."""
    pos = ledger.insert_position(
        Position(
            symbol="BTCUSDT",
            side="long",
            quantity=0.01,
            entry_price=100_000.0,
            current_price=100_000.0,
            leverage=10,
        )
    )
    kinds = (OrderType.STOP_LOSS, OrderType.TAKE_PROFIT)
    triggers = (99_000.0, 103_000.0)
    orders = [
        ledger.insert_order(Order("BTCUSDT", pos.id, "long", kind, trigger, 0.01, exchange_id))
        for kind, trigger, exchange_id in zip(kinds, triggers, exchange_ids)
    ]
    return pos, orders


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("NEW", OrderStatus.ACTIVE),
            ("PARTIALLY_FILLED", OrderStatus.ACTIVE),
            ("FILLED", OrderStatus.TRIGGERED),
            ("filled", OrderStatus.TRIGGERED),
            ("CANCELED", OrderStatus.CANCELED),
            ("REJECTED", OrderStatus.FAILED),
            ("EXPIRED", OrderStatus.FAILED),
            ("PENDING_NEW", None),
        ],
    )
    def test_map_exchange_status(self, raw, expected):
        assert map_exchange_status(raw) is expected

    @pytest.mark.parametrize("value", ["", "   ", None, "abc", "0", "-5"])
    def test_parse_rejects_invalid_ids(self, value):
        with pytest.raises(ValueError):
            parse_exchange_order_id(value)

    def test_parse_accepts_numeric(self):
        assert parse_exchange_order_id(" 1000001 ") == 1_000_001
        assert parse_exchange_order_id(42) == 42

    def test_aggregate_fills_weighted_average(self):
        fills = [_make_fill(100.0, 1.0, minutes=0), _make_fill(110.0, 3.0, minutes=5)]
        avg_price, quantity, commission, pnl, last_time = aggregate_fills(fills)
        assert avg_price == pytest.approx(107.5)
        assert quantity == pytest.approx(4.0)
        assert commission == pytest.approx(0.2)
        assert pnl == pytest.approx(-4.0)
        assert last_time == fills[1].time


class TestFillOnPaper:
    @pytest.mark.asyncio
    async def test_stop_fill_records_trade_and_cancels_take_profit(self, paper, ledger):
        reconciler = PositionReconciler(paper, ledger, retry_base_delay=0)
        pos = await reconciler.open_position(
            "BTCUSDT",
            "long",
            0.01,
            10,
            "breakout",
            "止损 $99,000, 止盈 $103,000",
            stop_loss=99_000.0,
            take_profit=103_000.0,
        )
        sl, tp = sorted(ledger.find_active_orders(pos.id), key=lambda o: o.order_type.value)
        assert sl.order_type is OrderType.STOP_LOSS

        paper.set_price("BTCUSDT", 98_900.0)
        report = await reconciler.sync()

        assert report.deleted == 1
        assert report.triggered == 1
        assert ledger.get_order(sl.id).status is OrderStatus.TRIGGERED
        assert ledger.get_order(tp.id).status is OrderStatus.CANCELED

        close = ledger.get_trades()[0]
        assert close.trade_type is TradeType.CLOSE
        assert close.price == pytest.approx(98_900.0)
        assert close.pnl == pytest.approx(-11.0)
        assert close.leverage == 10
        assert close.order_id == sl.exchange_id

        tp_status = await paper.get_order_status("BTCUSDT", int(tp.exchange_id))
        assert tp_status.status == "CANCELED"

    @pytest.mark.asyncio
    async def test_repeat_sync_records_fill_once(self, paper, ledger):
        reconciler = PositionReconciler(paper, ledger, retry_base_delay=0)
        await reconciler.open_position(
            "BTCUSDT", "long", 0.01, 10, "breakout", "止损 $99,000", stop_loss=99_000.0
        )
        paper.set_price("BTCUSDT", 98_500.0)

        await reconciler.sync()
        second = await reconciler.sync()

        closes = [t for t in ledger.get_trades() if t.trade_type is TradeType.CLOSE]
        assert len(closes) == 1
        assert second.triggered == 0


class TestOrderStatusSync:
    @pytest.mark.asyncio
    async def test_existing_trade_is_not_duplicated(self, ledger):
        pos, (sl, _) = _seed(ledger)
        ledger.record_trade(
            Trade("BTCUSDT", TradeType.CLOSE, "long", 99_000.0, 0.01, order_id="5001")
        )
        gateway = _make_gateway([])
        gateway.get_order_status.side_effect = [
            OrderResult(5001, "BTCUSDT", "FILLED"),
        ]
        gateway.get_trade_history.return_value = [_make_fill(99_000.0, 0.01)]
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        report = await reconciler.sync_order_status()

        assert report.triggered == 1
        assert report.canceled == 1
        assert len(ledger.get_trades()) == 1
        assert ledger.get_order(sl.id).status is OrderStatus.TRIGGERED
        gateway.cancel_order.assert_awaited_once_with("BTCUSDT", 5002)

    @pytest.mark.asyncio
    async def test_fill_uses_only_matching_order_fills(self, ledger):
        pos, (sl, _) = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.return_value = OrderResult(5001, "BTCUSDT", "FILLED")
        gateway.get_trade_history.return_value = [
            _make_fill(99_000.0, 0.004),
            _make_fill(98_000.0, 0.006),
            _make_fill(50_000.0, 1.0, order_id=9999),
        ]
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        await reconciler.sync_order_status()

        trade = ledger.find_trade_by_order("5001")
        assert trade.quantity == pytest.approx(0.01)
        assert trade.price == pytest.approx(98_400.0)
        assert trade.position_id == pos.id
        assert trade.reason.startswith("Order triggered: stop_loss")

    @pytest.mark.asyncio
    async def test_history_failure_still_marks_triggered(self, ledger):
        _, (sl, tp) = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.return_value = OrderResult(5001, "BTCUSDT", "FILLED")
        gateway.get_trade_history.side_effect = ExchangeError("history down")
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        await reconciler.sync_order_status()

        assert ledger.get_trades() == []
        assert ledger.get_order(sl.id).status is OrderStatus.TRIGGERED
        assert ledger.get_order(tp.id).status is OrderStatus.CANCELED

    @pytest.mark.asyncio
    async def test_rejected_and_canceled_statuses(self, ledger):
        _, (sl, tp) = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.side_effect = [
            OrderResult(5001, "BTCUSDT", "REJECTED"),
            OrderResult(5002, "BTCUSDT", "CANCELED"),
        ]
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        report = await reconciler.sync_order_status()

        assert report.failed == 1
        assert report.canceled == 1
        stored = ledger.get_order(sl.id)
        assert stored.status is OrderStatus.FAILED
        assert stored.triggered_at is None
        assert ledger.get_order(tp.id).canceled_at is not None

    @pytest.mark.asyncio
    async def test_open_orders_stay_active(self, ledger):
        _, orders = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.return_value = OrderResult(5001, "BTCUSDT", "NEW")
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        report = await reconciler.sync_order_status()

        assert report.triggered == report.canceled == report.failed == 0
        assert all(ledger.get_order(o.id).is_active for o in orders)

    @pytest.mark.asyncio
    async def test_invalid_exchange_id_is_skipped(self, ledger):
        _, (sl, tp) = _seed(ledger, exchange_ids=("", "abc"))
        gateway = _make_gateway()
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        report = await reconciler.sync_order_status()

        assert report.skipped == 2
        gateway.get_order_status.assert_not_awaited()
        assert ledger.get_order(sl.id).is_active

    @pytest.mark.asyncio
    async def test_unknown_status_is_skipped(self, ledger):
        _, (sl, _) = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.return_value = OrderResult(5001, "BTCUSDT", "PENDING_NEW")
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        report = await reconciler.sync_order_status()

        assert report.skipped == 2
        assert ledger.get_order(sl.id).is_active

    @pytest.mark.asyncio
    async def test_status_query_is_retried(self, ledger):
        _, (sl, tp) = _seed(ledger)
        gateway = _make_gateway()
        gateway.get_order_status.side_effect = [
            ExchangeError("timeout"),
            ExchangeError("timeout"),
            OrderResult(5001, "BTCUSDT", "CANCELED"),
            OrderResult(5002, "BTCUSDT", "NEW"),
        ]
        reconciler = PositionReconciler(gateway, ledger, retry_base_delay=0)

        await reconciler.sync_order_status()

        assert gateway.get_order_status.await_count == 4
        assert ledger.get_order(sl.id).status is OrderStatus.CANCELED
        assert ledger.get_order(tp.id).is_active

    @pytest.mark.asyncio
    async def test_unresolved_order_survives_stale_cascade(self, ledger):
        _, (sl, tp) = _seed(ledger)
        gateway = _make_gateway([])
        gateway.get_order_status.side_effect = ExchangeError("unreachable")
        reconciler = PositionReconciler(gateway, ledger, retry_attempts=2, retry_base_delay=0)

        report = await reconciler.sync()

        assert report.deleted == 1
        assert len(report.errors) == 2
        assert ledger.get_order(sl.id).is_active
        assert ledger.get_order(tp.id).is_active
        gateway.cancel_order.assert_not_awaited()

"""Tests for DecisionContext serialization."""

from __future__ import annotations

import json
from datetime import timedelta

from prism.agent.context import DecisionContext
from prism.exchange.types import Kline
from prism.execution.market import KlineSummary, MarketSnapshot
from prism.store.models import AccountMetrics, Decision, Position, Trade, utcnow


def test_to_json_round_trips_plan_and_market():
    now = utcnow()
    klines = [
        Kline(now - timedelta(hours=2), 100.0, 102.0, 99.0, 101.0, 5.0),
        Kline(now - timedelta(hours=1), 101.0, 104.0, 100.0, 103.0, 6.0),
    ]
    snapshot = MarketSnapshot(
        symbol="BTCUSDT",
        price=103.0,
        funding_rate=0.0001,
        klines={"1h": klines},
        summaries={"1h": KlineSummary.from_klines("1h", klines)},
    )
    position = Position(
        symbol="BTCUSDT",
        side="long",
        quantity=1.0,
        entry_price=100.0,
        current_price=103.0,
        leverage=5,
        exit_plan="止损 $95, 止盈 $110",
        opened_at=now - timedelta(hours=3),
    )
    context = DecisionContext(
        iteration=12,
        started_at=now - timedelta(minutes=90),
        account=AccountMetrics(10_015.0, 9_900.0, 15.0, 10_000.0, 10_020.0, return_percent=0.15),
        market={"BTCUSDT": snapshot},
        positions=[position],
        recent_trades=[Trade("BTCUSDT", "open", "long", 100.0, 1.0, reason="breakout")],
        recent_decisions=[Decision(iteration=11, account_value=10_000.0, position_count=1, content="x" * 800)],
        now=now,
    )

    data = json.loads(context.to_json())

    assert data["iteration"] == 12
    assert data["elapsed_minutes"] == 90.0
    assert data["market"]["BTCUSDT"]["windows"]["1h"]["change_percent"] == 3.0
    assert data["market"]["BTCUSDT"]["recent_closes"]["1h"] == [101.0, 103.0]
    pos = data["positions"][0]
    assert pos["exit_plan"] == "止损 $95, 止盈 $110"
    assert pos["pnl_percent"] == 15.0
    assert pos["holding_hours"] == 3.0
    assert data["recent_trades"][0]["type"] == "open"
    assert len(data["recent_decisions"][0]["summary"]) == 500
    assert "止损" in context.to_json()

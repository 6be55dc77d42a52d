"""Tests for ActionExecutor -- open/close policy checks and typed rejections."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from prism.agent.actions import ActionExecutor
from prism.agent.llm.schemas import ClosePositionAction, OpenPositionAction
from prism.config.settings import TradingConfig
from prism.exchange.base import ExchangeError
from prism.exchange.types import SymbolInfo
from prism.execution.account import AccountService
from prism.execution.reconciler import PositionReconciler
from prism.execution.validation import DecisionValidationGate
from prism.risk.engine import RiskEngine
from prism.store.models import AccountMetrics, AccountSnapshot, OrderType


def _make_executor(paper, ledger, **cfg) -> ActionExecutor:
    config = TradingConfig(symbols=["BTCUSDT", "ETHUSDT"], **cfg)
    reconciler = PositionReconciler(paper, ledger, retry_base_delay=0)
    return ActionExecutor(
        reconciler=reconciler,
        gate=DecisionValidationGate(ledger, config.min_holding_hours),
        risk_engine=RiskEngine(reconciler, config),
        account=AccountService(paper, ledger),
        config=config,
    )


def _open(**overrides) -> OpenPositionAction:
    defaults = dict(
        symbol="BTCUSDT",
        side="long",
        leverage=10,
        quantity=100.0,
        reason="Breakout above 99,800 range high",
        exit_plan="止损 $99,000, 止盈 $103,000",
    )
    defaults.update(overrides)
    return OpenPositionAction(**defaults)


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_executes_and_records_plan(self, paper, ledger):
        executor = _make_executor(paper, ledger)

        outcome = await executor.execute(
            _open(symbol="btcusdt", stop_loss=99_000.0, take_profit=103_000.0)
        )

        assert outcome.success
        assert outcome.symbol == "BTCUSDT"
        assert outcome.detail["quantity"] == pytest.approx(0.01)
        assert outcome.detail["entry_price"] == 100_000.0
        pos = ledger.find_position("BTCUSDT", "long")
        assert pos.exit_plan == "止损 $99,000, 止盈 $103,000"
        assert pos.entry_reason == "Breakout above 99,800 range high"
        types = {o.order_type for o in ledger.find_active_orders(pos.id)}
        assert types == {OrderType.STOP_LOSS, OrderType.TAKE_PROFIT}

    @pytest.mark.parametrize(
        "overrides, code",
        [
            ({"symbol": "DOGEUSDT"}, "symbol_not_allowed"),
            ({"leverage": 20}, "leverage_out_of_range"),
            ({"leverage": 2}, "leverage_out_of_range"),
            ({"quantity": 1.0}, "margin_below_minimum"),
            ({"reason": "   "}, "missing_reason"),
            ({"exit_plan": ""}, "missing_exit_plan"),
            ({"quantity": 5.0, "leverage": 3}, "quantity_invalid"),
            ({"quantity": 20_000.0, "leverage": 3}, "exchange_error"),
        ],
    )
    @pytest.mark.asyncio
    async def test_open_rejections(self, paper, ledger, overrides, code):
        executor = _make_executor(paper, ledger)

        outcome = await executor.open_position(_open(**overrides))

        assert not outcome.success
        assert outcome.detail["success"] is False
        assert outcome.detail["code"] == code
        assert outcome.detail["error"]
        assert ledger.count_positions() == 0

    @pytest.mark.asyncio
    async def test_below_min_notional(self, paper, ledger):
        paper.get_symbol_info = AsyncMock(
            return_value=SymbolInfo("ETHUSDT", 0.001, 0.001, 10_000.0, 100.0, 3)
        )
        executor = _make_executor(paper, ledger)

        outcome = await executor.open_position(_open(symbol="ETHUSDT", quantity=10.0, leverage=5))

        assert outcome.detail["code"] == "below_min_notional"

    @pytest.mark.asyncio
    async def test_position_cap(self, paper, ledger):
        executor = _make_executor(paper, ledger, max_positions=1)
        assert (await executor.open_position(_open())).success

        outcome = await executor.open_position(_open(symbol="ETHUSDT", side="short", leverage=5))

        assert outcome.detail["code"] == "max_positions"
        assert ledger.count_positions() == 1

    @pytest.mark.asyncio
    async def test_drawdown_blocks_opens(self, paper, ledger):
        ledger.save_snapshot(
            AccountSnapshot(
                metrics=AccountMetrics(20_000.0, 20_000.0, 0.0, 20_000.0, 20_000.0),
                iteration=1,
            )
        )
        executor = _make_executor(paper, ledger)

        outcome = await executor.open_position(_open())

        assert outcome.detail["code"] == "drawdown_block"

    @pytest.mark.asyncio
    async def test_margin_type_already_set_is_ignored(self, paper, ledger):
        paper.set_margin_type = AsyncMock(
            side_effect=ExchangeError("No need to change margin type.", code=-4046)
        )
        executor = _make_executor(paper, ledger)
        assert (await executor.open_position(_open())).success

    @pytest.mark.asyncio
    async def test_margin_type_failure_is_reported(self, paper, ledger):
        paper.set_margin_type = AsyncMock(side_effect=ExchangeError("Margin is insufficient.", code=-2019))
        executor = _make_executor(paper, ledger)

        outcome = await executor.open_position(_open())

        assert outcome.detail["code"] == "exchange_error"
        assert "-2019" in outcome.detail["error"]


class TestClose:
    async def _open_btc(self, executor, exit_plan: str) -> None:
        outcome = await executor.open_position(_open(exit_plan=exit_plan))
        assert outcome.success

    @pytest.mark.asyncio
    async def test_close_matching_stop_loss(self, paper, ledger):
        executor = _make_executor(paper, ledger)
        await self._open_btc(executor, "止损 $99,000")
        paper.set_price("BTCUSDT", 99_000.0)

        outcome = await executor.execute(ClosePositionAction(symbol="BTCUSDT", reason="触发止损"))

        assert outcome.success
        assert outcome.detail["matched_condition"] == "stop_loss"
        assert outcome.detail["side"] == "long"
        assert ledger.count_positions() == 0

    @pytest.mark.asyncio
    async def test_close_with_unrelated_reason_rejected(self, paper, ledger):
        executor = _make_executor(paper, ledger)
        await self._open_btc(executor, "止损 $99,000, 止盈 $103,000")

        outcome = await executor.close_position(
            ClosePositionAction(symbol="BTCUSDT", reason="市场剧烈波动")
        )

        assert outcome.detail["code"] == "exit_plan_mismatch"
        assert "止损 $99,000, 止盈 $103,000" in outcome.detail["error"]
        assert ledger.count_positions() == 1

    @pytest.mark.asyncio
    async def test_early_take_profit_rejected(self, paper, ledger):
        executor = _make_executor(paper, ledger)
        await self._open_btc(executor, "止盈 $103,000")

        outcome = await executor.close_position(
            ClosePositionAction(symbol="BTCUSDT", reason="止盈目标达到")
        )

        assert outcome.detail["code"] == "min_holding_time"

    @pytest.mark.asyncio
    async def test_close_missing_position(self, paper, ledger):
        executor = _make_executor(paper, ledger)
        outcome = await executor.close_position(ClosePositionAction(symbol="ETHUSDT", reason="止损"))
        assert outcome.detail["code"] == "position_not_found"

    @pytest.mark.asyncio
    async def test_close_exchange_failure(self, paper, ledger):
        executor = _make_executor(paper, ledger)
        await self._open_btc(executor, "止损 $99,000")
        paper.close_position = AsyncMock(side_effect=ExchangeError("reduce only rejected"))

        outcome = await executor.close_position(ClosePositionAction(symbol="BTCUSDT", reason="止损"))

        assert outcome.detail["code"] == "exchange_error"
        assert ledger.count_positions() == 1

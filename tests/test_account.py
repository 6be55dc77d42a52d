"""Tests for AccountService metrics, drawdowns and the Sharpe ratio."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from prism.exchange.base import ExchangeError
from prism.exchange.types import AccountInfo
from prism.execution.account import AccountService, drawdown_percent, sharpe_ratio
from prism.store.models import AccountMetrics, AccountSnapshot


def _make_gateway(balance: float, unrealized: float = 0.0) -> MagicMock:
    gateway = MagicMock()
    gateway.get_account_info = AsyncMock(
        return_value=AccountInfo(total_balance=balance, available=balance, unrealized_pnl=unrealized)
    )
    return gateway


def _record(ledger, *balances: float) -> None:
    for i, balance in enumerate(balances):
        ledger.save_snapshot(
            AccountSnapshot(
                metrics=AccountMetrics(
                    total_balance=balance,
                    available=balance,
                    unrealized_pnl=0.0,
                    initial_balance=balances[0],
                    peak_balance=max(balances[: i + 1]),
                ),
                iteration=i + 1,
            )
        )


class TestHelpers:
    def test_drawdown_is_non_negative(self):
        assert drawdown_percent(10_000.0, 9_000.0) == pytest.approx(10.0)
        assert drawdown_percent(10_000.0, 11_000.0) == 0.0
        assert drawdown_percent(0.0, 100.0) == 0.0

    def test_sharpe_needs_two_points(self):
        assert sharpe_ratio([]) == 0.0
        assert sharpe_ratio([10_000.0]) == 0.0

    def test_sharpe_flat_series_is_zero(self):
        assert sharpe_ratio([10_000.0, 10_000.0, 10_000.0]) == 0.0

    def test_sharpe_matches_mean_over_std(self):
        balances = [100.0, 102.0, 101.0, 104.0]
        returns = np.diff(balances) / np.asarray(balances[:-1])
        expected = returns.mean() / returns.std()
        assert sharpe_ratio(balances) == pytest.approx(expected)
        assert sharpe_ratio(balances) > 0


class TestAccountService:
    @pytest.mark.asyncio
    async def test_first_run_uses_live_balance(self, ledger):
        service = AccountService(_make_gateway(10_000.0), ledger)
        metrics = await service.get_metrics()
        assert metrics.initial_balance == 10_000.0
        assert metrics.peak_balance == 10_000.0
        assert metrics.return_percent == 0.0
        assert metrics.drawdown_from_peak == 0.0

    @pytest.mark.asyncio
    async def test_metrics_from_history(self, ledger):
        _record(ledger, 10_000.0, 12_000.0)
        service = AccountService(_make_gateway(10_800.0, unrealized=-50.0), ledger)

        metrics = await service.get_metrics()

        assert metrics.initial_balance == 10_000.0
        assert metrics.peak_balance == 12_000.0
        assert metrics.return_percent == pytest.approx(8.0)
        assert metrics.drawdown_from_peak == pytest.approx(10.0)
        assert metrics.drawdown_from_initial == 0.0
        assert metrics.unrealized_pnl == -50.0

    @pytest.mark.asyncio
    async def test_live_balance_above_history_is_new_peak(self, ledger):
        _record(ledger, 10_000.0)
        service = AccountService(_make_gateway(10_500.0), ledger)
        metrics = await service.get_metrics()
        assert metrics.peak_balance == 10_500.0
        assert metrics.drawdown_from_peak == 0.0

    @pytest.mark.asyncio
    async def test_below_initial(self, ledger):
        _record(ledger, 10_000.0)
        service = AccountService(_make_gateway(9_000.0), ledger)
        metrics = await service.get_metrics()
        assert metrics.return_percent == pytest.approx(-10.0)
        assert metrics.drawdown_from_initial == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_exchange_failure_propagates(self, ledger):
        gateway = MagicMock()
        gateway.get_account_info = AsyncMock(side_effect=ExchangeError("down"))
        service = AccountService(gateway, ledger)
        with pytest.raises(ExchangeError):
            await service.get_metrics()

    @pytest.mark.asyncio
    async def test_save_snapshot(self, paper, ledger):
        service = AccountService(paper, ledger)
        metrics = await service.get_metrics()
        service.save_snapshot(metrics, iteration=3)
        latest = ledger.latest_snapshot()
        assert latest.iteration == 3
        assert latest.metrics.total_balance == 10_000.0

"""AccountService: derive account metrics from the exchange and history.

Initial balance is the first recorded snapshot (or the live balance when
no history exists); peak balance is the maximum of all snapshots and the
live balance, so it never decreases. Drawdowns are non-negative percents.
The Sharpe ratio is computed over snapshot-to-snapshot returns with a zero
risk-free rate and population standard deviation.
"""

from __future__ import annotations

import numpy as np
import structlog

from prism.exchange.base import ExchangeGateway
from prism.store.ledger import Ledger
from prism.store.models import AccountMetrics, AccountSnapshot

logger = structlog.get_logger()


def drawdown_percent(reference: float, balance: float) -> float:
    """Percent below ``reference`` (0 when at or above it)."""
    if reference <= 0:
        return 0.0
    return max(0.0, (reference - balance) / reference * 100)


def sharpe_ratio(balances: list[float]) -> float:
    """Per-period Sharpe ratio of a balance series (risk-free rate 0)."""
    if len(balances) < 2:
        return 0.0
    values = np.asarray(balances, dtype=float)
    prev = values[:-1]
    mask = prev > 0
    if not mask.any():
        return 0.0
    returns = (values[1:][mask] - prev[mask]) / prev[mask]
    if returns.size < 1:
        return 0.0
    std = returns.std()
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(returns.mean() / std)


class AccountService:
    """Account metrics backed by the exchange and the ledger's history."""

    def __init__(self, gateway: ExchangeGateway, ledger: Ledger) -> None:
        self._gateway = gateway
        self._ledger = ledger

    async def get_metrics(self) -> AccountMetrics:
        """Fetch the live balance and combine it with recorded history.

        Raises
        ------
        ExchangeError
            If account info cannot be fetched.
        """
        info = await self._gateway.get_account_info()
        balance = info.total_balance

        history = [s.metrics.total_balance for s in self._ledger.get_snapshots()]
        initial = history[0] if history else balance
        peak = max([*history, balance])

        return_percent = (balance - initial) / initial * 100 if initial > 0 else 0.0
        return AccountMetrics(
            total_balance=balance,
            available=info.available,
            unrealized_pnl=info.unrealized_pnl,
            initial_balance=initial,
            peak_balance=peak,
            return_percent=return_percent,
            drawdown_from_peak=drawdown_percent(peak, balance),
            drawdown_from_initial=drawdown_percent(initial, balance),
            sharpe_ratio=sharpe_ratio([*history, balance]),
        )

    def save_snapshot(self, metrics: AccountMetrics, iteration: int) -> AccountSnapshot:
        snapshot = self._ledger.save_snapshot(AccountSnapshot(metrics=metrics, iteration=iteration))
        logger.debug(
            "account_snapshot_saved",
            iteration=iteration,
            total_balance=metrics.total_balance,
            return_percent=round(metrics.return_percent, 2),
        )
        return snapshot

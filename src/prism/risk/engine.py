"""RiskEngine: apply risk rules to live state and force-close on breach.

The engine runs every cycle before the decision step sees anything:

    enforce_account(metrics)  -> close everything and raise on a breach
    check_all()               -> per-position sweep, best effort

Closes go through ``PositionReconciler.close_position`` so the close trade,
row deletion and order cancellation are committed together.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from prism.config.settings import TradingConfig
from prism.risk.rules import (
    RiskDecision,
    check_account,
    evaluate_position,
)
from prism.store.ledger import PositionNotFoundError

if TYPE_CHECKING:
    from prism.execution.reconciler import PositionReconciler
    from prism.store.models import AccountMetrics, Position

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ForcedClose:
    """One position the sweep decided to close."""

    symbol: str
    side: str
    rule: str | None
    reason: str
    closed: bool
    error: str | None = None


class RiskEngine:
    """Per-position and account-level risk enforcement.

    Parameters
    ----------
    reconciler : PositionReconciler
        Execution path for closes; its ledger holds the positions.
    config : TradingConfig | None
        Limits (holding ceiling, account lines, max drawdown). Defaults if None.
    """

    def __init__(
        self,
        reconciler: PositionReconciler,
        config: TradingConfig | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._ledger = reconciler.ledger
        self._config = config or TradingConfig()

    def evaluate(self, position: Position, now: datetime | None = None) -> RiskDecision:
        """Evaluate the per-position rules against an in-memory position."""
        return evaluate_position(position, now, self._config.max_holding_hours)

    async def check_all(self, now: datetime | None = None) -> list[ForcedClose]:
        """Evaluate every open position and force-close the ones that breach.

        Each position is re-read under the reconciler lock before it is
        evaluated; one that a concurrent sync already removed is skipped.
        A failed evaluation or close is logged and the sweep moves on; it
        is not retried within the same call.
        """
        results: list[ForcedClose] = []
        for symbol, side in [p.key for p in self._ledger.get_positions()]:
            try:
                position = await self._reconciler.refresh_peak(symbol, side)
                decision = self.evaluate(position, now)
            except PositionNotFoundError:
                logger.info("risk_position_gone", symbol=symbol, side=side)
                continue
            except Exception as exc:
                logger.error("risk_evaluation_failed", symbol=symbol, side=side, error=str(exc))
                results.append(
                    ForcedClose(symbol, side, None, "evaluation failed", closed=False, error=str(exc))
                )
                continue
            if not decision.should_close:
                continue

            logger.warning(
                "risk_force_close",
                symbol=symbol,
                side=side,
                rule=decision.rule,
                reason=decision.reason,
                pnl_percent=round(position.pnl_percent(), 2),
            )
            results.append(await self._close(position, decision.reason, decision.rule))
        return results

    async def close_all(self, reason: str) -> list[ForcedClose]:
        """Best-effort close of every open position."""
        positions = self._ledger.get_positions()
        logger.warning("closing_all_positions", reason=reason, count=len(positions))
        return [await self._close(p, reason, None) for p in positions]

    async def enforce_account(self, metrics: AccountMetrics) -> None:
        """Run the account-level gates.

        Raises
        ------
        AccountBreachError
            After closing all positions, when a balance line or the max
            drawdown is breached.
        """
        breach = check_account(
            metrics,
            stop_loss_balance=self._config.stop_loss_balance,
            take_profit_balance=self._config.take_profit_balance,
            max_drawdown_percent=self._config.max_drawdown_percent,
        )
        if breach is None:
            return
        logger.error(
            "account_breach",
            kind=breach.kind,
            balance=metrics.total_balance,
            threshold=breach.threshold,
            drawdown_from_peak=metrics.drawdown_from_peak,
        )
        await self.close_all(str(breach))
        raise breach

    def open_block(self, metrics: AccountMetrics) -> tuple[str, str] | None:
        """Why a new position may not be opened, as ``(code, message)``, or None."""
        if metrics.drawdown_from_peak >= self._config.open_block_drawdown_percent:
            return "drawdown_block", (
                f"Drawdown {metrics.drawdown_from_peak:.2f}% from peak blocks new positions "
                f"(limit {self._config.open_block_drawdown_percent:.2f}%)"
            )
        count = self._ledger.count_positions()
        if count >= self._config.max_positions:
            return "max_positions", (
                f"Already holding {count} positions (max {self._config.max_positions})"
            )
        return None

    async def _close(self, position: Position, reason: str, rule: str | None) -> ForcedClose:
        try:
            await self._reconciler.close_position(position, reason)
        except Exception as exc:
            logger.error(
                "force_close_failed",
                symbol=position.symbol,
                side=position.side.value,
                error=str(exc),
            )
            return ForcedClose(
                position.symbol, position.side.value, rule, reason, closed=False, error=str(exc)
            )
        return ForcedClose(position.symbol, position.side.value, rule, reason, closed=True)

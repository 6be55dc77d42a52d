"""Risk rules: pure evaluation of positions and account metrics.

Per-position rules, first match wins:
    1. holding_time   -- held >= max_holding_hours (default 36h)
    2. stop_loss      -- pnl% <= leverage-tiered stop (-3/-4/-5%)
    3. trailing_stop  -- pnl% < locked profit tier, only when the tier is
                         tighter than the hard stop
    4. peak_drawdown  -- armed once peak pnl% > 5; fires when pnl% has
                         given back >= 30% of the peak

Account rules (checked once per cycle, before per-position rules):
    - balance <= stop-loss line       -> StopLossBreach
    - balance >= take-profit line     -> TakeProfitBreach
    - drawdown from peak >= max limit -> MaxDrawdownBreach

Nothing here touches the exchange or the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from prism.store.models import AccountMetrics, Position

HOLDING_TIME = "holding_time"
STOP_LOSS = "stop_loss"
TRAILING_STOP = "trailing_stop"
PEAK_DRAWDOWN = "peak_drawdown"

PEAK_ARM_PERCENT = 5.0
PEAK_GIVEBACK_PERCENT = 30.0

# (pnl% floor, locked pnl%), highest tier first
TRAILING_TIERS: tuple[tuple[float, float], ...] = (
    (25.0, 15.0),
    (15.0, 8.0),
    (8.0, 3.0),
)


class AccountBreachError(Exception):
    """Fatal account-level breach. Everything is closed and the loop stops."""

    kind = "account_breach"

    def __init__(self, message: str, balance: float, threshold: float) -> None:
        self.balance = balance
        self.threshold = threshold
        super().__init__(message)


class StopLossBreach(AccountBreachError):
    kind = "stop_loss"


class TakeProfitBreach(AccountBreachError):
    kind = "take_profit"


class MaxDrawdownBreach(AccountBreachError):
    kind = "max_drawdown"


@dataclass(frozen=True)
class RiskDecision:
    """Outcome of evaluating one position.

    Attributes
    ----------
    should_close : bool
        True if the position must be force-closed.
    reason : str
        Human-readable explanation (empty when not closing).
    rule : str | None
        Which rule fired (``holding_time``, ``stop_loss``,
        ``trailing_stop``, ``peak_drawdown``).
    """

    should_close: bool
    reason: str = ""
    rule: str | None = None


KEEP = RiskDecision(should_close=False)


def stop_loss_threshold(leverage: int) -> float:
    """Hard stop in leveraged pnl percent; tighter for higher leverage."""
    if leverage >= 12:
        return -3.0
    if leverage >= 8:
        return -4.0
    return -5.0


def trailing_threshold(reference_pnl: float, stop_loss: float) -> float:
    """Locked profit for the tier reached by ``reference_pnl``.

    Below the lowest tier the hard stop is returned, which disables the
    trailing rule.
    """
    for floor, locked in TRAILING_TIERS:
        if reference_pnl >= floor:
            return locked
    return stop_loss


def ratchet_peak(position: Position) -> bool:
    """Raise ``peak_pnl_percent`` to the current pnl if it is higher.

    Returns True when the peak moved.
    """
    pnl = position.pnl_percent()
    if pnl > position.peak_pnl_percent:
        position.peak_pnl_percent = pnl
        return True
    return False


def evaluate_position(
    position: Position,
    now: datetime | None = None,
    max_holding_hours: float = 36.0,
) -> RiskDecision:
    """Decide whether ``position`` must be force-closed."""
    pnl = position.pnl_percent()
    peak = max(position.peak_pnl_percent, pnl)

    holding = position.holding_hours(now)
    if holding >= max_holding_hours:
        return RiskDecision(
            True,
            f"Holding time {holding:.1f}h exceeds {max_holding_hours:g}h limit",
            HOLDING_TIME,
        )

    stop = stop_loss_threshold(position.leverage)
    if pnl <= stop:
        return RiskDecision(
            True,
            f"Dynamic stop-loss hit (pnl {pnl:.2f}%, stop {stop:.2f}%)",
            STOP_LOSS,
        )

    # Tier is chosen by the peak pnl, not the current pnl: a position that
    # reached a tier keeps that lock after pnl falls back below the tier floor.
    trailing = trailing_threshold(peak, stop)
    if pnl < trailing and trailing > stop:
        return RiskDecision(
            True,
            f"Trailing stop hit (pnl {pnl:.2f}%, locked {trailing:.2f}%)",
            TRAILING_STOP,
        )

    if peak > PEAK_ARM_PERCENT:
        giveback = (peak - pnl) / peak * 100
        if giveback >= PEAK_GIVEBACK_PERCENT:
            return RiskDecision(
                True,
                f"Peak drawdown protection (peak {peak:.2f}%, pnl {pnl:.2f}%, "
                f"giveback {giveback:.2f}%)",
                PEAK_DRAWDOWN,
            )

    return KEEP


def check_account(
    metrics: AccountMetrics,
    stop_loss_balance: float = 0.0,
    take_profit_balance: float = 0.0,
    max_drawdown_percent: float = 20.0,
) -> AccountBreachError | None:
    """Return the first account-level breach, or None.

    Balance lines of 0 are disabled.
    """
    balance = metrics.total_balance
    if stop_loss_balance > 0 and balance <= stop_loss_balance:
        return StopLossBreach(
            f"Account stop-loss: balance {balance:.2f} <= {stop_loss_balance:.2f}",
            balance,
            stop_loss_balance,
        )
    if take_profit_balance > 0 and balance >= take_profit_balance:
        return TakeProfitBreach(
            f"Account take-profit: balance {balance:.2f} >= {take_profit_balance:.2f}",
            balance,
            take_profit_balance,
        )
    if max_drawdown_percent > 0 and metrics.drawdown_from_peak >= max_drawdown_percent:
        return MaxDrawdownBreach(
            f"Max drawdown: {metrics.drawdown_from_peak:.2f}% from peak "
            f">= {max_drawdown_percent:.2f}%",
            balance,
            max_drawdown_percent,
        )
    return None

"""DecisionValidationGate: check proposed closes against the stored exit plan.

When a position is opened, the decision step writes a free-text exit plan
("止损 $95,000, 止盈 $110,000", "close on RSI > 75 or after 24h"). A later
close must cite a reason of the same kind as one of the plan's conditions,
and non-urgent closes must wait out a minimum holding time.

Classification is keyword based over a bilingual taxonomy. Phrases are
matched in type priority order and consumed as they match, so "移动止损"
classifies as TRAILING and not also as STOP_LOSS.

Flow:
    plan types   = classify(position.exit_plan)
    reason types = classify(proposed_reason)
    matched      = first reason type that is also a plan type
                   (first reason type at all when the plan is empty)
    reject if plan types exist and nothing matched
    reject if held < min_holding_hours and matched is not urgent
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import structlog

from prism.store.ledger import Ledger
from prism.store.models import Position, PositionSide

logger = structlog.get_logger(__name__)


class PolicyViolationError(Exception):
    """A proposed action breaks a trading policy.

    Parameters
    ----------
    code : str
        Machine-readable policy name (``exit_plan_mismatch``,
        ``min_holding_time``, ``leverage_out_of_range``, ...).
    message : str
        Explanation returned to the decision step.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class ConditionType(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING = "trailing"
    STRUCTURE = "structure"
    REVERSAL = "reversal"
    INDICATOR = "indicator"
    TIMEOUT = "timeout"


URGENT_TYPES = frozenset({ConditionType.STOP_LOSS, ConditionType.TRAILING, ConditionType.STRUCTURE})

# Priority order matters: earlier types consume their phrases first.
KEYWORDS: dict[ConditionType, tuple[str, ...]] = {
    ConditionType.TRAILING: (
        "移动止损", "移动止盈", "跟踪止损", "追踪止损", "回撤止盈", "锁定利润", "锁利",
        "trailing stop", "trailing", "trail",
    ),
    ConditionType.STOP_LOSS: (
        "止损", "停损", "割肉", "stop loss", "stop-loss", "stoploss", "sl",
    ),
    ConditionType.TAKE_PROFIT: (
        "止盈", "获利了结", "目标价", "目标位", "获利", "take profit", "take-profit",
        "takeprofit", "tp", "target", "profit target",
    ),
    ConditionType.STRUCTURE: (
        "支撑", "阻力", "压力位", "结构", "破位", "跌破", "突破", "颈线", "趋势线",
        "support", "resistance", "structure", "breakdown", "breakout", "trendline",
        "neckline",
    ),
    ConditionType.REVERSAL: (
        "反转", "转向", "趋势改变", "趋势逆转", "背离", "见顶", "见底",
        "reversal", "reverse", "divergence", "trend change",
    ),
    ConditionType.INDICATOR: (
        "指标", "均线", "金叉", "死叉", "布林", "超买", "超卖",
        "rsi", "macd", "ema", "sma", "ma", "kdj", "atr", "bollinger", "indicator",
        "crossover", "overbought", "oversold",
    ),
    ConditionType.TIMEOUT: (
        "超时", "持仓时间", "时间到", "到期", "小时",
        "timeout", "time limit", "time stop", "hours", "expire", "expired",
    ),
}


def _compile(keyword: str) -> re.Pattern[str]:
    if keyword.isascii():
        return re.compile(rf"(?<![a-z]){re.escape(keyword)}(?![a-z])")
    return re.compile(re.escape(keyword))


_PATTERNS: list[tuple[ConditionType, list[re.Pattern[str]]]] = [
    # Longest phrase first within a type so "trailing stop" wins over "trail".
    (ctype, [_compile(k) for k in sorted(words, key=len, reverse=True)])
    for ctype, words in KEYWORDS.items()
]


def classify(text: str) -> list[ConditionType]:
    """Extract condition types from free text, in taxonomy priority order."""
    remaining = (text or "").lower()
    found: list[ConditionType] = []
    for ctype, patterns in _PATTERNS:
        for pattern in patterns:
            remaining, n = pattern.subn(" ", remaining)
            if n and ctype not in found:
                found.append(ctype)
    return found


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a close validation.

    Attributes
    ----------
    allow : bool
        Whether the close may proceed.
    matched_type : ConditionType | None
        Condition type the reason was matched to (for audit logging).
    message : str
        Explanation; on rejection it quotes the exit plan and the reason.
    code : str
        Policy name on rejection, empty on acceptance.
    """

    allow: bool
    matched_type: ConditionType | None = None
    message: str = ""
    code: str = ""
    plan_types: list[ConditionType] = field(default_factory=list)
    reason_types: list[ConditionType] = field(default_factory=list)


class DecisionValidationGate:
    """Accept or reject decision-step closes for a live position.

    Parameters
    ----------
    ledger : Ledger
        Source of the live position and its exit plan.
    min_holding_hours : float
        Minimum holding time before non-urgent closes (default 1h).
    """

    def __init__(self, ledger: Ledger, min_holding_hours: float = 1.0) -> None:
        self._ledger = ledger
        self._min_holding_hours = min_holding_hours

    def validate(
        self,
        symbol: str,
        reason: str,
        side: PositionSide | str | None = None,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Validate a proposed close of ``symbol``.

        Raises
        ------
        PositionNotFoundError
            If there is no live position for ``symbol``.
        """
        position = self._ledger.find_position(symbol, side)
        return self.validate_position(position, reason, now)

    def validate_position(
        self,
        position: Position,
        reason: str,
        now: datetime | None = None,
    ) -> ValidationResult:
        plan_types = classify(position.exit_plan)
        reason_types = classify(reason)
        log = logger.bind(symbol=position.symbol, side=position.side.value)

        if plan_types:
            matched = next((t for t in reason_types if t in plan_types), None)
            if matched is None:
                plan_desc = ", ".join(t.value for t in plan_types)
                reason_desc = ", ".join(t.value for t in reason_types) or "unrecognized"
                log.info("close_rejected_plan_mismatch", reason=reason)
                return ValidationResult(
                    allow=False,
                    code="exit_plan_mismatch",
                    message=(
                        f"Close reason does not match the exit plan. "
                        f"Exit plan: {position.exit_plan!r} (conditions: {plan_desc}). "
                        f"Proposed reason: {reason!r} (classified as: {reason_desc}). "
                        f"Cite one of the planned exit conditions."
                    ),
                    plan_types=plan_types,
                    reason_types=reason_types,
                )
        else:
            log.warning("exit_plan_unclassified", exit_plan=position.exit_plan)
            matched = reason_types[0] if reason_types else None

        held = position.holding_hours(now)
        if held < self._min_holding_hours and matched not in URGENT_TYPES:
            kind = matched.value if matched else "unrecognized"
            log.info("close_rejected_min_holding", held_hours=round(held, 2), matched_type=kind)
            return ValidationResult(
                allow=False,
                matched_type=matched,
                code="min_holding_time",
                message=(
                    f"Position held {held * 60:.0f} minutes, below the "
                    f"{self._min_holding_hours:g}h minimum. Only stop-loss, trailing-stop "
                    f"or structure-break exits may close it early. "
                    f"Exit plan: {position.exit_plan!r}. Proposed reason: {reason!r}."
                ),
                plan_types=plan_types,
                reason_types=reason_types,
            )

        log.info("close_accepted", matched_type=matched.value if matched else None)
        return ValidationResult(
            allow=True,
            matched_type=matched,
            message="ok",
            plan_types=plan_types,
            reason_types=reason_types,
        )

    def require(
        self,
        symbol: str,
        reason: str,
        side: PositionSide | str | None = None,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Like ``validate`` but raises ``PolicyViolationError`` on rejection."""
        result = self.validate(symbol, reason, side, now)
        if not result.allow:
            raise PolicyViolationError(result.code, result.message)
        return result

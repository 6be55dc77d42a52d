"""Risk management: pure rules and the enforcement engine.

Public API:
    - evaluate_position: first-match per-position rule evaluation
    - check_account: account-level stop-loss / take-profit / drawdown gates
    - RiskDecision: close decision with reason and rule name
    - RiskEngine: force-closes breaching positions, enforces account gates
    - AccountBreachError, StopLossBreach, TakeProfitBreach, MaxDrawdownBreach
"""

from prism.risk.engine import ForcedClose, RiskEngine
from prism.risk.rules import (
    AccountBreachError,
    MaxDrawdownBreach,
    RiskDecision,
    StopLossBreach,
    TakeProfitBreach,
    check_account,
    evaluate_position,
)

__all__ = [
    "AccountBreachError",
    "ForcedClose",
    "MaxDrawdownBreach",
    "RiskDecision",
    "RiskEngine",
    "StopLossBreach",
    "TakeProfitBreach",
    "check_account",
    "evaluate_position",
]

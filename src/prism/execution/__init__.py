"""Execution layer: reconciliation, validation, account metrics, and the cycle runner.

Public API:
    - PositionReconciler: single-flight sync of positions/orders, open/close execution
    - SyncReport: counts from one reconciliation pass
    - DecisionValidationGate: exit-plan and holding-time checks for proposed closes
    - PolicyViolationError: typed rejection of a proposed action
    - AccountService: account metrics (return, drawdown, Sharpe) and snapshots
    - MarketDataCollector: per-symbol price, funding, and kline snapshots
    - TradingCycleOrchestrator: scheduled cycle orchestrator with APScheduler
    - AlreadyRunningError, CycleStepError: orchestrator errors
"""

from prism.execution.account import AccountService
from prism.execution.market import MarketDataCollector, MarketSnapshot
from prism.execution.reconciler import PositionReconciler, SyncReport
from prism.execution.runner import (
    AlreadyRunningError,
    CycleStepError,
    LoopState,
    TradingCycleOrchestrator,
)
from prism.execution.validation import (
    ConditionType,
    DecisionValidationGate,
    PolicyViolationError,
    ValidationResult,
)

__all__ = [
    "AccountService",
    "AlreadyRunningError",
    "ConditionType",
    "CycleStepError",
    "DecisionValidationGate",
    "LoopState",
    "MarketDataCollector",
    "MarketSnapshot",
    "PolicyViolationError",
    "PositionReconciler",
    "SyncReport",
    "TradingCycleOrchestrator",
    "ValidationResult",
]

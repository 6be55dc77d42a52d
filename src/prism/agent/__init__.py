"""Decision step: context building, action execution, and the LLM loop.

Public API:
    - DecisionStep: protocol the orchestrator calls once per cycle
    - DecisionContext: serialized market/account/position snapshot
    - DecisionResult, ActionOutcome: what the step did
    - ActionExecutor: policy-checked execution of open/close proposals
"""

from prism.agent.actions import ActionExecutor
from prism.agent.context import SYSTEM_PROMPT, DecisionContext
from prism.agent.types import ActionOutcome, DecisionResult, DecisionStep

__all__ = [
    "SYSTEM_PROMPT",
    "ActionExecutor",
    "ActionOutcome",
    "DecisionContext",
    "DecisionResult",
    "DecisionStep",
]

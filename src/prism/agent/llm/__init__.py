"""LLM-backed decision step.

Public API:
    - LLMDecisionStep: instructor/OpenAI multi-round decision loop
    - LLMUnavailableError: no provider configured or provider call failed
    - DecisionRound, OpenPositionAction, ClosePositionAction: structured output schemas
"""

from prism.agent.llm.client import LLMDecisionStep, LLMUnavailableError
from prism.agent.llm.schemas import ClosePositionAction, DecisionRound, OpenPositionAction

__all__ = [
    "ClosePositionAction",
    "DecisionRound",
    "LLMDecisionStep",
    "LLMUnavailableError",
    "OpenPositionAction",
]

"""Decision-step contract shared by the orchestrator and implementations.

Zero third-party dependencies -- plain dataclasses and a Protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from prism.agent.context import DecisionContext


@dataclass
class ActionOutcome:
    """Result of executing one proposed action.

    Attributes
    ----------
    action : str
        ``open_position`` or ``close_position``.
    symbol : str
        Target contract.
    success : bool
        Whether the action was executed.
    detail : dict
        Tool result fed back to the decision step (includes ``error`` and
        ``code`` on rejection).
    """

    action: str
    symbol: str
    success: bool
    detail: dict = field(default_factory=dict)


@dataclass
class DecisionResult:
    """What the decision step did in one cycle."""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""
    rounds: int = 0
    outcomes: list[ActionOutcome] = field(default_factory=list)
    error: str = ""


class DecisionStep(Protocol):
    """Anything that turns a decision context into executed actions."""

    async def decide(self, context: DecisionContext) -> DecisionResult: ...

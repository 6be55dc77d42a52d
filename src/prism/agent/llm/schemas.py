"""Pydantic schemas for the decision step's structured output.

Each model round returns one ``DecisionRound``: the model's reasoning plus
zero or more actions. Actions are a tagged union on ``action`` so that
instructor can validate mixed open/close lists in a single response.

The schemas only describe what the model may propose. Whether a proposal
is acceptable (leverage bounds, margin, exit-plan match, holding time) is
decided by the ``ActionExecutor``.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class OpenPositionAction(BaseModel):
    """Open (or add to) a position."""

    action: Literal["open_position"] = "open_position"
    symbol: str = Field(description="Contract symbol, e.g. BTCUSDT")
    side: Literal["long", "short"] = Field(description="Position direction")
    leverage: int = Field(description="Leverage multiplier within the configured bounds")
    quantity: float = Field(
        description="Margin to commit in USDT (notional = margin * leverage)"
    )
    reason: str = Field(description="Why this position is being opened")
    exit_plan: str = Field(
        description=(
            "Exit conditions for this position, e.g. '止损 $95,000, 止盈 $110,000' or "
            "'stop loss below 2,950 support, take profit at 3,300, exit after 24 hours'"
        )
    )
    stop_loss: float | None = Field(
        default=None,
        description="Optional stop-loss trigger price placed on the exchange",
    )
    take_profit: float | None = Field(
        default=None,
        description="Optional take-profit trigger price placed on the exchange",
    )


class ClosePositionAction(BaseModel):
    """Close an open position."""

    action: Literal["close_position"] = "close_position"
    symbol: str = Field(description="Contract symbol of the position to close")
    reason: str = Field(
        description="Close reason; must correspond to a condition in the position's exit plan"
    )


TradeAction = Annotated[
    Union[OpenPositionAction, ClosePositionAction],
    Field(discriminator="action"),
]


class DecisionRound(BaseModel):
    """One round of the decision step."""

    thinking: str = Field(description="Market analysis and reasoning for this round")
    actions: list[TradeAction] = Field(
        default_factory=list,
        description="Actions to execute now; empty to hold",
    )
    finished: bool = Field(
        default=True,
        description="True when no further rounds are needed after these actions",
    )
    summary: str = Field(
        default="",
        description="Short decision summary for the audit log",
    )

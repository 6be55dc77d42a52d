"""LLMDecisionStep: multi-round decision loop over an OpenAI-compatible API.

The step wraps an ``AsyncOpenAI`` client with instructor so every round is
validated against ``DecisionRound``. Proposed actions are executed by the
``ActionExecutor`` and their results (including typed rejections) are sent
back as the next user message, so the model can correct a rejected close
reason or an out-of-range leverage in the following round.

Key contract:
    try:
        result = await step.decide(context)
    except LLMUnavailableError:
        ...  # cycle continues with no decision-driven actions

Token usage is accumulated across rounds from the raw completions.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import instructor
import structlog
from openai import AsyncOpenAI

from prism.agent.context import SYSTEM_PROMPT
from prism.agent.llm.schemas import DecisionRound
from prism.agent.types import ActionOutcome, DecisionResult

if TYPE_CHECKING:
    from prism.agent.actions import ActionExecutor
    from prism.agent.context import DecisionContext
    from prism.config.settings import LLMConfig

logger = structlog.get_logger(__name__)


class LLMUnavailableError(Exception):
    """Raised when no API key is configured or the provider call fails."""


class LLMDecisionStep:
    """Decision step backed by a chat-completions model.

    Parameters
    ----------
    config : LLMConfig
        API key, endpoint, model id, and round limit.
    executor : ActionExecutor
        Executes each proposed action after policy checks.
    client : instructor.AsyncInstructor | None
        Pre-built instructor client (tests inject a mock). Built from
        ``config`` when None.
    """

    def __init__(
        self,
        config: LLMConfig,
        executor: ActionExecutor,
        client: instructor.AsyncInstructor | None = None,
    ) -> None:
        self._config = config
        self._executor = executor
        if client is None and config.api_key:
            client = instructor.from_openai(
                AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)
            )
        self._client = client

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def decide(self, context: DecisionContext) -> DecisionResult:
        """Run up to ``max_tool_rounds`` model rounds for this cycle.

        Raises
        ------
        LLMUnavailableError
            If no client is configured or the first model call fails. A
            failure in a later round ends the loop instead: actions from
            earlier rounds have already been executed, so the partial
            result is returned with ``error`` set.
        """
        if self._client is None:
            raise LLMUnavailableError("No LLM API key configured")

        messages: list[dict] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": context.to_json()},
        ]
        result = DecisionResult(content="", model=self._config.model)
        sections: list[str] = []
        summary = ""

        for round_no in range(1, self._config.max_tool_rounds + 1):
            try:
                decision, completion = await self._client.chat.completions.create_with_completion(
                    model=self._config.model,
                    response_model=DecisionRound,
                    messages=messages,
                    temperature=self._config.temperature,
                    max_retries=2,
                )
            except Exception as exc:
                if round_no == 1:
                    raise LLMUnavailableError(f"Decision round 1 failed: {exc}") from exc
                logger.warning(
                    "decision_round_failed",
                    iteration=context.iteration,
                    round=round_no,
                    error=str(exc),
                )
                result.error = f"Decision round {round_no} failed: {exc}"
                sections.append(f"[Round {round_no}]\n{result.error}")
                break

            usage = getattr(completion, "usage", None)
            if usage is not None:
                result.prompt_tokens += usage.prompt_tokens or 0
                result.completion_tokens += usage.completion_tokens or 0
            result.rounds = round_no
            if decision.summary:
                summary = decision.summary

            outcomes: list[ActionOutcome] = []
            for action in decision.actions:
                outcomes.append(await self._executor.execute(action))
            result.outcomes.extend(outcomes)
            sections.append(_format_round(round_no, decision, outcomes))

            logger.info(
                "decision_round",
                iteration=context.iteration,
                round=round_no,
                actions=len(decision.actions),
                rejected=sum(1 for o in outcomes if not o.success),
            )

            if not decision.actions or (decision.finished and all(o.success for o in outcomes)):
                break

            messages.append({"role": "assistant", "content": decision.model_dump_json()})
            messages.append(
                {
                    "role": "user",
                    "content": "Action results:\n"
                    + json.dumps([o.detail for o in outcomes], ensure_ascii=False)
                    + "\nContinue: propose corrected or further actions, or finish.",
                }
            )

        if summary:
            sections.append(f"[Decision summary]\n{summary}")
        result.content = "\n\n".join(sections)
        return result


def _format_round(round_no: int, decision: DecisionRound, outcomes: list[ActionOutcome]) -> str:
    lines = [f"[Round {round_no}]", f"Thinking: {decision.thinking.strip()}"]
    for outcome in outcomes:
        if outcome.success:
            lines.append(f"Action: {outcome.action} {outcome.symbol} -> ok")
        else:
            lines.append(
                f"Action: {outcome.action} {outcome.symbol} -> rejected "
                f"({outcome.detail.get('error', '')})"
            )
    if not outcomes:
        lines.append("Action: hold")
    return "\n".join(lines)

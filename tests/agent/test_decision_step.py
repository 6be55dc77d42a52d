"""Tests for LLMDecisionStep -- structured rounds, feedback, token accounting.

The instructor client is mocked: ``create_with_completion`` returns a
``(DecisionRound, completion)`` pair per round.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from prism.agent.context import DecisionContext
from prism.agent.llm.client import LLMDecisionStep, LLMUnavailableError
from prism.agent.llm.schemas import ClosePositionAction, DecisionRound, OpenPositionAction
from prism.agent.types import ActionOutcome
from prism.config.settings import LLMConfig
from prism.store.models import AccountMetrics, utcnow


def _make_context() -> DecisionContext:
    return DecisionContext(
        iteration=7,
        started_at=utcnow(),
        account=AccountMetrics(10_000.0, 10_000.0, 0.0, 10_000.0, 10_000.0),
        market={},
        positions=[],
    )


def _completion(prompt: int = 1000, completion: int = 50) -> MagicMock:
    return MagicMock(usage=MagicMock(prompt_tokens=prompt, completion_tokens=completion))


def _make_client(*rounds: DecisionRound) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create_with_completion = AsyncMock(
        side_effect=[(r, _completion()) for r in rounds]
    )
    return client


def _make_executor(*outcomes: ActionOutcome) -> MagicMock:
    executor = MagicMock()
    executor.execute = AsyncMock(side_effect=list(outcomes))
    return executor


_CLOSE = ClosePositionAction(symbol="BTCUSDT", reason="market looks shaky")
_REJECTED = ActionOutcome(
    "close_position",
    "BTCUSDT",
    False,
    {"success": False, "error": "Close reason does not match the exit plan.", "code": "exit_plan_mismatch"},
)


class TestDecide:
    @pytest.mark.asyncio
    async def test_hold_round(self):
        client = _make_client(DecisionRound(thinking="Range-bound, no edge.", summary="Hold all."))
        executor = _make_executor()
        step = LLMDecisionStep(LLMConfig(model="test-model"), executor, client=client)

        result = await step.decide(_make_context())

        assert result.rounds == 1
        assert result.prompt_tokens == 1000
        assert result.completion_tokens == 50
        assert result.model == "test-model"
        assert result.outcomes == []
        assert "Action: hold" in result.content
        assert "[Decision summary]\nHold all." in result.content
        executor.execute.assert_not_awaited()

        kwargs = client.chat.completions.create_with_completion.await_args.kwargs
        assert kwargs["response_model"] is DecisionRound
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"][0]["role"] == "system"
        assert '"iteration": 7' in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_rejection_is_fed_back(self):
        client = _make_client(
            DecisionRound(thinking="Exit BTC.", actions=[_CLOSE]),
            DecisionRound(thinking="Plan says hold; keep it."),
        )
        executor = _make_executor(_REJECTED)
        step = LLMDecisionStep(LLMConfig(), executor, client=client)

        result = await step.decide(_make_context())

        assert result.rounds == 2
        assert result.prompt_tokens == 2000
        assert [o.success for o in result.outcomes] == [False]
        assert "rejected (Close reason does not match the exit plan.)" in result.content
        executor.execute.assert_awaited_once_with(_CLOSE)

        messages = client.chat.completions.create_with_completion.await_args.kwargs["messages"]
        assert messages[-2]["role"] == "assistant"
        assert messages[-1]["role"] == "user"
        assert "exit_plan_mismatch" in messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_finished_after_successful_actions(self):
        open_action = OpenPositionAction(
            symbol="ETHUSDT",
            side="short",
            leverage=5,
            quantity=50.0,
            reason="Rejection at 3,100 resistance",
            exit_plan="止损 $3,150, 止盈 $2,900",
        )
        client = _make_client(DecisionRound(thinking="Short ETH.", actions=[open_action]))
        executor = _make_executor(ActionOutcome("open_position", "ETHUSDT", True, {"success": True}))
        step = LLMDecisionStep(LLMConfig(), executor, client=client)

        result = await step.decide(_make_context())

        assert result.rounds == 1
        assert "Action: open_position ETHUSDT -> ok" in result.content

    @pytest.mark.asyncio
    async def test_round_limit(self):
        rounds = [DecisionRound(thinking=f"try {i}", actions=[_CLOSE], finished=False) for i in range(5)]
        client = _make_client(*rounds)
        executor = _make_executor(*[_REJECTED] * 5)
        step = LLMDecisionStep(LLMConfig(max_tool_rounds=3), executor, client=client)

        result = await step.decide(_make_context())

        assert result.rounds == 3
        assert client.chat.completions.create_with_completion.await_count == 3
        assert len(result.outcomes) == 3

    @pytest.mark.asyncio
    async def test_provider_error_raises_unavailable(self):
        client = MagicMock()
        client.chat.completions.create_with_completion = AsyncMock(side_effect=RuntimeError("503"))
        step = LLMDecisionStep(LLMConfig(), _make_executor(), client=client)

        with pytest.raises(LLMUnavailableError, match="503"):
            await step.decide(_make_context())

    @pytest.mark.asyncio
    async def test_later_round_failure_keeps_executed_actions(self):
        client = MagicMock()
        client.chat.completions.create_with_completion = AsyncMock(
            side_effect=[
                (DecisionRound(thinking="Stop hit, exit BTC.", actions=[_CLOSE], finished=False), _completion()),
                RuntimeError("provider 503"),
            ]
        )
        executor = _make_executor(ActionOutcome("close_position", "BTCUSDT", True, {"success": True}))
        step = LLMDecisionStep(LLMConfig(), executor, client=client)

        result = await step.decide(_make_context())

        assert result.rounds == 1
        assert result.prompt_tokens == 1000
        assert [o.success for o in result.outcomes] == [True]
        assert result.error == "Decision round 2 failed: provider 503"
        assert "Action: close_position BTCUSDT -> ok" in result.content
        assert "[Round 2]\nDecision round 2 failed: provider 503" in result.content
        executor.execute.assert_awaited_once_with(_CLOSE)


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_no_api_key(self):
        step = LLMDecisionStep(LLMConfig(api_key=None), _make_executor())
        assert step.is_available is False
        with pytest.raises(LLMUnavailableError, match="No LLM API key"):
            await step.decide(_make_context())

    def test_client_built_from_config(self):
        sentinel = MagicMock()
        with patch("instructor.from_openai", return_value=sentinel) as factory:
            step = LLMDecisionStep(
                LLMConfig(api_key="sk-test", base_url="https://api.deepseek.com"),
                _make_executor(),
            )
        assert step.is_available
        factory.assert_called_once()

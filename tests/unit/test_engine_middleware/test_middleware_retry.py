"""Tests for RetryMiddleware.

Coverage:
- Budget resolution: node max_retries, graph default_max_retry, zero.
- RETRY and FAIL outcomes are re-run with an incremented attempt number.
- Exhaustion: allow_partial downgrade, RETRY becomes FAIL, FAIL unchanged.
- retry.triggered events and back-off calculation.
- Exceptions are not retried.
"""
from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from dotfactory.engine.events.types import PipelineEvent
from dotfactory.engine.graph import Graph, Node
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.middleware.retry import RetryMiddleware, max_retries_for
from dotfactory.engine.outcome import Outcome, OutcomeStatus
from dotfactory.engine.state import EngineState


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _RecordingEmitter:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    async def aclose(self) -> None:
        return


def make_request(
    node_attrs: dict[str, Any] | None = None,
    graph_attrs: dict[str, Any] | None = None,
    emitter: Any = None,
) -> HandlerRequest:
    node = Node("work", dict(node_attrs or {}))
    return HandlerRequest(
        node=node,
        graph=Graph(name="g", attrs=dict(graph_attrs or {}), nodes={"work": node}),
        state=EngineState(),
        emitter=emitter,
        pipeline_id="g",
    )


class _Scripted:
    """next() stand-in returning a scripted sequence of outcomes."""

    def __init__(self, *outcomes: Outcome) -> None:
        self._outcomes = list(outcomes)
        self.attempts: list[int] = []

    async def __call__(self, request: HandlerRequest) -> Outcome:
        self.attempts.append(request.attempt_number)
        return self._outcomes.pop(0)


_FAIL = Outcome.fail("still red")
_RETRY = Outcome(status=OutcomeStatus.RETRY, failure_reason="flaky")
_OK = Outcome.success("green")


def _no_wait() -> RetryMiddleware:
    return RetryMiddleware(base_delay_s=0, max_delay_s=0)


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class TestBudget:
    def test_node_value_wins(self) -> None:
        request = make_request({"max_retries": "2"}, {"default_max_retry": "5"})
        assert max_retries_for(request) == 2

    def test_graph_default(self) -> None:
        assert max_retries_for(make_request(graph_attrs={"default_max_retry": "4"})) == 4

    def test_zero_by_default(self) -> None:
        assert max_retries_for(make_request()) == 0

    def test_negative_clamped(self) -> None:
        assert max_retries_for(make_request({"max_retries": "-3"})) == 0


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------

class TestRetryLoop:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        next_fn = _Scripted(_OK)
        outcome = await _no_wait()(make_request({"max_retries": "3"}), next_fn)
        assert outcome.output == "green"
        assert outcome.metadata["attempts"] == 1
        assert next_fn.attempts == [1]

    @pytest.mark.asyncio
    async def test_fail_then_success(self) -> None:
        next_fn = _Scripted(_FAIL, _RETRY, _OK)
        outcome = await _no_wait()(make_request({"max_retries": "2"}), next_fn)
        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.metadata["attempts"] == 3
        assert next_fn.attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_no_budget_returns_fail_unchanged(self) -> None:
        next_fn = _Scripted(_FAIL)
        outcome = await _no_wait()(make_request(), next_fn)
        assert outcome.status is OutcomeStatus.FAIL
        assert outcome.failure_reason == "still red"
        assert outcome.metadata["attempts"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_retry_becomes_fail(self) -> None:
        next_fn = _Scripted(_RETRY, _RETRY)
        outcome = await _no_wait()(make_request({"max_retries": "1"}), next_fn)
        assert outcome.status is OutcomeStatus.FAIL
        assert outcome.failure_reason == "retries exhausted after 2 attempt(s) (flaky)"

    @pytest.mark.asyncio
    async def test_allow_partial_downgrades(self) -> None:
        next_fn = _Scripted(_FAIL, _FAIL)
        request = make_request({"max_retries": "1", "allow_partial": "true"})
        outcome = await _no_wait()(request, next_fn)
        assert outcome.status is OutcomeStatus.PARTIAL_SUCCESS
        assert outcome.notes == "partial success after 2 attempt(s)"
        assert outcome.metadata["attempts"] == 2

    @pytest.mark.asyncio
    async def test_exceptions_are_not_retried(self) -> None:
        next_fn = AsyncMock(side_effect=RuntimeError("config"))
        with pytest.raises(RuntimeError, match="config"):
            await _no_wait()(make_request({"max_retries": "3"}), next_fn)
        assert next_fn.await_count == 1


# ---------------------------------------------------------------------------
# Events and back-off
# ---------------------------------------------------------------------------

class TestBackoff:
    @pytest.mark.asyncio
    async def test_retry_triggered_events(self) -> None:
        emitter = _RecordingEmitter()
        await _no_wait()(
            make_request({"max_retries": "2"}, emitter=emitter),
            _Scripted(_FAIL, _RETRY, _OK),
        )
        assert [e.type for e in emitter.events] == ["retry.triggered", "retry.triggered"]
        assert [e.data["attempt_number"] for e in emitter.events] == [2, 3]
        assert emitter.events[0].data["reason"] == "still red"

    def test_delay_is_exponential_and_capped(self) -> None:
        middleware = RetryMiddleware(base_delay_s=0.5, max_delay_s=3)
        assert [middleware.delay_for(a) for a in (1, 2, 3, 4, 5)] == [0.5, 1.0, 2.0, 3, 3]

    def test_env_configuration(self, monkeypatch) -> None:
        monkeypatch.setenv("DOTFACTORY_RETRY_BASE_DELAY", "2")
        monkeypatch.setenv("DOTFACTORY_RETRY_MAX_DELAY", "5")
        middleware = RetryMiddleware()
        assert middleware.delay_for(1) == 2.0
        assert middleware.delay_for(3) == 5.0

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self) -> None:
        middleware = RetryMiddleware(base_delay_s=0.25, max_delay_s=10)
        with patch("dotfactory.engine.middleware.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await middleware(make_request({"max_retries": "2"}), _Scripted(_FAIL, _FAIL, _OK))
        assert [c.args[0] for c in sleep.await_args_list] == [0.25, 0.5]

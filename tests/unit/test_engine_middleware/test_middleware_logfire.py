"""Tests for LogfireMiddleware.

Coverage:
- node.started emitted BEFORE next() is called.
- node.completed emitted with outcome_status when next() returns a passing outcome.
- node.failed emitted for FAIL / RETRY outcomes and for exceptions.
- Span attributes recorded through logfire (captured with ``capfire``).
"""
from __future__ import annotations

from typing import Any

import pytest

from dotfactory.engine.events.types import PipelineEvent
from dotfactory.engine.graph import Graph, Node
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.middleware.logfire import LogfireMiddleware
from dotfactory.engine.outcome import Outcome, OutcomeStatus
from dotfactory.engine.state import EngineState


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _RecordingEmitter:
    """Emitter that records every event emitted."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    async def aclose(self) -> None:
        return

    def types(self) -> list[str]:
        return [e.type for e in self.events]


def make_node(id: str = "n1", **attrs: Any) -> Node:
    return Node(id, {"shape": "box", **attrs})


def make_request(node: Node | None = None, emitter: Any = None) -> HandlerRequest:
    node = node or make_node()
    return HandlerRequest(
        node=node,
        graph=Graph(name="pipe", nodes={node.id: node}),
        state=EngineState(),
        emitter=emitter,
        pipeline_id="pipe",
        visit_count=2,
    )


def _returning(outcome: Outcome):
    async def _next(request: HandlerRequest) -> Outcome:
        return outcome
    return _next


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_node_started_emitted_before_next() -> None:
    emitter = _RecordingEmitter()
    seen_before_next: list[str] = []

    async def _recording_next(request: HandlerRequest) -> Outcome:
        seen_before_next.extend(emitter.types())
        return Outcome.success()

    await LogfireMiddleware()(make_request(emitter=emitter), _recording_next)
    assert seen_before_next == ["node.started"]
    started = emitter.events[0]
    assert started.data == {"handler_type": "codergen", "visit_count": 2, "attempt_number": 1}


@pytest.mark.asyncio
async def test_node_completed_on_success() -> None:
    emitter = _RecordingEmitter()
    outcome = await LogfireMiddleware()(
        make_request(emitter=emitter), _returning(Outcome.success("ok"))
    )
    assert outcome.output == "ok"
    assert emitter.types() == ["node.started", "node.completed"]
    completed = emitter.events[-1]
    assert completed.data["outcome_status"] == "success"
    assert completed.data["duration_ms"] >= 0


@pytest.mark.asyncio
async def test_partial_success_counts_as_completed() -> None:
    emitter = _RecordingEmitter()
    await LogfireMiddleware()(
        make_request(emitter=emitter),
        _returning(Outcome(status=OutcomeStatus.PARTIAL_SUCCESS)),
    )
    assert emitter.events[-1].data["outcome_status"] == "partial_success"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "error_type"),
    [
        (Outcome.fail("tests red"), "FAIL"),
        (Outcome(status=OutcomeStatus.RETRY, failure_reason="flaky"), "RETRY"),
    ],
)
async def test_node_failed_on_failing_outcome(outcome: Outcome, error_type: str) -> None:
    emitter = _RecordingEmitter()
    node = make_node(goal_gate="true")
    await LogfireMiddleware()(make_request(node, emitter), _returning(outcome))
    failed = emitter.events[-1]
    assert failed.type == "node.failed"
    assert failed.data["error_type"] == error_type
    assert failed.data["message"] == outcome.failure_reason
    assert failed.data["goal_gate"] is True


@pytest.mark.asyncio
async def test_exception_emits_node_failed_and_reraises() -> None:
    emitter = _RecordingEmitter()

    async def _boom(request: HandlerRequest) -> Outcome:
        raise ValueError("bad config")

    with pytest.raises(ValueError, match="bad config"):
        await LogfireMiddleware()(make_request(emitter=emitter), _boom)
    failed = emitter.events[-1]
    assert failed.type == "node.failed"
    assert failed.data["error_type"] == "ValueError"
    assert failed.data["message"] == "bad config"


@pytest.mark.asyncio
async def test_no_emitter_is_allowed() -> None:
    outcome = await LogfireMiddleware()(make_request(), _returning(Outcome.success()))
    assert outcome.status is OutcomeStatus.SUCCESS


@pytest.mark.asyncio
async def test_span_attributes(capfire) -> None:
    outcome = Outcome(status=OutcomeStatus.SUCCESS, metadata={"attempts": 3})
    await LogfireMiddleware()(make_request(), _returning(outcome))

    spans = [
        s for s in capfire.exporter.exported_spans_as_dict()
        if s["attributes"].get("node_id") == "n1"
    ]
    assert len(spans) == 1
    attributes = spans[0]["attributes"]
    assert attributes["handler_type"] == "codergen"
    assert attributes["visit_count"] == 2
    assert attributes["outcome_status"] == "success"
    assert attributes["attempts"] == 3
    assert attributes["goal_gate"] is False
    assert attributes["logfire.msg"] == "node n1"

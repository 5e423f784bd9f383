"""Tests for dotfactory.engine.executor.Executor.

Coverage:
- Linear walk, outputs, context bookkeeping and the event sequence.
- Retry policy through the executor: retry counts, exhaustion, allow_partial.
- Failure routing: condition edges, NodeFailedError.
- Goal gates: redirect, redirect bound, bad retry target, message prefix.
- Visit and step bounds, cancellation, resume from an explicit node.
- Fan-out / fan-in: branch outputs, merge order, failing branches.
- loop_restart checkpoints, handler exception wrapping, checkpoint writes.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from dotfactory.engine.callbacks import EngineCallbacks, GenerationRequest
from dotfactory.engine.checkpoint import CheckpointManager, EngineCheckpoint
from dotfactory.engine.events.types import PipelineEvent
from dotfactory.engine.executor import Executor
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.middleware.logfire import LogfireMiddleware
from dotfactory.engine.middleware.retry import RetryMiddleware
from dotfactory.engine.outcome import Outcome, OutcomeStatus, RunStatus
from dotfactory.engine.parser import parse_dot
from dotfactory.engine.state import EngineState
from dotfactory.engine.transforms import apply_transforms


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def _echo(request: GenerationRequest) -> str:
    return f"out-{request.node.id}"


def make_executor(
    dot: str,
    *,
    generate: Callable[[GenerationRequest], Any] | None = _echo,
    ask_human: Callable[..., Any] | None = None,
    custom: dict[str, Any] | None = None,
    events: list[PipelineEvent] | None = None,
    checkpoints: list[EngineCheckpoint] | None = None,
    **kwargs: Any,
) -> Executor:
    callbacks = EngineCallbacks(
        generate=generate,
        ask_human=ask_human,
        custom_handlers=dict(custom or {}),
        on_event=events.append if events is not None else None,
        on_checkpoint=checkpoints.append if checkpoints is not None else None,
    )
    return Executor(
        apply_transforms(parse_dot(dot)),
        callbacks=callbacks,
        middlewares=[LogfireMiddleware(), RetryMiddleware(base_delay_s=0, max_delay_s=0)],
        **kwargs,
    )


def scripted(*results: Any) -> Callable[[HandlerRequest], Any]:
    """Custom handler returning *results* in order, repeating the last one."""
    remaining = list(results)

    def handler(request: HandlerRequest) -> Any:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return handler


_LINEAR = """
digraph linear {
    start [shape=Mdiamond];
    plan  [prompt="Plan it"];
    done  [shape=Msquare];
    start -> plan -> done;
}
"""


# ──────────────────────────────────────────────────────────────────────────────
# Linear walk
# ──────────────────────────────────────────────────────────────────────────────

class TestLinearRun:
    @pytest.mark.asyncio
    async def test_reaches_exit(self) -> None:
        result = await make_executor(_LINEAR).run()
        assert result.status is RunStatus.SUCCESS
        assert result.ok
        assert result.exit_node_id == "done"
        state = result.state
        assert state.completed_nodes == ["start", "plan", "done"]
        assert state.node_outputs == {"plan": "out-plan"}
        assert state.context.get("plan.output") == "out-plan"
        assert state.context.get("last_stage") == "done"
        assert state.context.get("pipeline.outcome") == "success"
        assert state.node_visits == {"start": 1, "plan": 1, "done": 1}

    @pytest.mark.asyncio
    async def test_event_sequence(self) -> None:
        events: list[PipelineEvent] = []
        await make_executor(
            "digraph g { s [shape=Mdiamond]; e [shape=Msquare]; s -> e }", events=events
        ).run()
        assert [e.type for e in events] == [
            "pipeline.started",
            "node.started",
            "node.completed",
            "edge.selected",
            "node.started",
            "node.completed",
            "pipeline.completed",
        ]
        assert events[0].data == {"start_node": "s", "node_count": 2}
        assert events[3].data["to_node_id"] == "e"

    @pytest.mark.asyncio
    async def test_human_answer_drives_routing(self) -> None:
        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond]; done [shape=Msquare];
                gate [shape=hexagon];
                start -> gate;
                gate -> ship [label="Approve"];
                gate -> fix  [label="Reject"];
                ship -> done; fix -> done;
            }
            """,
            ask_human=lambda question: "Reject",
        ).run()
        assert result.state.completed_nodes == ["start", "gate", "fix", "done"]
        assert result.state.context.get("human.gate.label") == "Reject"

    _ACCELERATED = """
    digraph g {
        start [shape=Mdiamond]; done [shape=Msquare];
        gate [shape=hexagon, label="Approve?"];
        start -> gate;
        gate -> approve [label="[A] Approve"];
        gate -> reject  [label="[R] Reject"];
        approve -> done; reject -> done;
    }
    """

    @pytest.mark.asyncio
    async def test_accelerator_key_answer_takes_matching_edge(self) -> None:
        result = await make_executor(self._ACCELERATED, ask_human=lambda question: "R").run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.completed_nodes == ["start", "gate", "reject", "done"]
        assert result.state.node_outcomes["gate"].suggested_next_ids == ("reject",)

    @pytest.mark.asyncio
    async def test_unrecognised_answer_fails_run(self) -> None:
        result = await make_executor(self._ACCELERATED, ask_human=lambda question: "zzz").run()
        assert result.status is RunStatus.FAIL
        assert "unrecognised answer 'zzz'" in result.error
        assert "approve" not in result.state.completed_nodes

    @pytest.mark.asyncio
    async def test_skipped_stage_makes_exit_skipped(self) -> None:
        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond]; done [shape=Msquare];
                check [type="sensor"];
                start -> check -> done;
            }
            """,
            custom={"sensor": scripted(Outcome(status=OutcomeStatus.SKIPPED))},
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.node_outcomes["done"].status is OutcomeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_on_outcome_callback(self, tmp_path: Path) -> None:
        seen: list[tuple[str, str, Path | None]] = []
        executor = make_executor(_LINEAR, logs_dir=tmp_path)
        executor.callbacks.on_outcome = lambda node, outcome, stage: seen.append(
            (node.id, outcome.status.value, stage)
        )
        await executor.run()
        assert seen[1] == ("plan", "success", tmp_path / "plan")
        assert [s[0] for s in seen] == ["start", "plan", "done"]


# ──────────────────────────────────────────────────────────────────────────────
# Retry and failure routing
# ──────────────────────────────────────────────────────────────────────────────

_WORK = """
digraph g {
    start [shape=Mdiamond]; done [shape=Msquare];
    work [type="job"%s];
    start -> work -> done;
    %s
}
"""


def work_graph(attrs: str = "", extra: str = "") -> str:
    return _WORK % (attrs, extra)


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_then_success_records_retry_count(self) -> None:
        events: list[PipelineEvent] = []
        result = await make_executor(
            work_graph(", max_retries=2"),
            custom={"job": scripted(Outcome.fail("a"), Outcome.fail("b"), "ok")},
            events=events,
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.node_retry_counts == {"work": 2}
        assert result.state.node_outputs["work"] == "ok"
        assert [e.type for e in events].count("retry.triggered") == 2

    @pytest.mark.asyncio
    async def test_graph_default_max_retry(self) -> None:
        dot = work_graph().replace("digraph g {", "digraph g { default_max_retry=1;")
        result = await make_executor(
            dot, custom={"job": scripted(Outcome.fail("a"), "ok")}
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.node_retry_counts == {"work": 1}

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_run(self) -> None:
        result = await make_executor(
            work_graph(", max_retries=1"),
            custom={"job": scripted(Outcome.fail("still red"))},
        ).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "Node 'work' failed: retries exhausted after 2 attempt(s) (still red)"
        assert result.current_node == "work"

    @pytest.mark.asyncio
    async def test_exhausted_retry_status_is_not_double_wrapped(self) -> None:
        result = await make_executor(
            work_graph(", max_retries=1"),
            custom={"job": scripted(Outcome(status=OutcomeStatus.RETRY, failure_reason="flaky"))},
        ).run()
        assert result.error == "Node 'work' failed: retries exhausted after 2 attempt(s) (flaky)"

    @pytest.mark.asyncio
    async def test_allow_partial_continues(self) -> None:
        result = await make_executor(
            work_graph(", max_retries=1, allow_partial=true"),
            custom={"job": scripted(Outcome.fail("meh"))},
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.node_outcomes["work"].status is OutcomeStatus.PARTIAL_SUCCESS

    @pytest.mark.asyncio
    async def test_generation_retry_downgrades_to_partial(self) -> None:
        calls: list[int] = []

        def generate(request: GenerationRequest) -> dict[str, str]:
            calls.append(request.attempt_number)
            return {"status": "retry", "failure_reason": "flaky"}

        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond]; done [shape=Msquare];
                work [shape=box, max_retries=1, allow_partial=true];
                start -> work -> done;
            }
            """,
            generate=generate,
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert calls == [1, 2]
        outcome = result.state.node_outcomes["work"]
        assert outcome.status is OutcomeStatus.PARTIAL_SUCCESS
        assert result.state.node_retry_counts == {"work": 1}

    @pytest.mark.asyncio
    async def test_generation_preferred_label_drives_routing(self) -> None:
        def generate(request: GenerationRequest) -> Any:
            if request.node.id == "review":
                return {"preferred_label": "Rework", "context_updates": {"review.verdict": "no"}}
            return f"out-{request.node.id}"

        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond]; done [shape=Msquare];
                review; fix;
                start -> review;
                review -> done [label="Ship"];
                review -> fix  [label="Rework"];
                fix -> done;
            }
            """,
            generate=generate,
        ).run()
        assert result.state.completed_nodes == ["start", "review", "fix", "done"]
        assert result.state.context.get("review.verdict") == "no"


class TestFailureRouting:
    @pytest.mark.asyncio
    async def test_failure_without_condition_edge_is_fatal(self) -> None:
        result = await make_executor(
            work_graph(), custom={"job": scripted(Outcome.fail("boom"))}
        ).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "Node 'work' failed: boom"

    @pytest.mark.asyncio
    async def test_failure_routes_through_true_condition(self) -> None:
        result = await make_executor(
            work_graph(extra='work -> fix [condition="outcome=fail"]; fix -> done;'),
            custom={"job": scripted(Outcome.fail("boom"))},
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.completed_nodes == ["start", "work", "fix", "done"]

    @pytest.mark.asyncio
    async def test_success_ignores_failure_edge(self) -> None:
        result = await make_executor(
            work_graph(extra='work -> fix [condition="outcome=fail"]; fix -> done;'),
            custom={"job": scripted("fine")},
        ).run()
        assert result.state.completed_nodes == ["start", "work", "done"]

    @pytest.mark.asyncio
    async def test_handler_exception_is_wrapped(self) -> None:
        def explode(request: HandlerRequest) -> None:
            raise ValueError("bad input")

        result = await make_executor(work_graph(), custom={"job": explode}).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "Handler error (node 'work'): bad input"

    @pytest.mark.asyncio
    async def test_unknown_custom_type_fails_the_run(self) -> None:
        result = await make_executor(work_graph()).run()
        assert result.error == "Handler error (node 'work'): No custom handler registered for node type 'job'"


# ──────────────────────────────────────────────────────────────────────────────
# Goal gates
# ──────────────────────────────────────────────────────────────────────────────

_GATED = """
digraph g {
    %s
    start [shape=Mdiamond]; done [shape=Msquare];
    plan;
    gate [type="check", goal_gate=true%s];
    start -> plan -> gate -> done;
}
"""


def gated(graph_attrs: str = "", gate_attrs: str = ', retry_target="plan"') -> str:
    return _GATED % (graph_attrs, gate_attrs)


class TestGoalGate:
    @pytest.mark.asyncio
    async def test_failing_gate_redirects_to_retry_target(self) -> None:
        events: list[PipelineEvent] = []
        result = await make_executor(
            gated(), custom={"check": scripted(Outcome.fail("not yet"), "ok")}, events=events
        ).run()
        assert result.status is RunStatus.SUCCESS
        assert result.state.completed_nodes == ["start", "plan", "gate", "plan", "gate", "done"]
        assert result.state.goal_gate_redirects == {"gate": 1}
        redirect = next(e for e in events if e.type == "goal_gate.redirect")
        assert redirect.data == {"retry_target": "plan", "redirect_count": 1}

    @pytest.mark.asyncio
    async def test_graph_retry_target_and_self_fallback(self) -> None:
        result = await make_executor(
            gated('retry_target="start";', ""),
            custom={"check": scripted(Outcome.fail("no"), "ok")},
        ).run()
        assert result.state.completed_nodes[:4] == ["start", "plan", "gate", "start"]

        result = await make_executor(
            gated("", ""), custom={"check": scripted(Outcome.fail("no"), "ok")}
        ).run()
        assert result.state.completed_nodes == ["start", "plan", "gate", "gate", "done"]

    @pytest.mark.asyncio
    async def test_redirects_are_bounded(self) -> None:
        result = await make_executor(
            gated("goal_gate_max_redirects=2;"), custom={"check": scripted(Outcome.fail("nope"))}
        ).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "goal gate unsatisfied: node 'gate' still failing after 2 redirect(s): nope"
        assert result.state.node_visits["plan"] == 3

    @pytest.mark.asyncio
    async def test_undeclared_retry_target(self) -> None:
        result = await make_executor(
            gated(gate_attrs=', retry_target="ghost"'),
            custom={"check": scripted(Outcome.fail("nope"))},
        ).run()
        assert result.status is RunStatus.FAIL
        assert "retry_target 'ghost' is not a declared node" in result.error

    @pytest.mark.asyncio
    async def test_unrelated_failure_gets_goal_gate_prefix(self) -> None:
        dot = gated().replace("plan;", 'plan [type="job"];')
        result = await make_executor(
            dot, custom={"check": scripted("ok"), "job": scripted(Outcome.fail("boom"))}
        ).run()
        assert result.error == "goal gate unsatisfied: Node 'plan' failed: boom"


# ──────────────────────────────────────────────────────────────────────────────
# Bounds, cancellation, resume
# ──────────────────────────────────────────────────────────────────────────────

class TestBounds:
    @pytest.mark.asyncio
    async def test_max_visits(self) -> None:
        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond];
                spin [type="noop", max_visits=2];
                start -> spin; spin -> spin;
            }
            """,
            custom={"noop": scripted(None)},
        ).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "exceeded max_visits for node spin (3 > 2)"

    @pytest.mark.asyncio
    async def test_max_steps(self) -> None:
        result = await make_executor(
            "digraph g { start [shape=Mdiamond]; start -> spin; spin -> spin; spin [type=\"noop\"] }",
            custom={"noop": scripted(None)},
            max_steps=5,
        ).run()
        assert result.error == "Graph execution exceeded max steps (5)"

    @pytest.mark.asyncio
    async def test_no_start_node(self) -> None:
        result = await make_executor("digraph g { a -> b }").run()
        assert result.status is RunStatus.FAIL
        assert "found 0" in result.error


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_at_next_step(self, tmp_path: Path) -> None:
        def stop(request: HandlerRequest) -> str:
            request.executor.cancel()
            return "stopping"

        events: list[PipelineEvent] = []
        executor = make_executor(work_graph(), custom={"job": stop}, events=events, logs_dir=tmp_path)
        result = await executor.run()
        assert result.status is RunStatus.CANCELED
        assert result.current_node == "done"
        assert result.state.completed_nodes == ["start", "work"]
        assert events[-1].type == "pipeline.canceled"
        # The last checkpoint is the one written after 'work'
        checkpoint = CheckpointManager(tmp_path).load()
        assert checkpoint.current_node == "done"
        assert checkpoint.last_error is None

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        executor = make_executor(_LINEAR)
        executor.cancel()
        result = await executor.run()
        assert result.status is RunStatus.CANCELED
        assert result.state.completed_nodes == []


class TestResume:
    @pytest.mark.asyncio
    async def test_explicit_start_node_keeps_state(self) -> None:
        events: list[PipelineEvent] = []
        state = EngineState.with_context({"goal": "ship"})
        state.completed_nodes.append("start")
        result = await make_executor(_LINEAR, events=events).run(state, start_node_id="plan")
        assert result.status is RunStatus.SUCCESS
        assert result.state is state
        assert state.completed_nodes == ["start", "plan", "done"]
        assert state.context.get("goal") == "ship"
        assert events[0].type == "pipeline.resumed"
        assert events[0].data == {"resume_node": "plan", "completed_node_count": 1}

    @pytest.mark.asyncio
    async def test_unknown_start_node(self) -> None:
        result = await make_executor(_LINEAR).run(start_node_id="zzz")
        assert result.status is RunStatus.FAIL
        assert result.error == "Start node not found: zzz"


# ──────────────────────────────────────────────────────────────────────────────
# Fan-out / fan-in
# ──────────────────────────────────────────────────────────────────────────────

_FAN = """
digraph fan {
    start  [shape=Mdiamond];
    fanout [shape=component];
    review_a; review_b;
    join   [shape=tripleoctagon%s];
    synth;
    done   [shape=Msquare];
    start -> fanout;
    fanout -> review_a [label="a"];
    fanout -> review_b [label="b"];
    review_a -> join; review_b -> join;
    join -> synth -> done;
}
"""

_FAN_OUTPUTS = {
    "review_a": "review-a-output",
    "review_b": "review-b-output",
    "synth": "combined-report",
}


def _fan_generate(request: GenerationRequest) -> str:
    return _FAN_OUTPUTS[request.node.id]


class TestParallel:
    @pytest.mark.asyncio
    async def test_branch_outputs_are_collected(self) -> None:
        events: list[PipelineEvent] = []
        result = await make_executor(_FAN % "", generate=_fan_generate, events=events).run()
        assert result.status is RunStatus.SUCCESS
        state = result.state
        assert state.parallel_outputs["fanout"] == {"a": "review-a-output", "b": "review-b-output"}
        assert state.node_outputs["synth"] == "combined-report"
        assert state.completed_nodes == [
            "start", "review_a", "review_b", "fanout", "join", "synth", "done",
        ]
        assert state.context.get("parallel.branch.review_a.status") == "success"
        assert state.context.get("parallel.fail_count") == 0
        assert state.context.get("parallel.join_status") == "success"
        types = [e.type for e in events]
        assert types.index("parallel.started") < types.index("parallel.completed")

    @pytest.mark.asyncio
    async def test_failed_branch_is_partial_under_wait_all(self) -> None:
        def generate(request: GenerationRequest) -> str:
            if request.node.id == "review_b":
                raise RuntimeError("model down")
            return _FAN_OUTPUTS[request.node.id]

        result = await make_executor(_FAN % "", generate=generate).run()
        state = result.state
        assert result.status is RunStatus.SUCCESS
        assert state.context.get("parallel.branch.review_b.status") == "fail"
        assert state.context.get("parallel.fail_count") == 1
        assert state.node_outcomes["join"].status is OutcomeStatus.PARTIAL_SUCCESS
        assert state.parallel_outputs["fanout"]["b"] == ""

    @pytest.mark.asyncio
    async def test_all_branches_failing_under_first_success(self) -> None:
        def generate(request: GenerationRequest) -> str:
            raise RuntimeError("model down")

        result = await make_executor(
            _FAN % ', join_policy="first_success"', generate=generate
        ).run()
        assert result.status is RunStatus.FAIL
        assert result.error == "Node 'join' failed: all parallel branches failed"

    @pytest.mark.asyncio
    async def test_branch_reaching_exit_is_fatal(self) -> None:
        result = await make_executor("""
        digraph g {
            start [shape=Mdiamond]; done [shape=Msquare];
            fan [shape=component]; join [shape=tripleoctagon];
            start -> fan; fan -> a; fan -> b;
            a -> join; b -> done; join -> done;
        }
        """).run()
        assert result.status is RunStatus.FAIL
        assert "never reaches a fan-in" in result.error


# ──────────────────────────────────────────────────────────────────────────────
# Checkpoints
# ──────────────────────────────────────────────────────────────────────────────

class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_checkpoint_after_every_node(self, tmp_path: Path) -> None:
        seen: list[EngineCheckpoint] = []
        result = await make_executor(_LINEAR, logs_dir=tmp_path, checkpoints=seen).run()
        assert result.ok
        assert [c.current_node for c in seen] == ["plan", "done", "done"]
        saved = CheckpointManager(tmp_path).load()
        assert saved.current_node == "done"
        assert saved.completed_nodes == ["start", "plan", "done"]
        assert saved.node_outputs == {"plan": "out-plan"}

    @pytest.mark.asyncio
    async def test_checkpoint_callback_without_logs_dir(self) -> None:
        seen: list[EngineCheckpoint] = []
        await make_executor(_LINEAR, checkpoints=seen).run()
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_fatal_error_checkpoint(self, tmp_path: Path) -> None:
        await make_executor(
            work_graph(), custom={"job": scripted(Outcome.fail("boom"))}, logs_dir=tmp_path
        ).run()
        saved = CheckpointManager(tmp_path).load()
        assert saved.current_node == "work"
        assert saved.last_error == "Node 'work' failed: boom"

    @pytest.mark.asyncio
    async def test_loop_restart_writes_restart_checkpoint(self, tmp_path: Path) -> None:
        result = await make_executor(
            """
            digraph g {
                start [shape=Mdiamond]; done [shape=Msquare];
                a [shape=diamond]; b [shape=diamond];
                start -> a;
                a -> b [loop_restart=true];
                b -> done;
            }
            """,
            logs_dir=tmp_path,
        ).run()
        assert result.ok
        restart = CheckpointManager(tmp_path / "restart-1").load()
        assert restart.current_node == "b"
        assert restart.completed_nodes == ["start", "a"]
        assert "last_stage" not in restart.context
        assert not (tmp_path / "restart-2").exists()

"""Executor — the single-run state machine that walks a transformed graph.

One ``Executor`` drives one run and exclusively owns its ``EngineState``.
Per visited node:

1. **Visit guard**    increment the node's visit count; exceeding a declared
                      ``max_visits`` raises ``MaxVisitsExceededError``.
2. **Dispatch**       resolve the handler through ``HandlerRegistry`` and call
                      it through the middleware chain (span + events, then
                      the retry policy).
3. **Apply**          record the outcome, merge context updates plus
                      ``last_stage`` and ``<id>.output``, store the output and
                      append the node to ``completed_nodes``.
4. **Route**          fan-out jumps to its fan-in; a failing goal gate
                      redirects to its retry target; any other failure needs
                      a true-condition edge or the run fails; otherwise the
                      ``EdgeSelector`` picks the next edge.
5. **Checkpoint**     ``checkpoint.json`` with ``current_node`` set to the node
                      the walk continues at.

Termination: SUCCESS once an exit node has run; FAIL on any ``EngineError``
(checkpoint written with ``last_error``); CANCELED when the cancel event is
observed at a step boundary (the last checkpoint is left untouched).
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
from pathlib import Path

from dotfactory.engine.callbacks import EngineCallbacks, maybe_await
from dotfactory.engine.checkpoint import CheckpointManager, checkpoint_from_state
from dotfactory.engine.edge_selector import EdgeSelector
from dotfactory.engine.events import EventBuilder, EventEmitter, build_emitter
from dotfactory.engine.exceptions import (
    EngineError,
    GoalGateUnsatisfiedError,
    HandlerError,
    MaxStepsExceededError,
    MaxVisitsExceededError,
    NodeFailedError,
    ParallelConvergenceError,
    RetriesExhaustedError,
    RunCanceledError,
)
from dotfactory.engine.graph import Edge, Graph, Node
from dotfactory.engine.handlers.base import HandlerRequest
from dotfactory.engine.handlers.parallel import BranchResult, merge_branches
from dotfactory.engine.handlers.registry import HandlerRegistry
from dotfactory.engine.middleware import Middleware, compose_middleware, default_middlewares
from dotfactory.engine.outcome import Outcome, RunResult, RunStatus
from dotfactory.engine.state import EngineState

logger = logging.getLogger(__name__)

_DEFAULT_MAX_STEPS = 1000

GOAL_GATE_PREFIX = "goal gate unsatisfied: "


class Executor:
    """Walks *graph* from its start node (or a resume node) to an exit.

    Args:
        graph:              The transformed graph (read-only during the run).
        callbacks:          External hooks; defaults to an empty
                            ``EngineCallbacks`` (no generation, no human).
        registry:           Handler registry; defaults to every built-in plus
                            ``callbacks.custom_handlers``.
        emitter:            Event emitter; defaults to one that forwards to
                            ``callbacks.on_event``.
        middlewares:        Middleware list; defaults to
                            ``[LogfireMiddleware(), RetryMiddleware()]``.
        checkpoint_manager: Where checkpoints go; defaults to
                            ``CheckpointManager(logs_dir)`` when ``logs_dir``
                            is given, else checkpoints are only passed to
                            ``callbacks.on_checkpoint``.
        logs_dir:           Per-run logs directory for node artefacts.
        work_dir:           Repository root for tool commands.
        max_steps:          Step bound; defaults to ``DOTFACTORY_MAX_STEPS``
                            or 1000.
        cancel_event:       Set it (or call ``cancel()``) to stop the run at
                            the next step boundary.
        pipeline_id:        Identifier used in events; defaults to the graph
                            name.
    """

    def __init__(
        self,
        graph: Graph,
        *,
        callbacks: EngineCallbacks | None = None,
        registry: HandlerRegistry | None = None,
        emitter: EventEmitter | None = None,
        middlewares: list[Middleware] | None = None,
        checkpoint_manager: CheckpointManager | None = None,
        logs_dir: Path | str | None = None,
        work_dir: Path | str | None = None,
        max_steps: int | None = None,
        cancel_event: asyncio.Event | None = None,
        pipeline_id: str | None = None,
    ) -> None:
        self.graph = graph
        self.callbacks = callbacks or EngineCallbacks()
        self.registry = registry or HandlerRegistry.default(
            custom_handlers=self.callbacks.custom_handlers
        )
        self.pipeline_id = pipeline_id or graph.name or "pipeline"
        self.emitter: EventEmitter = emitter or build_emitter(
            self.pipeline_id, None, on_event=self.callbacks.on_event
        )
        self._middlewares = default_middlewares() if middlewares is None else list(middlewares)
        self.logs_dir = Path(logs_dir) if logs_dir is not None else None
        self.work_dir = Path(work_dir) if work_dir is not None else None
        if checkpoint_manager is None and self.logs_dir is not None:
            checkpoint_manager = CheckpointManager(self.logs_dir)
        self.checkpoints = checkpoint_manager
        self.max_steps = max_steps or int(os.environ.get("DOTFACTORY_MAX_STEPS", _DEFAULT_MAX_STEPS))
        self.cancel_event = cancel_event or asyncio.Event()
        self.edge_selector = EdgeSelector()
        self._restart_count = 0

    def cancel(self) -> None:
        """Request cancellation; observed at the next step boundary."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Main walk
    # ------------------------------------------------------------------

    async def run(
        self,
        state: EngineState | None = None,
        start_node_id: str | None = None,
    ) -> RunResult:
        """Execute the graph and return a ``RunResult``.

        Args:
            state:         Preloaded state (resume); a fresh state if omitted.
            start_node_id: Node to begin at; the graph's start node if omitted.
        """
        state = state if state is not None else EngineState()
        current_id: str | None = start_node_id
        started = time.monotonic()

        try:
            if current_id is None:
                try:
                    current_id = self.graph.start_node.id
                except ValueError as exc:
                    raise EngineError(str(exc)) from exc
                await self._emit(EventBuilder.pipeline_started(
                    self.pipeline_id, current_id, len(self.graph)
                ))
            else:
                if current_id not in self.graph:
                    raise EngineError(f"Start node not found: {current_id}")
                await self._emit(EventBuilder.pipeline_resumed(
                    self.pipeline_id, current_id, len(state.completed_nodes)
                ))
            logger.info("Run %s starting at '%s'", self.pipeline_id, current_id)

            for _step in range(self.max_steps):
                if self.cancel_event.is_set():
                    raise RunCanceledError(current_id)

                node = self.graph.node(current_id)
                outcome = await self.execute_node(node, state)

                if node.is_exit:
                    await self._checkpoint(state, node.id)
                    await self._emit(EventBuilder.pipeline_completed(
                        self.pipeline_id, node.id, (time.monotonic() - started) * 1000.0
                    ))
                    logger.info("Run %s reached exit '%s' (%s)", self.pipeline_id, node.id,
                                outcome.status.value)
                    return RunResult(
                        status=RunStatus.SUCCESS,
                        state=state,
                        exit_node_id=node.id,
                        current_node=node.id,
                    )

                next_id = await self.next_node(node, outcome, state)
                await self._checkpoint(state, next_id)
                current_id = next_id

            raise MaxStepsExceededError(self.max_steps)

        except RunCanceledError:
            logger.info("Run %s canceled at '%s'", self.pipeline_id, current_id)
            await self._emit(EventBuilder.pipeline_canceled(self.pipeline_id, current_id))
            return RunResult(status=RunStatus.CANCELED, state=state, current_node=current_id)

        except EngineError as exc:
            message = self.fatal_message(exc)
            logger.error("Run %s failed at '%s': %s", self.pipeline_id, current_id, message)
            await self._checkpoint(state, current_id, last_error=message)
            await self._emit(EventBuilder.pipeline_failed(
                self.pipeline_id, type(exc).__name__, message, current_id
            ))
            return RunResult(
                status=RunStatus.FAIL,
                state=state,
                current_node=current_id,
                error=message,
            )

    def fatal_message(self, exc: BaseException) -> str:
        """One human-readable line; goal-gated graphs get an identifying prefix."""
        message = str(exc)
        lowered = message.lower()
        if self.graph.goal_gate_nodes and "goal" not in lowered and "gate" not in lowered:
            message = f"{GOAL_GATE_PREFIX}{message}"
        return message

    # ------------------------------------------------------------------
    # One node
    # ------------------------------------------------------------------

    async def execute_node(self, node: Node, state: EngineState) -> Outcome:
        """Visit guard, dispatch through the middleware chain, apply the outcome.

        Raises:
            MaxVisitsExceededError: The node was entered too often.
            HandlerError: The handler raised something other than an EngineError.
        """
        visits = state.increment_visit(node.id)
        max_visits = node.max_visits
        if max_visits is not None and max_visits > 0 and visits > max_visits:
            raise MaxVisitsExceededError(node.id, visits, max_visits)

        handler = self.registry.dispatch(node)
        chain = compose_middleware(self._middlewares, handler)
        request = HandlerRequest(
            node=node,
            graph=self.graph,
            state=state,
            callbacks=self.callbacks,
            emitter=self.emitter,
            pipeline_id=self.pipeline_id,
            visit_count=visits,
            attempt_number=1,
            logs_dir=self.logs_dir,
            work_dir=self.work_dir,
            executor=self,
        )
        try:
            outcome = await chain(request)
        except EngineError:
            raise
        except Exception as exc:
            raise HandlerError(str(exc) or type(exc).__name__, node_id=node.id, cause=exc) from exc

        self.apply_outcome(node, outcome, state)
        if self.callbacks.on_outcome is not None:
            stage_dir = self.logs_dir / node.id if self.logs_dir is not None else None
            await maybe_await(self.callbacks.on_outcome(node, outcome, stage_dir))
        return outcome

    def apply_outcome(self, node: Node, outcome: Outcome, state: EngineState) -> None:
        """Fold *outcome* into *state*."""
        attempts = int(outcome.metadata.get("attempts", 1))
        if attempts > 1:
            state.node_retry_counts[node.id] = attempts - 1

        branch_results: list[BranchResult] | None = outcome.metadata.get("branch_results")
        if branch_results:
            merge_branches(state, node.id, branch_results)
            outcome = dataclasses.replace(outcome, metadata={
                key: value for key, value in outcome.metadata.items() if key != "branch_results"
            })

        updates = dict(outcome.context_updates)
        updates["last_stage"] = node.id
        output = (outcome.output or "").strip()
        if output:
            state.node_outputs[node.id] = outcome.output or ""
            updates[f"{node.id}.output"] = output
        state.context.update(updates)
        state.node_outcomes[node.id] = outcome
        state.mark_completed(node.id)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def next_node(self, node: Node, outcome: Outcome, state: EngineState) -> str:
        """Decide where the walk goes after *node* finished with *outcome*.

        Raises:
            GoalGateUnsatisfiedError: A gated node is out of redirects.
            NodeFailedError: A non-gated failure with no true-condition edge.
            NoEligibleEdgeError: Nothing qualifies after a non-failing outcome.
        """
        fan_in_id = outcome.metadata.get("fan_in_node_id")
        if node.handler_type == "parallel" and fan_in_id:
            await self._emit(EventBuilder.edge_selected(self.pipeline_id, node.id, fan_in_id))
            return fan_in_id

        if outcome.status.is_failure:
            if node.goal_gate:
                return await self._redirect_goal_gate(node, outcome, state)
            matched = self.edge_selector.matching_conditions(self.graph, node, outcome, state)
            if not matched:
                raise self._failure_error(node, outcome)
            edge = matched[0]
            logger.info("Node '%s' failed; routed by condition to '%s'", node.id, edge.target)
        else:
            edge = self.edge_selector.select(self.graph, node, outcome, state)

        await self._emit(EventBuilder.edge_selected(
            self.pipeline_id, node.id, edge.target,
            condition=edge.condition or None, label=edge.label or None,
        ))
        if edge.loop_restart:
            await self._write_restart(state, edge)
        return edge.target

    @staticmethod
    def _failure_error(node: Node, outcome: Outcome) -> NodeFailedError:
        reason = outcome.failure_reason or outcome.status.value
        attempts = int(outcome.metadata.get("attempts", 1))
        if attempts > 1 and not reason.startswith("retries exhausted"):
            return RetriesExhaustedError(node.id, attempts, reason)
        return NodeFailedError(node.id, reason)

    async def _redirect_goal_gate(self, node: Node, outcome: Outcome, state: EngineState) -> str:
        redirects = state.goal_gate_redirects.get(node.id, 0)
        reason = outcome.failure_reason or outcome.status.value
        if redirects >= self.graph.goal_gate_max_redirects:
            raise GoalGateUnsatisfiedError(node.id, redirects, reason)

        target = node.retry_target or self.graph.retry_target or node.id
        if target not in self.graph:
            raise GoalGateUnsatisfiedError(
                node.id, redirects, f"retry_target '{target}' is not a declared node"
            )
        state.goal_gate_redirects[node.id] = redirects + 1
        logger.info(
            "Goal gate '%s' failed (%s); redirect %d/%d to '%s'",
            node.id, reason, redirects + 1, self.graph.goal_gate_max_redirects, target,
        )
        await self._emit(EventBuilder.goal_gate_redirect(
            self.pipeline_id, node.id, target, redirects + 1
        ))
        return target

    async def _write_restart(self, state: EngineState, edge: Edge) -> None:
        """Persist ``restart-<n>/checkpoint.json`` for a ``loop_restart`` edge."""
        self._restart_count += 1
        if self.checkpoints is None:
            return
        snapshot = state.clone()
        snapshot.context.pop("last_stage")
        manager = self.checkpoints.restart_manager(self._restart_count)
        manager.save(snapshot, edge.target)
        logger.info("Loop restart %d via %s -> %s", self._restart_count, edge.source, edge.target)

    # ------------------------------------------------------------------
    # Fan-out branches
    # ------------------------------------------------------------------

    async def run_branch(
        self,
        start_node_id: str,
        fan_in_id: str,
        state: EngineState,
        name: str,
    ) -> BranchResult:
        """Walk one fan-out branch on its private *state* up to *fan_in_id*.

        Node failures end the branch with status ``fail``.  Structural
        errors (loop, nested fan-out, reaching an exit) and cancellation
        propagate.
        """
        visited: set[str] = set()
        current_id = start_node_id
        last_output = ""
        last_outcome: Outcome | None = None

        try:
            while current_id != fan_in_id:
                if self.cancel_event.is_set():
                    raise RunCanceledError(current_id)
                if current_id in visited:
                    raise ParallelConvergenceError(
                        f"Loop detected in parallel branch at node {current_id}", current_id
                    )
                visited.add(current_id)

                node = self.graph.node(current_id)
                if node.handler_type == "parallel":
                    raise ParallelConvergenceError(
                        f"Nested parallel nodes are not supported in branch execution ({node.id})",
                        node.id,
                    )
                if node.is_exit:
                    raise ParallelConvergenceError(
                        f"Parallel branch reached exit node {node.id} before fan-in {fan_in_id}",
                        node.id,
                    )

                last_outcome = await self.execute_node(node, state)
                if last_outcome.output and last_outcome.output.strip():
                    last_output = last_outcome.output
                current_id = await self.next_node(node, last_outcome, state)
        except (ParallelConvergenceError, RunCanceledError):
            raise
        except EngineError as exc:
            logger.warning("Parallel branch '%s' failed: %s", name, exc)
            return BranchResult(
                name=name,
                start_node_id=start_node_id,
                state=state,
                output=last_output,
                status="fail",
                error=str(exc),
            )

        failed = last_outcome is not None and last_outcome.status.is_failure
        return BranchResult(
            name=name,
            start_node_id=start_node_id,
            state=state,
            output=last_output,
            status="fail" if failed else "success",
            error=last_outcome.failure_reason if failed and last_outcome else None,
        )

    # ------------------------------------------------------------------
    # Persistence and events
    # ------------------------------------------------------------------

    async def _checkpoint(
        self,
        state: EngineState,
        current_node: str | None,
        last_error: str | None = None,
    ) -> None:
        if self.checkpoints is not None:
            checkpoint = self.checkpoints.save(state, current_node, last_error)
            await self._emit(EventBuilder.checkpoint_saved(
                self.pipeline_id, current_node, str(self.checkpoints.checkpoint_path)
            ))
        elif self.callbacks.on_checkpoint is not None:
            checkpoint = checkpoint_from_state(state, current_node, last_error)
        else:
            return
        if self.callbacks.on_checkpoint is not None:
            await maybe_await(self.callbacks.on_checkpoint(checkpoint))

    async def _emit(self, event) -> None:
        await self.emitter.emit(event)

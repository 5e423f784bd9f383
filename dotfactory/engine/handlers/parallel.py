"""ParallelHandler — handles component (fan-out) nodes.

Every outgoing edge of a fan-out node starts one branch.  Branches must all
converge on exactly one fan-in (``tripleoctagon``) node.  Each branch walks
from its first node up to, but not including, the fan-in node on its own
``EngineState.clone()``, and all branches run concurrently under
``asyncio.TaskGroup``.

The handler never touches the shared state.  It returns an Outcome whose
``metadata["branch_results"]`` the executor merges back with
``merge_branches()`` in edge-declaration order, after which the walk jumps
straight to the fan-in node.

Branch failures are recorded (``parallel.branch.<first-node>.status`` =
``fail``, ``parallel.fail_count``) rather than failing the fan-out; the
fan-in node decides what they mean.  Structural problems (no single fan-in,
a nested fan-out, a loop inside a branch) raise ``ParallelConvergenceError``
and end the run.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field

from dotfactory.engine.events.types import EventBuilder
from dotfactory.engine.exceptions import EngineError, HandlerError, ParallelConvergenceError
from dotfactory.engine.graph import Graph, Node
from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome
from dotfactory.engine.state import EngineState

logger = logging.getLogger(__name__)


@dataclass
class BranchResult:
    """What one fan-out branch produced.

    Attributes:
        name:          Edge label, else ``branch-<n>`` (1-based).
        start_node_id: First node of the branch.
        state:         The branch's private state after its walk.
        output:        Last non-empty output produced in the branch.
        status:        ``"success"`` or ``"fail"``.
        error:         Why the branch failed, if it did.
    """

    name: str
    start_node_id: str
    state: EngineState = field(repr=False)
    output: str = ""
    status: str = "success"
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == "fail"


def branch_name(label: str, index: int) -> str:
    return label.strip() or f"branch-{index + 1}"


def _reachable_fan_ins(graph: Graph, start: str, fan_out_id: str) -> set[str]:
    """Fan-in nodes reachable from *start* without passing through one."""
    found: set[str] = set()
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        node = graph.nodes.get(current)
        if node is None:
            continue
        if node.handler_type == "parallel.fan_in":
            found.add(current)
            continue
        for edge in graph.edges_from(current):
            if edge.target != fan_out_id and edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return found


def resolve_fan_in(graph: Graph, node: Node) -> str:
    """Return the single fan-in node every branch of *node* converges on.

    Raises:
        ParallelConvergenceError: If *node* has no branches, a branch reaches
            no fan-in, or the branches reach different fan-ins.
    """
    edges = graph.edges_from(node.id)
    if not edges:
        raise ParallelConvergenceError(f"Parallel node {node.id} has no outgoing edges", node.id)

    fan_ins: set[str] = set()
    for edge in edges:
        reachable = _reachable_fan_ins(graph, edge.target, node.id)
        if not reachable:
            raise ParallelConvergenceError(
                f"Parallel branch {edge.id} never reaches a fan-in node", node.id
            )
        fan_ins |= reachable
    if len(fan_ins) != 1:
        raise ParallelConvergenceError(
            f"Parallel node {node.id} must converge to a single fan-in node "
            f"(found {', '.join(sorted(fan_ins))})",
            node.id,
        )
    return fan_ins.pop()


def merge_branches(state: EngineState, fan_out_id: str, results: list[BranchResult]) -> None:
    """Fold finished branches into the shared *state*, in the order given.

    Context keys a branch changed, the node outputs, outcomes, retry and visit
    counters of the nodes it ran, and its completed nodes are merged; the
    later branch wins on conflicts.  ``parallel_outputs[fan_out_id]`` maps
    each branch name to its last non-empty output.
    """
    base_context = state.context.snapshot()
    base_completed = len(state.completed_nodes)

    updates: list[tuple[str, dict]] = []
    for result in results:
        branch = result.state
        changed = {
            key: value for key, value in branch.context.snapshot().items()
            if key not in base_context or base_context[key] != value
        }
        updates.append((result.name, changed))

        ran = branch.completed_nodes[base_completed:]
        for node_id in ran:
            if node_id in branch.node_outputs:
                state.node_outputs[node_id] = branch.node_outputs[node_id]
            if node_id in branch.node_outcomes:
                state.node_outcomes[node_id] = branch.node_outcomes[node_id]
            if node_id in branch.node_retry_counts:
                state.node_retry_counts[node_id] = branch.node_retry_counts[node_id]
            if node_id in branch.node_visits:
                state.node_visits[node_id] = branch.node_visits[node_id]
        state.completed_nodes.extend(ran)

    state.context.merge_branch_updates(updates)
    state.parallel_outputs[fan_out_id] = {result.name: result.output for result in results}


class ParallelHandler:
    """Fan-out handler for parallel execution nodes (``component`` shape).

    Requires ``request.executor``: branch walks reuse the executor's node
    step (visit guard, middleware chain, retry policy, edge selection).
    """

    async def execute(self, request: HandlerRequest) -> Outcome:
        node = request.node
        executor = request.executor
        if executor is None:
            raise HandlerError("fan-out requires an executor to walk branches", node_id=node.id)

        fan_in_id = resolve_fan_in(request.graph, node)
        edges = request.graph.edges_from(node.id)
        names = [branch_name(edge.label, i) for i, edge in enumerate(edges)]

        if request.emitter is not None:
            await request.emitter.emit(EventBuilder.parallel_started(
                pipeline_id=request.pipeline_id,
                node_id=node.id,
                branches=names,
                fan_in_node_id=fan_in_id,
            ))
        logger.info("Fan-out '%s': %d branch(es) converging on '%s'", node.id, len(edges), fan_in_id)

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(
                        executor.run_branch(edge.target, fan_in_id, request.state.clone(), name),
                        name=f"branch-{name}",
                    )
                    for edge, name in zip(edges, names)
                ]
        except ExceptionGroup as group:
            first = group.exceptions[0]
            if isinstance(first, EngineError):
                raise first
            raise

        results: list[BranchResult] = [task.result() for task in tasks]
        fail_count = sum(1 for r in results if r.failed)

        if request.emitter is not None:
            await request.emitter.emit(EventBuilder.parallel_completed(
                pipeline_id=request.pipeline_id,
                node_id=node.id,
                fan_in_node_id=fan_in_id,
                branch_count=len(results),
                fail_count=fail_count,
            ))

        context_updates: dict[str, object] = {
            f"parallel.branch.{r.start_node_id}.status": r.status for r in results
        }
        context_updates["parallel.fail_count"] = fail_count
        context_updates["parallel.branch_count"] = len(results)

        return Outcome.success(
            suggested_next_ids=(fan_in_id,),
            context_updates=context_updates,
            notes=f"{len(results)} branch(es) joined at {fan_in_id}, {fail_count} failed",
            metadata={"fan_in_node_id": fan_in_id, "branch_results": results},
        )


assert isinstance(ParallelHandler(), Handler)

"""EngineState — everything the executor mutates during a run.

One instance per run, owned by a single ``Executor``.  It is created fresh
or rebuilt from ``checkpoint.json`` (see ``checkpoint.state_from_checkpoint``)
and is the payload of every checkpoint the executor writes.
"""
from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any

from dotfactory.engine.conditions import stringify
from dotfactory.engine.context import PipelineContext
from dotfactory.engine.outcome import Outcome


@dataclass
class EngineState:
    """Mutable run state.

    Attributes:
        context:            Run context (``key → str | int | float | bool``).
        node_outputs:       Last non-empty textual output per node.
        parallel_outputs:   ``fan_out_node → branch_name → output``.
        node_outcomes:      Last finalized outcome per node.
        node_retry_counts:  Retries consumed per node (attempts - 1).
        completed_nodes:    Node ids in the order their outcomes finalized.
        node_visits:        How many times each node has been entered.
        goal_gate_redirects: Redirects consumed per goal-gated node.
    """

    context: PipelineContext = field(default_factory=PipelineContext)
    node_outputs: dict[str, str] = field(default_factory=dict)
    parallel_outputs: dict[str, dict[str, str]] = field(default_factory=dict)
    node_outcomes: dict[str, Outcome] = field(default_factory=dict)
    node_retry_counts: dict[str, int] = field(default_factory=dict)
    completed_nodes: list[str] = field(default_factory=list)
    node_visits: dict[str, int] = field(default_factory=dict)
    goal_gate_redirects: dict[str, int] = field(default_factory=dict)

    @classmethod
    def with_context(cls, initial: dict[str, Any] | None = None) -> EngineState:
        return cls(context=PipelineContext(initial))

    def clone(self) -> EngineState:
        """Deep, independent copy used for fan-out branch isolation."""
        return EngineState(
            context=PipelineContext(self.context.snapshot()),
            node_outputs=dict(self.node_outputs),
            parallel_outputs=copy.deepcopy(self.parallel_outputs),
            node_outcomes=dict(self.node_outcomes),
            node_retry_counts=dict(self.node_retry_counts),
            completed_nodes=list(self.completed_nodes),
            node_visits=dict(self.node_visits),
            goal_gate_redirects=dict(self.goal_gate_redirects),
        )

    def increment_visit(self, node_id: str) -> int:
        """Increment and return the visit count for *node_id*."""
        count = self.node_visits.get(node_id, 0) + 1
        self.node_visits[node_id] = count
        return count

    def mark_completed(self, node_id: str) -> None:
        self.completed_nodes.append(node_id)

    def workflow_state_json(self) -> str:
        """The ``Workflow state`` block appended to generation prompts."""
        payload = {
            "context": self.context.snapshot(),
            "nodeOutputs": self.node_outputs,
            "parallelOutputs": self.parallel_outputs,
        }
        return json.dumps(payload, indent=2, default=str)

    def context_artifact(self, max_chars: int = 500) -> dict[str, str]:
        """Stringified context plus ``<node>.output`` projections, for ``context.json``."""
        artifact: dict[str, str] = {
            key: stringify(value)[:max_chars] for key, value in self.context.snapshot().items()
        }
        for node_id, output in self.node_outputs.items():
            artifact.setdefault(f"{node_id}.output", stringify(output)[:max_chars])
        return artifact

"""Pipeline event type definitions and factory class.

This module is the canonical source for all PipelineEvent types.  It has no
runtime dependencies beyond the standard library; everything else in the
event bus imports from here.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Event type alias
# ---------------------------------------------------------------------------

EventType = Literal[
    "pipeline.started",
    "pipeline.resumed",
    "pipeline.completed",
    "pipeline.failed",
    "pipeline.canceled",
    "node.started",
    "node.completed",
    "node.failed",
    "retry.triggered",
    "goal_gate.redirect",
    "edge.selected",
    "checkpoint.saved",
    "parallel.started",
    "parallel.completed",
    "human.question",
]

# Frozenset used for runtime membership checks without importing typing internals.
ALL_EVENT_TYPES: frozenset[str] = frozenset(EventType.__args__)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PipelineEvent — immutable, slotted for minimal overhead
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PipelineEvent:
    """An immutable record of a single lifecycle event in a pipeline run.

    ``data`` carries event-type-specific payload fields.  ``sequence`` is a
    process-global monotonic counter assigned by ``EventBuilder._build()``.
    """

    type: EventType
    timestamp: datetime        # Always timezone-aware UTC
    pipeline_id: str           # Graph name
    node_id: str | None        # None for pipeline-level events
    data: dict[str, Any]
    span_id: str | None = None # Logfire span ID for correlation
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        record = dataclasses.asdict(self)
        record["timestamp"] = self.timestamp.isoformat()
        return record


# ---------------------------------------------------------------------------
# EventBuilder — centralised factory for every event type
# ---------------------------------------------------------------------------

class EventBuilder:
    """Factory methods that produce valid PipelineEvent instances.

    Call sites in the executor and middleware use these methods rather than
    constructing PipelineEvent directly.
    """

    _counter: int = 0

    @classmethod
    def _build(
        cls,
        event_type: EventType,
        pipeline_id: str,
        node_id: str | None,
        data: dict[str, Any],
        span_id: str | None = None,
    ) -> PipelineEvent:
        cls._counter += 1
        return PipelineEvent(
            type=event_type,
            timestamp=datetime.now(timezone.utc),
            pipeline_id=pipeline_id,
            node_id=node_id,
            data=data,
            span_id=span_id,
            sequence=cls._counter,
        )

    # ------------------------------------------------------------------
    # Pipeline-level events
    # ------------------------------------------------------------------

    @classmethod
    def pipeline_started(cls, pipeline_id: str, start_node: str, node_count: int) -> PipelineEvent:
        """Emit when the execution loop is about to begin."""
        return cls._build(
            "pipeline.started",
            pipeline_id,
            None,
            {"start_node": start_node, "node_count": node_count},
        )

    @classmethod
    def pipeline_resumed(
        cls,
        pipeline_id: str,
        resume_node: str,
        completed_node_count: int,
    ) -> PipelineEvent:
        """Emit when execution resumes from a checkpoint or explicit node."""
        return cls._build(
            "pipeline.resumed",
            pipeline_id,
            None,
            {"resume_node": resume_node, "completed_node_count": completed_node_count},
        )

    @classmethod
    def pipeline_completed(
        cls,
        pipeline_id: str,
        exit_node_id: str,
        duration_ms: float,
    ) -> PipelineEvent:
        return cls._build(
            "pipeline.completed",
            pipeline_id,
            None,
            {"exit_node_id": exit_node_id, "duration_ms": duration_ms},
        )

    @classmethod
    def pipeline_failed(
        cls,
        pipeline_id: str,
        error_type: str,
        error_message: str,
        last_node_id: str | None = None,
    ) -> PipelineEvent:
        """Emit on a fatal pipeline error."""
        return cls._build(
            "pipeline.failed",
            pipeline_id,
            None,
            {
                "error_type": error_type,
                "error_message": error_message,
                "last_node_id": last_node_id,
            },
        )

    @classmethod
    def pipeline_canceled(cls, pipeline_id: str, last_node_id: str | None = None) -> PipelineEvent:
        return cls._build(
            "pipeline.canceled",
            pipeline_id,
            None,
            {"last_node_id": last_node_id},
        )

    # ------------------------------------------------------------------
    # Node-level events
    # ------------------------------------------------------------------

    @classmethod
    def node_started(
        cls,
        pipeline_id: str,
        node_id: str,
        handler_type: str,
        visit_count: int,
        attempt_number: int = 1,
    ) -> PipelineEvent:
        """Emit immediately before a handler is invoked."""
        return cls._build(
            "node.started",
            pipeline_id,
            node_id,
            {
                "handler_type": handler_type,
                "visit_count": visit_count,
                "attempt_number": attempt_number,
            },
        )

    @classmethod
    def node_completed(
        cls,
        pipeline_id: str,
        node_id: str,
        outcome_status: str,
        duration_ms: float,
        span_id: str | None = None,
    ) -> PipelineEvent:
        """Emit after a handler returns a non-failing outcome."""
        return cls._build(
            "node.completed",
            pipeline_id,
            node_id,
            {"outcome_status": outcome_status, "duration_ms": duration_ms},
            span_id=span_id,
        )

    @classmethod
    def node_failed(
        cls,
        pipeline_id: str,
        node_id: str,
        error_type: str,
        message: str | None = None,
        goal_gate: bool = False,
    ) -> PipelineEvent:
        """Emit when a handler raises or returns FAIL / RETRY."""
        return cls._build(
            "node.failed",
            pipeline_id,
            node_id,
            {"error_type": error_type, "message": message, "goal_gate": goal_gate},
        )

    @classmethod
    def retry_triggered(
        cls,
        pipeline_id: str,
        node_id: str,
        attempt_number: int,
        backoff_ms: float,
        reason: str | None = None,
    ) -> PipelineEvent:
        return cls._build(
            "retry.triggered",
            pipeline_id,
            node_id,
            {"attempt_number": attempt_number, "backoff_ms": backoff_ms, "reason": reason},
        )

    @classmethod
    def goal_gate_redirect(
        cls,
        pipeline_id: str,
        node_id: str,
        retry_target: str,
        redirect_count: int,
    ) -> PipelineEvent:
        """Emit when a failing goal-gated node sends the walk back to its retry target."""
        return cls._build(
            "goal_gate.redirect",
            pipeline_id,
            node_id,
            {"retry_target": retry_target, "redirect_count": redirect_count},
        )

    # ------------------------------------------------------------------
    # Routing, persistence, fan-out and human gate
    # ------------------------------------------------------------------

    @classmethod
    def edge_selected(
        cls,
        pipeline_id: str,
        from_node_id: str,
        to_node_id: str,
        condition: str | None = None,
        label: str | None = None,
    ) -> PipelineEvent:
        return cls._build(
            "edge.selected",
            pipeline_id,
            from_node_id,
            {"from_node_id": from_node_id, "to_node_id": to_node_id,
             "condition": condition, "label": label},
        )

    @classmethod
    def checkpoint_saved(
        cls,
        pipeline_id: str,
        node_id: str | None,
        checkpoint_path: str,
    ) -> PipelineEvent:
        return cls._build(
            "checkpoint.saved",
            pipeline_id,
            node_id,
            {"checkpoint_path": checkpoint_path},
        )

    @classmethod
    def parallel_started(
        cls,
        pipeline_id: str,
        node_id: str,
        branches: list[str],
        fan_in_node_id: str,
    ) -> PipelineEvent:
        return cls._build(
            "parallel.started",
            pipeline_id,
            node_id,
            {"branches": list(branches), "fan_in_node_id": fan_in_node_id},
        )

    @classmethod
    def parallel_completed(
        cls,
        pipeline_id: str,
        node_id: str,
        fan_in_node_id: str,
        branch_count: int,
        fail_count: int,
    ) -> PipelineEvent:
        return cls._build(
            "parallel.completed",
            pipeline_id,
            node_id,
            {"fan_in_node_id": fan_in_node_id, "branch_count": branch_count,
             "fail_count": fail_count},
        )

    @classmethod
    def human_question(
        cls,
        pipeline_id: str,
        node_id: str,
        prompt: str,
        options: list[str],
    ) -> PipelineEvent:
        return cls._build(
            "human.question",
            pipeline_id,
            node_id,
            {"prompt": prompt, "options": list(options)},
        )

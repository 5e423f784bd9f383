"""Checkpoint/resume system for the pipeline engine.

This module provides:
- ``NodeOutcomeRecord`` — Pydantic model for one node's last finalized outcome
- ``EngineCheckpoint``  — Full resumable state, written after every outcome
- ``CheckpointManager`` — Reads and writes checkpoints and the run manifest

``checkpoint.json`` is the only durable resume contract:

.. code-block:: text

    <logs_dir>/
      manifest.json          ← name, goal, label, start_time (written once)
      checkpoint.json        ← atomic write target
      checkpoint.json.tmp    ← temporary write (renamed over checkpoint.json)
      events.jsonl           ← event stream (see events.jsonl_backend)
      <node_id>/             ← per-node artefacts
        prompt.md | prompt.txt
        response.md
        context.json
        status.json
        tool_output.txt

Design invariants:
1. The engine never writes to the DOT file, only to the logs directory.
2. ``save()`` uses write-to-tmp-then-rename for atomic semantics.
3. ``save()`` logs ``OSError`` instead of crashing the run; a lost
   checkpoint is recovered by the next successful save.
4. ``load()`` raises ``CheckpointError`` on unreadable JSON or schema
   mismatch rather than resuming from a half-understood state.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from dotfactory.engine.context import PipelineContext
from dotfactory.engine.exceptions import CheckpointError
from dotfactory.engine.outcome import Outcome, normalize_status
from dotfactory.engine.state import EngineState

if TYPE_CHECKING:
    from dotfactory.engine.graph import Graph

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Pydantic models
# ──────────────────────────────────────────────────────────────────────────────

class NodeOutcomeRecord(BaseModel):
    """Serialised form of a node's last finalized ``Outcome``."""

    model_config = ConfigDict(extra="ignore")

    status: str                                   # OutcomeStatus.value
    preferred_label: str | None = None
    suggested_next_ids: list[str] = Field(default_factory=list)
    context_updates: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    failure_reason: str | None = None
    output: str | None = None

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> NodeOutcomeRecord:
        return cls(
            status=outcome.status.value,
            preferred_label=outcome.preferred_label,
            suggested_next_ids=list(outcome.suggested_next_ids),
            context_updates=dict(outcome.context_updates),
            notes=outcome.notes,
            failure_reason=outcome.failure_reason,
            output=outcome.output,
        )

    def to_outcome(self) -> Outcome:
        return Outcome(
            status=normalize_status(self.status),
            preferred_label=self.preferred_label,
            suggested_next_ids=tuple(self.suggested_next_ids),
            context_updates=dict(self.context_updates),
            notes=self.notes,
            failure_reason=self.failure_reason,
            output=self.output,
        )


class EngineCheckpoint(BaseModel):
    """Full resumable state of a pipeline run.

    ``current_node`` is the node the run was at (or stopped at) when the
    checkpoint was written; resume starts there.
    """

    model_config = ConfigDict(extra="ignore")

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    current_node: str | None = None
    completed_nodes: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    node_outputs: dict[str, str] = Field(default_factory=dict)
    parallel_outputs: dict[str, dict[str, str]] = Field(default_factory=dict)
    node_retry_counts: dict[str, int] = Field(default_factory=dict)
    node_outcomes: dict[str, NodeOutcomeRecord] = Field(default_factory=dict)
    node_visits: dict[str, int] = Field(default_factory=dict)
    goal_gate_redirects: dict[str, int] = Field(default_factory=dict)
    last_error: str | None = None

    def to_json(self) -> str:
        """Pretty JSON; ``last_error`` is omitted entirely when unset."""
        payload = self.model_dump(mode="json")
        if payload.get("last_error") is None:
            payload.pop("last_error", None)
        return json.dumps(payload, indent=2)


def checkpoint_from_state(
    state: EngineState,
    current_node: str | None,
    last_error: str | None = None,
) -> EngineCheckpoint:
    """Snapshot *state* into an ``EngineCheckpoint``."""
    return EngineCheckpoint(
        current_node=current_node,
        completed_nodes=list(state.completed_nodes),
        context=state.context.snapshot(),
        node_outputs=dict(state.node_outputs),
        parallel_outputs={k: dict(v) for k, v in state.parallel_outputs.items()},
        node_retry_counts=dict(state.node_retry_counts),
        node_outcomes={
            node_id: NodeOutcomeRecord.from_outcome(outcome)
            for node_id, outcome in state.node_outcomes.items()
        },
        node_visits=dict(state.node_visits),
        goal_gate_redirects=dict(state.goal_gate_redirects),
        last_error=last_error,
    )


def state_from_checkpoint(checkpoint: EngineCheckpoint) -> EngineState:
    """Rebuild a mutable ``EngineState`` from a loaded checkpoint."""
    return EngineState(
        context=PipelineContext(checkpoint.context),
        node_outputs=dict(checkpoint.node_outputs),
        parallel_outputs={k: dict(v) for k, v in checkpoint.parallel_outputs.items()},
        node_outcomes={
            node_id: record.to_outcome()
            for node_id, record in checkpoint.node_outcomes.items()
        },
        node_retry_counts=dict(checkpoint.node_retry_counts),
        completed_nodes=list(checkpoint.completed_nodes),
        node_visits=dict(checkpoint.node_visits),
        goal_gate_redirects=dict(checkpoint.goal_gate_redirects),
    )


# ──────────────────────────────────────────────────────────────────────────────
# CheckpointManager
# ──────────────────────────────────────────────────────────────────────────────

class CheckpointManager:
    """Creates, reads, and atomically writes checkpoints in a logs directory.

    Args:
        run_dir: Path to the logs directory.  Created on first write.
    """

    CHECKPOINT_FILENAME = "checkpoint.json"
    CHECKPOINT_TMP_FILENAME = "checkpoint.json.tmp"
    MANIFEST_FILENAME = "manifest.json"

    def __init__(self, run_dir: Path | str) -> None:
        self.run_dir = Path(run_dir)
        self.checkpoint_path = self.run_dir / self.CHECKPOINT_FILENAME
        self._tmp_path = self.run_dir / self.CHECKPOINT_TMP_FILENAME

    # ── load ───────────────────────────────────────────────────────────────

    def exists(self) -> bool:
        """Return True if a checkpoint file exists in ``run_dir``."""
        return self.checkpoint_path.exists()

    def load(self) -> EngineCheckpoint:
        """Read and validate ``checkpoint.json``.

        Raises:
            CheckpointError: If the file is missing, is not JSON, or does
                not match the checkpoint schema.
        """
        if not self.checkpoint_path.exists():
            raise CheckpointError("no checkpoint.json to resume from", path=str(self.checkpoint_path))
        try:
            data = json.loads(self.checkpoint_path.read_text(encoding="utf-8"))
            checkpoint = EngineCheckpoint.model_validate(data)
        except (OSError, json.JSONDecodeError) as exc:
            raise CheckpointError(f"unreadable checkpoint: {exc}", path=str(self.checkpoint_path)) from exc
        except PydanticValidationError as exc:
            raise CheckpointError(f"schema mismatch: {exc}", path=str(self.checkpoint_path)) from exc

        logger.info(
            "Checkpoint loaded for resume: current=%s completed=%d",
            checkpoint.current_node,
            len(checkpoint.completed_nodes),
        )
        return checkpoint

    def load_state(self) -> tuple[EngineState, str | None]:
        """Load the checkpoint and return ``(state, current_node)``."""
        checkpoint = self.load()
        return state_from_checkpoint(checkpoint), checkpoint.current_node

    # ── save ───────────────────────────────────────────────────────────────

    def save(
        self,
        state: EngineState,
        current_node: str | None,
        last_error: str | None = None,
    ) -> EngineCheckpoint:
        """Atomically persist *state* to ``checkpoint.json``.

        Uses write-to-tmp-then-rename for crash safety.  An ``OSError`` is
        logged, not raised.

        Returns:
            The checkpoint model that was (or would have been) written.
        """
        checkpoint = checkpoint_from_state(state, current_node, last_error)
        self.write(checkpoint)
        return checkpoint

    def write(self, checkpoint: EngineCheckpoint) -> bool:
        """Write an already-built checkpoint.  Returns True on success."""
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            self._tmp_path.write_text(checkpoint.to_json(), encoding="utf-8")
            # Atomic rename (POSIX guarantees atomicity on same filesystem)
            os.replace(self._tmp_path, self.checkpoint_path)
        except OSError as exc:
            logger.error(
                "Checkpoint write failed (non-fatal): %s; the run continues "
                "but resume is unavailable until the next successful save.",
                exc,
            )
            try:
                self._tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            return False
        logger.debug(
            "Checkpoint saved: node=%s completed=%d",
            checkpoint.current_node,
            len(checkpoint.completed_nodes),
        )
        return True

    # ── manifest & artefacts ───────────────────────────────────────────────

    def write_manifest(self, graph: "Graph", started_at: datetime | None = None) -> Path:
        """Write ``manifest.json`` (name, goal, label, start_time)."""
        started_at = started_at or datetime.now(timezone.utc)
        manifest = {
            "name": graph.name,
            "goal": graph.goal,
            "label": graph.label,
            "start_time": started_at.isoformat(),
        }
        self.run_dir.mkdir(parents=True, exist_ok=True)
        manifest_path = self.run_dir / self.MANIFEST_FILENAME
        manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return manifest_path

    def node_dir(self, node_id: str) -> Path:
        """Return (and create) the per-node artefact directory for *node_id*."""
        d = self.run_dir / node_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def restart_manager(self, index: int) -> CheckpointManager:
        """Manager for the ``restart-<index>/`` sub-directory used by loop restarts."""
        return CheckpointManager(self.run_dir / f"restart-{index}")

"""Outcome model for handler execution results.

Every Handler.execute() call returns an Outcome.  The executor applies it to
``EngineState`` and routes on it via the edge selector.

Design notes:
- Frozen dataclass (not Pydantic) because Outcome is an in-memory value
  object.  The checkpoint serialises it through ``NodeOutcomeRecord``.
- ``OutcomeStatus`` values are lower-case strings so edge conditions such as
  ``outcome=success`` compare without case conversion, and so the checkpoint
  can store ``status.value`` directly.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class OutcomeStatus(str, Enum):
    """Normalised execution result for a single node."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    RETRY = "retry"
    FAIL = "fail"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        """FAIL and an unresolved RETRY both count as failing."""
        return self in (OutcomeStatus.FAIL, OutcomeStatus.RETRY)


# Aliases accepted from status files written by tools and from checkpoints.
_STATUS_ALIASES: dict[str, OutcomeStatus] = {
    "success": OutcomeStatus.SUCCESS,
    "partial_success": OutcomeStatus.PARTIAL_SUCCESS,
    "retry": OutcomeStatus.RETRY,
    "fail": OutcomeStatus.FAIL,
    "failed": OutcomeStatus.FAIL,
    "failure": OutcomeStatus.FAIL,
    "skipped": OutcomeStatus.SKIPPED,
}


def normalize_status(raw: Any, default: OutcomeStatus = OutcomeStatus.SUCCESS) -> OutcomeStatus:
    """Map a free-form status string (``"partial-success"``, ``"FAILED"``...) to an OutcomeStatus.

    Missing or unrecognised values map to *default*.
    """
    if isinstance(raw, OutcomeStatus):
        return raw
    if raw is None:
        return default
    key = str(raw).strip().lower().replace("-", "_")
    return _STATUS_ALIASES.get(key, default)


@dataclass(frozen=True)
class Outcome:
    """Immutable result returned by every Handler.execute() call.

    Attributes:
        status:             Normalised execution result.
        preferred_label:    Edge label the handler wants routing to prefer.
        suggested_next_ids: Node IDs the handler suggests routing to.
        context_updates:    Key-value pairs merged into the run context.
        notes:              Free-form human-readable notes.
        failure_reason:     Why the node failed (FAIL / RETRY outcomes).
        output:             Textual output recorded in ``node_outputs``.
        metadata:           Per-handler data (exit codes, branch results...)
                            kept in memory for events, not checkpointed.
    """

    status: OutcomeStatus
    preferred_label: str | None = None
    suggested_next_ids: tuple[str, ...] = ()
    context_updates: dict[str, Any] = field(default_factory=dict)
    notes: str | None = None
    failure_reason: str | None = None
    output: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, output: str | None = None, **kwargs: Any) -> Outcome:
        return cls(status=OutcomeStatus.SUCCESS, output=output, **kwargs)

    @classmethod
    def fail(cls, reason: str, **kwargs: Any) -> Outcome:
        return cls(status=OutcomeStatus.FAIL, failure_reason=reason, **kwargs)

    @classmethod
    def retry(cls, reason: str, **kwargs: Any) -> Outcome:
        return cls(status=OutcomeStatus.RETRY, failure_reason=reason, **kwargs)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], **kwargs: Any) -> Outcome:
        """Build an Outcome from a status payload (tool ``status.json``, generation result).

        Keys are accepted in snake_case or camelCase; ``outcome`` is an alias
        for ``status``.  A missing status means SUCCESS.
        """
        status_raw = payload.get("status", payload.get("outcome"))
        suggested = payload.get("suggested_next_ids") or payload.get("suggestedNextIds") or []
        updates = payload.get("context_updates") or payload.get("contextUpdates") or {}
        output = payload.get("output")
        return cls(
            status=normalize_status(status_raw, default=OutcomeStatus.SUCCESS),
            preferred_label=payload.get("preferred_label") or payload.get("preferredLabel"),
            suggested_next_ids=tuple(str(s) for s in suggested) if isinstance(suggested, list) else (),
            context_updates=dict(updates) if isinstance(updates, Mapping) else {},
            notes=payload.get("notes"),
            failure_reason=payload.get("failure_reason") or payload.get("failureReason"),
            output=None if output is None else str(output),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Run-level result
# ---------------------------------------------------------------------------

class RunStatus(str, Enum):
    """Terminal status of a whole run (distinct from per-node outcomes)."""

    SUCCESS = "success"
    FAIL = "fail"
    CANCELED = "canceled"


@dataclass
class RunResult:
    """What the executor returns when a run stops for any reason.

    Attributes:
        status:       SUCCESS, FAIL or CANCELED.
        state:        Final ``EngineState`` (the object the executor mutated).
        exit_node_id: The exit node reached on SUCCESS, else ``None``.
        current_node: Node the run stopped at.
        error:        Human-readable error message on FAIL.
    """

    status: RunStatus
    state: Any
    exit_node_id: str | None = None
    current_node: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

"""Engine exception hierarchy.

All exceptions raised by the engine are subclasses of ``EngineError`` so
callers can catch any engine error with a single except clause while still
discriminating between specific failure kinds.

Error taxonomy:

Before execution (abort the run, nothing is checkpointed):
    ParseError            — malformed DOT source
    ValidationError       — lint found ERROR-severity diagnostics
    ConditionSyntaxError  — an edge guard does not parse
    StylesheetError       — ``model_stylesheet`` does not parse

During execution (fatal; the last checkpoint is written with ``last_error``):
    HandlerError              — a handler could not run (missing callback, ...)
    UnknownHandlerTypeError   — custom node type with no registered handler
    NodeFailedError           — FAIL outcome with no route out of it
    GoalGateUnsatisfiedError  — a gated node kept failing past its redirect budget
    MaxVisitsExceededError    — a node was entered more than ``max_visits`` times
    NoEligibleEdgeError       — edge selection found no qualifying edge
    ParallelConvergenceError  — fan-out branches do not meet at one fan-in
    MaxStepsExceededError     — runaway walk hit the executor step bound
    CheckpointError           — checkpoint file unreadable or malformed

Not a failure:
    RunCanceledError          — cancellation observed at a step boundary
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dotfactory.engine.lint import Diagnostic


class EngineError(Exception):
    """Base class for all engine exceptions."""


# ---------------------------------------------------------------------------
# Pre-execution errors
# ---------------------------------------------------------------------------

class ParseError(EngineError):
    """Raised when the DOT source cannot be parsed.

    Attributes:
        message:  Human-readable description of the problem.
        line:     1-based line number in the source where the error occurred.
                  ``0`` means the line could not be determined.
        snippet:  The offending source fragment (up to 80 characters).
    """

    def __init__(self, message: str, line: int = 0, snippet: str = "") -> None:
        self.message = message
        self.line = line
        self.snippet = snippet
        loc = f" (line {line})" if line else ""
        snip = f": {snippet!r}" if snippet else ""
        super().__init__(f"{message}{loc}{snip}")


class ValidationError(EngineError):
    """``validate(graph)`` found ERROR-severity diagnostics.

    Attributes:
        diagnostics: Every diagnostic produced, errors and warnings alike.
    """

    def __init__(self, diagnostics: list["Diagnostic"]) -> None:
        self.diagnostics = diagnostics
        errors = [d for d in diagnostics if d.severity == "ERROR"]
        summary = "; ".join(f"{d.rule}: {d.message}" for d in errors)
        super().__init__(f"Pipeline validation failed with {len(errors)} error(s): {summary}")


class ConditionSyntaxError(EngineError):
    """An edge condition expression does not parse."""

    def __init__(self, message: str, expression: str = "") -> None:
        self.expression = expression
        super().__init__(message)


class StylesheetError(EngineError):
    """The graph's ``model_stylesheet`` attribute does not parse."""


# ---------------------------------------------------------------------------
# Execution errors
# ---------------------------------------------------------------------------

class HandlerError(EngineError):
    """Handler encountered an unrecoverable error during execution.

    Attributes:
        node_id:    ID of the node whose handler raised this error.
        cause:      Original exception (may be None for synthetic errors).
    """

    def __init__(self, message: str, node_id: str = "", cause: BaseException | None = None) -> None:
        self.node_id = node_id
        self.cause = cause
        detail = f" (node '{node_id}')" if node_id else ""
        super().__init__(f"Handler error{detail}: {message}")
        if cause is not None:
            self.__cause__ = cause


class UnknownHandlerTypeError(HandlerError):
    """A custom node type has no handler in the caller-supplied registry."""

    def __init__(self, handler_type: str, node_id: str = "") -> None:
        self.handler_type = handler_type
        super().__init__(
            f"No custom handler registered for node type '{handler_type}'",
            node_id=node_id,
        )


class NodeFailedError(EngineError):
    """A node finished FAIL and no edge routes its failure."""

    def __init__(self, node_id: str, reason: str = "") -> None:
        self.node_id = node_id
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Node '{node_id}' failed{detail}")


class RetriesExhaustedError(NodeFailedError):
    """A node kept failing through every retry and does not allow partial."""

    def __init__(self, node_id: str, attempts: int, reason: str = "") -> None:
        self.attempts = attempts
        super().__init__(node_id, f"retries exhausted after {attempts} attempt(s)"
                                  + (f" ({reason})" if reason else ""))


class GoalGateUnsatisfiedError(EngineError):
    """A goal-gated node kept failing past its redirect budget."""

    def __init__(self, node_id: str, redirects: int, reason: str = "") -> None:
        self.node_id = node_id
        self.redirects = redirects
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"goal gate unsatisfied: node '{node_id}' still failing after "
            f"{redirects} redirect(s){detail}"
        )


class MaxVisitsExceededError(EngineError):
    """A node was entered more often than its ``max_visits`` attribute allows."""

    def __init__(self, node_id: str, visits: int, max_visits: int) -> None:
        self.node_id = node_id
        self.visits = visits
        self.max_visits = max_visits
        super().__init__(
            f"exceeded max_visits for node {node_id} ({visits} > {max_visits})"
        )


class NoEligibleEdgeError(EngineError):
    """Edge selection exhausted every precedence step without a winner."""

    def __init__(self, node_id: str, available_edges: str = "") -> None:
        self.node_id = node_id
        self.available_edges = available_edges
        detail = f" Available edges: {available_edges}" if available_edges else ""
        super().__init__(f"No eligible outgoing edge from node '{node_id}'.{detail}")


class ParallelConvergenceError(EngineError):
    """Fan-out branches are malformed (no single fan-in, nesting, loops)."""

    def __init__(self, message: str, node_id: str = "") -> None:
        self.node_id = node_id
        super().__init__(message)


class MaxStepsExceededError(EngineError):
    def __init__(self, max_steps: int) -> None:
        self.max_steps = max_steps
        super().__init__(f"Graph execution exceeded max steps ({max_steps})")


class CheckpointError(EngineError):
    """Checkpoint file could not be read or does not match the schema.

    Attributes:
        path: Path to the offending checkpoint file.
    """

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        location = f" at '{path}'" if path else ""
        super().__init__(f"Checkpoint{location}: {message}")


class RunCanceledError(EngineError):
    """Cancellation was requested; raised internally and mapped to CANCELED."""

    def __init__(self, node_id: str = "") -> None:
        self.node_id = node_id
        super().__init__(f"Run canceled before node '{node_id}'" if node_id else "Run canceled")

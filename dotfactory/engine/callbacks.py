"""EngineCallbacks — the executor's only channel to the outside world.

Generation backends, human decisions, custom node types and observers are
all injected through one ``EngineCallbacks`` object rather than imported by
the handlers.  Every hook may be a plain function or a coroutine function;
``maybe_await`` normalises the two.

Hooks:
    generate(request: GenerationRequest) -> str | Mapping | Outcome | None
        Called by generation nodes (codergen, manager loop).  Text becomes
        the node's output; a status mapping or an Outcome also sets the
        status, routing hints and context updates.
    ask_human(question: HumanQuestion) -> str
        Called by human-wait nodes.  Returns the chosen option label.
    custom_handlers: {type_name: Handler}
        Open registry for node types outside the built-in set.
    on_event(event: PipelineEvent) -> None
        Receives every pipeline event.
    on_checkpoint(checkpoint: EngineCheckpoint) -> None
        Called after every checkpoint write.
    on_outcome(node: Node, outcome: Outcome, stage_dir: Path | None) -> None
        Called after each node's outcome is finalized.
"""
from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar, Union

if TYPE_CHECKING:
    from dotfactory.engine.checkpoint import EngineCheckpoint
    from dotfactory.engine.events.types import PipelineEvent
    from dotfactory.engine.graph import Node
    from dotfactory.engine.handlers.base import Handler
    from dotfactory.engine.outcome import Outcome
    from dotfactory.engine.state import EngineState

T = TypeVar("T")

MaybeAwaitable = Union[T, Awaitable[T]]

_DURATION_RE = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNIT_SECONDS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}


def parse_duration(raw: str | None) -> float | None:
    """Parse ``"250ms"``, ``"30s"``, ``"5m"``, ``"2h"`` or ``"1d"`` into seconds.

    Returns ``None`` for empty or malformed input.
    """
    if not raw:
        return None
    match = _DURATION_RE.match(raw.strip())
    if match is None:
        return None
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    """Await *value* if it is awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


@dataclass(frozen=True)
class GenerationRequest:
    """What a generation backend receives for one node attempt.

    Attributes:
        node:           The node being executed.
        prompt:         Full prompt including the ``Workflow state`` block.
        state:          The live run state (read it, do not mutate it).
        stage_dir:      Per-node artefact directory, ``None`` without logs.
        attempt_number: 1-based attempt counter under the retry policy.
    """

    node: "Node"
    prompt: str
    state: "EngineState"
    stage_dir: Path | None = None
    attempt_number: int = 1


@dataclass(frozen=True)
class HumanQuestion:
    """A decision the run needs from a person."""

    node_id: str
    prompt: str
    options: tuple[str, ...] = ()
    timeout_seconds: float | None = None


# Text, a status mapping or an Outcome; see CodergenHandler.
GenerationResult = Union[str, "Outcome", Mapping[str, Any], None]

GenerateFn = Callable[[GenerationRequest], MaybeAwaitable[GenerationResult]]
AskHumanFn = Callable[[HumanQuestion], MaybeAwaitable[str]]


@dataclass
class EngineCallbacks:
    """Strategy object bundling every external hook the executor calls."""

    generate: GenerateFn | None = None
    ask_human: AskHumanFn | None = None
    custom_handlers: dict[str, "Handler"] = field(default_factory=dict)
    on_event: Callable[["PipelineEvent"], Any] | None = None
    on_checkpoint: Callable[["EngineCheckpoint"], Any] | None = None
    on_outcome: Callable[["Node", "Outcome", Path | None], Any] | None = None

"""Handler protocol and unified request object.

**Handler Protocol**:

Every node handler implements ``async def execute(request: HandlerRequest)
-> Outcome``.  The protocol is ``runtime_checkable`` so that the registry can
validate handler objects at registration time using ``isinstance(obj, Handler)``.

**HandlerRequest**:

The executor always wraps handler calls in ``HandlerRequest``, even when no
middlewares are configured, so the middleware chain's callable signature is
identical to a raw handler call::

    async (request: HandlerRequest) -> Outcome

Handlers are stateless.  They read ``request.state`` but never mutate it;
everything they want recorded goes into the returned ``Outcome`` and the
executor applies it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from dotfactory.engine.callbacks import EngineCallbacks
from dotfactory.engine.graph import Graph, Node

if TYPE_CHECKING:
    from dotfactory.engine.outcome import Outcome
    from dotfactory.engine.state import EngineState


@dataclass(frozen=True)
class HandlerRequest:
    """Unified request object for handler invocation.

    Attributes:
        node:           The DOT node being executed.
        graph:          The transformed graph (read-only).
        state:          Run state; a cloned copy inside fan-out branches.
        callbacks:      External hooks (generation, human, custom types).
        emitter:        EventEmitter; ``None`` when events are disabled.
        pipeline_id:    Pipeline identifier (graph name).
        visit_count:    Number of times this node has been entered this run.
        attempt_number: Retry attempt number (1 = first attempt).
        logs_dir:       Run logs directory; ``None`` disables artefacts.
        work_dir:       Repository root tool commands run in.
        executor:       The driving executor (fan-out uses it to walk branches).
    """

    node: Node
    graph: Graph
    state: "EngineState"
    callbacks: EngineCallbacks = field(default_factory=EngineCallbacks)
    emitter: Any = None
    pipeline_id: str = ""
    visit_count: int = 1
    attempt_number: int = 1
    logs_dir: Path | None = None
    work_dir: Path | None = None
    executor: Any = None

    @property
    def stage_dir(self) -> Path | None:
        """Per-node artefact directory (created on demand), ``None`` without logs."""
        if self.logs_dir is None:
            return None
        d = self.logs_dir / self.node.id
        d.mkdir(parents=True, exist_ok=True)
        return d


@runtime_checkable
class Handler(Protocol):
    """Protocol that all node handlers must satisfy.

    The method is ``async`` so the fan-out handler can run branches under
    ``asyncio.TaskGroup``; sequential handlers simply contain their logic
    inside a coroutine body.
    """

    async def execute(self, request: HandlerRequest) -> "Outcome":
        """Execute the handler's logic for the request.

        Raises:
            HandlerError: If the handler encounters an unrecoverable error.
                          The executor treats it as fatal for the run.
        """
        ...


def write_artifact(stage_dir: Path | None, name: str, content: str) -> Path | None:
    """Write *content* to ``stage_dir/name``; no-op without a stage dir."""
    if stage_dir is None:
        return None
    path = stage_dir / name
    path.write_text(content, encoding="utf-8")
    return path

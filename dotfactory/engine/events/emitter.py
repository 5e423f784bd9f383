"""EventEmitter protocol, CompositeEmitter, NullEmitter, and build_emitter factory.

The emitter protocol is structural: any class implementing ``emit()`` and
``aclose()`` qualifies without subclassing.  ``CompositeEmitter`` fans out to
all backends concurrently via ``asyncio.gather(return_exceptions=True)`` so
a single failing backend never blocks the pipeline execution loop.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dotfactory.engine.events.types import PipelineEvent

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.jsonl"


# ---------------------------------------------------------------------------
# EventEmitter Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class EventEmitter(Protocol):
    """Structural protocol for pipeline event backends."""

    async def emit(self, event: PipelineEvent) -> None:
        """Emit one pipeline event.

        Backend failures should be caught internally and logged at WARNING
        level without propagating to the execution loop.
        """
        ...

    async def aclose(self) -> None:
        """Flush and close any open resources.  Must be idempotent."""
        ...


# ---------------------------------------------------------------------------
# NullEmitter — no-op backend for testing / disabled configs
# ---------------------------------------------------------------------------

class NullEmitter:
    """No-op event emitter.  Accepts all events, stores nothing."""

    async def emit(self, event: PipelineEvent) -> None:
        return

    async def aclose(self) -> None:
        return


# ---------------------------------------------------------------------------
# CallbackEmitter — forwards events to a caller-supplied hook
# ---------------------------------------------------------------------------

class CallbackEmitter:
    """Adapts a plain ``on_event`` callable (sync or async) to the emitter protocol."""

    def __init__(self, callback: Callable[[PipelineEvent], Any]) -> None:
        self._callback = callback

    async def emit(self, event: PipelineEvent) -> None:
        result = self._callback(event)
        if inspect.isawaitable(result):
            await result

    async def aclose(self) -> None:
        return


# ---------------------------------------------------------------------------
# CompositeEmitter — fans out to all backends concurrently
# ---------------------------------------------------------------------------

class CompositeEmitter:
    """Fan-out emitter that forwards each event to all configured backends.

    Exceptions from individual backends are logged at WARNING and discarded.
    """

    def __init__(self, backends: list[EventEmitter]) -> None:
        self._backends = list(backends)

    @property
    def backends(self) -> list[EventEmitter]:
        return list(self._backends)

    def add(self, backend: EventEmitter) -> None:
        self._backends.append(backend)

    async def emit(self, event: PipelineEvent) -> None:
        """Emit event to all backends concurrently; log per-backend failures."""
        if not self._backends:
            return
        results = await asyncio.gather(
            *[b.emit(event) for b in self._backends],
            return_exceptions=True,
        )
        for backend, result in zip(self._backends, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Emitter backend %s failed on event %s: %s",
                    type(backend).__name__,
                    getattr(event, "type", "<unknown>"),
                    result,
                )

    async def aclose(self) -> None:
        if not self._backends:
            return
        await asyncio.gather(
            *[b.aclose() for b in self._backends],
            return_exceptions=True,
        )


# ---------------------------------------------------------------------------
# EventBusConfig — declarative configuration for build_emitter()
# ---------------------------------------------------------------------------

def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class EventBusConfig:
    """Configuration flags for the event bus backends.

    ``jsonl_enabled`` defaults to the ``DOTFACTORY_EVENTS`` environment
    variable (``0`` disables ``events.jsonl``).
    """

    jsonl_enabled: bool | None = None
    jsonl_path: str | None = None          # None = <run_dir>/events.jsonl

    def __post_init__(self) -> None:
        if self.jsonl_enabled is None:
            self.jsonl_enabled = _env_flag("DOTFACTORY_EVENTS", True)


# ---------------------------------------------------------------------------
# build_emitter — factory
# ---------------------------------------------------------------------------

def build_emitter(
    pipeline_id: str,
    run_dir: str | Path | None,
    config: EventBusConfig | None = None,
    on_event: Callable[[PipelineEvent], Any] | None = None,
) -> CompositeEmitter:
    """Construct a CompositeEmitter with the configured backends.

    Called once per run before the execution loop begins.  The returned
    emitter must be closed via ``aclose()`` in a ``finally`` block.

    Args:
        pipeline_id: The pipeline identifier string (graph name).
        run_dir:     The logs directory for ``events.jsonl``; ``None`` skips it.
        config:      Optional configuration; defaults to ``EventBusConfig()``.
        on_event:    Optional caller hook that receives every event as well.
    """
    if config is None:
        config = EventBusConfig()

    backends: list[EventEmitter] = []

    if run_dir and config.jsonl_enabled:
        from dotfactory.engine.events.jsonl_backend import JSONLEmitter
        jsonl_path = config.jsonl_path or os.path.join(str(run_dir), EVENTS_FILENAME)
        backends.append(JSONLEmitter(jsonl_path))

    if on_event is not None:
        backends.append(CallbackEmitter(on_event))

    logger.debug(
        "Event bus for %s: %s",
        pipeline_id,
        ", ".join(type(b).__name__ for b in backends) or "(none)",
    )
    return CompositeEmitter(backends)

"""PipelineContext — thread-safe key-value store for run context.

Values are restricted to ``str | int | float | bool``.  Anything else a
handler or tool status file hands over is coerced on the way in by
``coerce_context_value``.  The condition evaluator is the only other place
that converts values (it compares everything as strings).

Fan-out branches never share a PipelineContext: each branch walks on its own
``EngineState.clone()`` and its updates are merged back with
``merge_branch_updates()`` once every branch has finished.
"""
from __future__ import annotations

import json
import threading
from typing import Any, Iterable, Iterator, Union

ContextValue = Union[str, int, float, bool]


def coerce_context_value(value: Any) -> ContextValue:
    """Coerce *value* to a context scalar.

    ``None`` becomes ``""``; lists and dicts are stored as compact JSON text.
    """
    if isinstance(value, (bool, int, float, str)):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


class PipelineContext:
    """Thread-safe key-value store for accumulated run state.

    Thread safety: every public method takes the lock before touching
    ``_data``.  Fan-out branches run on separate copies, so the lock only
    guards against handlers that hop to worker threads.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, ContextValue] = {
            key: coerce_context_value(value) for key, value in (initial or {}).items()
        }
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Core accessors
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if not present."""
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = coerce_context_value(value)

    def update(self, updates: dict[str, Any]) -> None:
        """Merge *updates* into the context, overwriting existing keys."""
        with self._lock:
            for key, value in updates.items():
                self._data[key] = coerce_context_value(value)

    def pop(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.pop(key, default)

    def snapshot(self) -> dict[str, ContextValue]:
        """Return a shallow copy of the current context.

        Used for prompts, artifacts, checkpoints and edge selection so later
        mutations cannot affect a decision already in flight.
        """
        with self._lock:
            return dict(self._data)

    # ------------------------------------------------------------------
    # Fan-out merge
    # ------------------------------------------------------------------

    def merge_branch_updates(
        self,
        branch_updates: Iterable[tuple[str, dict[str, Any]]],
    ) -> dict[str, ContextValue]:
        """Merge finished fan-out branches back into this context.

        Branches are applied in the order given (edge-declaration order), so
        when two branches write the same key the later branch wins and the
        result is deterministic regardless of completion order.

        Args:
            branch_updates: ``(branch_name, updates)`` pairs.

        Returns:
            The merged keys and their final values.
        """
        merged: dict[str, ContextValue] = {}
        with self._lock:
            for _branch, updates in branch_updates:
                for key, value in updates.items():
                    coerced = coerce_context_value(value)
                    self._data[key] = coerced
                    merged[key] = coerced
        return merged

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        with self._lock:
            return f"PipelineContext({self._data!r})"

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

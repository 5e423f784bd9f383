"""FunctionHandler — adapts a plain callable into a custom node handler.

Custom node types are registered by the caller (``EngineCallbacks.
custom_handlers`` or ``HandlerRegistry.register_custom``).  Full ``Handler``
objects are used as-is; a bare function ``(request) -> Outcome | str | None``,
sync or async, is wrapped here.  A string result becomes the node's output
with SUCCESS status; ``None`` is a bare SUCCESS.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from dotfactory.engine.callbacks import maybe_await
from dotfactory.engine.exceptions import HandlerError
from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)


class FunctionHandler:
    """Wraps ``fn(request)`` so it satisfies the ``Handler`` protocol."""

    def __init__(self, fn: Callable[[HandlerRequest], Any], type_name: str = "custom") -> None:
        self._fn = fn
        self.type_name = type_name

    async def execute(self, request: HandlerRequest) -> Outcome:
        result = await maybe_await(self._fn(request))
        if isinstance(result, Outcome):
            return result
        if result is None:
            return Outcome.success()
        if isinstance(result, str):
            return Outcome.success(output=result)
        raise HandlerError(
            f"custom handler '{self.type_name}' returned {type(result).__name__}; "
            "expected Outcome, str or None",
            node_id=request.node.id,
        )

    def __repr__(self) -> str:
        return f"FunctionHandler({self.type_name!r})"


assert isinstance(FunctionHandler(lambda request: None), Handler)

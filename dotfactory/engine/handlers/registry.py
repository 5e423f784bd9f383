"""HandlerRegistry — maps node handler types to Handler instances.

The registry is the single point where the engine resolves a node to a
concrete handler.  Built-in types are keyed by ``node.handler_type``
(``start``, ``codergen``, ``tool``...).  Nodes whose type is ``custom`` are
resolved through a second, open map keyed by ``node.custom_type`` (the
node's ``type`` attribute, or its shape).

Design:
- ``register(handler_type, handler)`` stores a built-in handler.
- ``register_custom(type_name, handler)`` extends the open registry.
- ``dispatch(node)`` returns the handler or raises
  ``UnknownHandlerTypeError``.
- ``HandlerRegistry.default(custom_handlers=...)`` wires every built-in.
"""
from __future__ import annotations

import logging
from typing import Mapping

from dotfactory.engine.exceptions import HandlerError, UnknownHandlerTypeError
from dotfactory.engine.graph import Node
from dotfactory.engine.handlers.base import Handler
from dotfactory.engine.handlers.custom import FunctionHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Registry mapping handler-type strings to Handler implementations.

    Args:
        handlers:        Optional pre-populated ``handler_type → handler`` dict.
        custom_handlers: Optional ``type_name → handler`` dict for custom nodes.

    Example::

        registry = HandlerRegistry.default()
        registry.register_custom("lint_repo", LintRepoHandler())
        handler = registry.dispatch(node)
    """

    def __init__(
        self,
        handlers: Mapping[str, Handler] | None = None,
        custom_handlers: Mapping[str, Handler] | None = None,
    ) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self._custom: dict[str, Handler] = {}
        for name, handler in (custom_handlers or {}).items():
            self.register_custom(name, handler)

    def register(self, handler_type: str, handler: Handler) -> None:
        """Register *handler* for the built-in *handler_type*."""
        self._handlers[handler_type] = handler

    def register_custom(self, type_name: str, handler: Handler) -> None:
        """Register *handler* for nodes whose custom type is *type_name*.

        Plain callables ``(request) -> Outcome | str`` (sync or async) are
        wrapped in ``FunctionHandler``.

        Raises:
            HandlerError: If *handler* is neither a Handler nor callable.
        """
        if not isinstance(handler, Handler) and callable(handler):
            handler = FunctionHandler(handler, type_name=type_name)
        if not isinstance(handler, Handler):
            raise HandlerError(
                f"custom handler for type '{type_name}' must define async execute(request)"
            )
        self._custom[type_name] = handler

    def dispatch(self, node: Node) -> Handler:
        """Return the handler for *node*.

        Raises:
            UnknownHandlerTypeError: If no built-in or custom handler matches.
        """
        handler_type = node.handler_type
        if handler_type == "custom":
            handler = self._custom.get(node.custom_type)
            if handler is None:
                raise UnknownHandlerTypeError(node.custom_type, node_id=node.id)
            return handler
        handler = self._handlers.get(handler_type)
        if handler is None:
            raise UnknownHandlerTypeError(handler_type, node_id=node.id)
        return handler

    def registered_types(self) -> list[str]:
        """Built-in handler types in insertion order."""
        return list(self._handlers)

    def custom_types(self) -> list[str]:
        return list(self._custom)

    @classmethod
    def default(cls, custom_handlers: Mapping[str, Handler] | None = None) -> HandlerRegistry:
        """Build a fully-wired registry with every built-in handler.

        Import is deferred to avoid circular imports at module load time.
        """
        from dotfactory.engine.handlers.codergen import CodergenHandler
        from dotfactory.engine.handlers.conditional import ConditionalHandler
        from dotfactory.engine.handlers.exit import ExitHandler
        from dotfactory.engine.handlers.fan_in import FanInHandler
        from dotfactory.engine.handlers.manager_loop import ManagerLoopHandler
        from dotfactory.engine.handlers.parallel import ParallelHandler
        from dotfactory.engine.handlers.start import StartHandler
        from dotfactory.engine.handlers.tool import ToolHandler
        from dotfactory.engine.handlers.wait_human import WaitHumanHandler

        registry = cls(custom_handlers=custom_handlers)
        registry.register("start", StartHandler())
        registry.register("exit", ExitHandler())
        registry.register("codergen", CodergenHandler())
        registry.register("conditional", ConditionalHandler())
        registry.register("wait.human", WaitHumanHandler())
        registry.register("parallel", ParallelHandler())
        registry.register("parallel.fan_in", FanInHandler())
        registry.register("tool", ToolHandler())
        registry.register("stack.manager_loop", ManagerLoopHandler())
        logger.debug("Default handler registry: %s", ", ".join(registry.registered_types()))
        return registry

"""Middleware chain — the Middleware protocol and compose_middleware().

The middleware chain wraps every handler.execute() call through a composable
async chain.  Right-to-left composition means the first middleware in the
list is the outermost wrapper:

    request → LogfireMiddleware → RetryMiddleware → Handler
    response ←──────────────────────────────────────────────

Each middleware is an async callable that receives
``(request, next)`` and returns an Outcome.  ``HandlerRequest`` carries the
node, graph, state, emitter and attempt number, so middlewares can emit
events and read the node's policy without additional injection.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Callable, Protocol

from dotfactory.engine.handlers.base import Handler, HandlerRequest

if TYPE_CHECKING:
    from dotfactory.engine.outcome import Outcome

NextFn = Callable[[HandlerRequest], Awaitable["Outcome"]]


class Middleware(Protocol):
    """Protocol that every middleware must satisfy.

    A middleware must call ``next(request)`` exactly once, unless it
    implements retry logic that calls it several times.  It must not swallow
    exceptions from ``next()``.
    """

    async def __call__(self, request: HandlerRequest, next: NextFn) -> "Outcome":
        ...


def compose_middleware(middlewares: list[Middleware], handler: Handler) -> NextFn:
    """Compose *middlewares* around *handler* into a single callable.

    Composition is right-to-left: the first element in *middlewares* is the
    outermost wrapper.  An empty list returns a callable that invokes
    ``handler.execute(request)`` directly.

    Example::

        chain = compose_middleware(
            [LogfireMiddleware(), RetryMiddleware()],
            my_handler,
        )
        outcome = await chain(request)
    """
    async def execute(request: HandlerRequest) -> "Outcome":
        return await handler.execute(request)

    for mw in reversed(middlewares):
        inner = execute

        async def execute(  # noqa: E731
            request: HandlerRequest,
            _mw: Middleware = mw,
            _inner: NextFn = inner,
        ) -> "Outcome":
            return await _mw(request, _inner)

    return execute

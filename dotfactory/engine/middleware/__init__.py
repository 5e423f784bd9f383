"""Middleware chain package for the pipeline engine.

    from dotfactory.engine.middleware import (
        Middleware, compose_middleware, default_middlewares,
        LogfireMiddleware, RetryMiddleware,
    )
"""
from __future__ import annotations

from dotfactory.engine.middleware.chain import (
    Middleware,
    NextFn,
    compose_middleware,
)
from dotfactory.engine.middleware.logfire import LogfireMiddleware
from dotfactory.engine.middleware.retry import RetryMiddleware, max_retries_for


def default_middlewares() -> list[Middleware]:
    """Span and events outermost, retry policy innermost."""
    return [LogfireMiddleware(), RetryMiddleware()]


__all__ = [
    "Middleware",
    "NextFn",
    "compose_middleware",
    "default_middlewares",
    "LogfireMiddleware",
    "RetryMiddleware",
    "max_retries_for",
]

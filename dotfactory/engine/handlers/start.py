"""StartHandler — handles Mdiamond (pipeline start) nodes.

The start node is a no-op sentinel.  It writes no artefacts and makes no
generation calls; the executor moves straight on to edge selection.
"""
from __future__ import annotations

from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome


class StartHandler:
    """No-op handler for pipeline start nodes (``Mdiamond`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        return Outcome.success()


# Satisfy the Protocol at runtime (documents intent)
assert isinstance(StartHandler(), Handler)

"""ConditionalHandler — handles diamond (conditional routing) nodes.

Conditional nodes are pure routing markers.  The handler returns SUCCESS and
the edge selector does the work by evaluating the outgoing edges' guards.
"""
from __future__ import annotations

from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome


class ConditionalHandler:
    """No-op routing handler for conditional nodes (``diamond`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        """Return SUCCESS with no side effects; routing is EdgeSelector's job."""
        return Outcome.success()


assert isinstance(ConditionalHandler(), Handler)

"""ManagerLoopHandler — handles house (manager loop) nodes.

A manager loop node supervises a cycle that routes back into it.  On each
visit:

1. If the context key named by ``stop_condition_key`` (default
   ``manager.stop``) holds a truthy value, the loop is done: SUCCESS with
   notes "manager stop condition met".
2. If the node has been entered more than ``max_cycles`` times, FAIL with
   "max_cycles exceeded".
3. Otherwise it generates exactly like a codergen node.
"""
from __future__ import annotations

import logging

from dotfactory.engine.conditions import stringify
from dotfactory.engine.graph import parse_int
from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.handlers.codergen import CodergenHandler
from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)

DEFAULT_STOP_CONDITION_KEY = "manager.stop"

_FALSY = frozenset({"", "0", "false", "no", "off"})


class ManagerLoopHandler(CodergenHandler):
    """Handler for manager loop nodes (``house`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        node = request.node
        stop_key = node.attrs.get("stop_condition_key") or DEFAULT_STOP_CONDITION_KEY
        stop_value = request.state.context.get(stop_key)

        if stop_value is not None and stringify(stop_value).strip().lower() not in _FALSY:
            logger.info("Manager loop '%s': %s is set; stopping", node.id, stop_key)
            return Outcome.success(notes="manager stop condition met")

        max_cycles = parse_int(node.attrs.get("max_cycles"))
        if max_cycles is not None and request.visit_count > max_cycles:
            logger.info(
                "Manager loop '%s': visit %d exceeds max_cycles=%d",
                node.id, request.visit_count, max_cycles,
            )
            return Outcome.fail("max_cycles exceeded")

        return await self.generate(request)


assert isinstance(ManagerLoopHandler(), Handler)

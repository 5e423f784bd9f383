"""FanInHandler — handles tripleoctagon (fan-in) nodes.

By the time the walk reaches a fan-in node the fan-out has already merged
every branch into the shared state, so the join only has to read the
counters the fan-out left in context:

- ``join_policy=wait_all`` (default): SUCCESS, or PARTIAL_SUCCESS when any
  branch failed.
- ``join_policy=first_success``: SUCCESS when at least one branch
  succeeded, else FAIL.

A fan-in reached without a preceding fan-out (no counters) is a SUCCESS.
"""
from __future__ import annotations

import logging

from dotfactory.engine.graph import parse_int
from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome, OutcomeStatus

logger = logging.getLogger(__name__)


class FanInHandler:
    """Join handler for fan-in synchronisation (``tripleoctagon`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        node = request.node
        context = request.state.context
        branch_count = parse_int(context.get("parallel.branch_count"), 0) or 0
        fail_count = parse_int(context.get("parallel.fail_count"), 0) or 0

        if node.join_policy == "first_success":
            ok = branch_count == 0 or fail_count < branch_count
            status = OutcomeStatus.SUCCESS if ok else OutcomeStatus.FAIL
        else:
            status = OutcomeStatus.PARTIAL_SUCCESS if fail_count else OutcomeStatus.SUCCESS

        logger.debug(
            "Fan-in '%s' (%s): %d/%d branch(es) failed -> %s",
            node.id, node.join_policy, fail_count, branch_count, status.value,
        )
        return Outcome(
            status=status,
            context_updates={"parallel.join_status": status.value},
            failure_reason="all parallel branches failed" if status == OutcomeStatus.FAIL else None,
            metadata={"branch_count": branch_count, "fail_count": fail_count},
        )


assert isinstance(FanInHandler(), Handler)

"""ExitHandler — handles Msquare (pipeline exit) nodes.

Reaching the exit ends the run successfully.  The handler records the
overall result in ``context["pipeline.outcome"]``:

- ``"skipped"`` when the outcome that routed into the exit was SKIPPED (a
  tool or custom stage reported that the work did not apply); the exit
  outcome is then SKIPPED too, which the CLI maps to exit code 77.
- ``"success"`` otherwise.
"""
from __future__ import annotations

from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.outcome import Outcome, OutcomeStatus


class ExitHandler:
    """Handler for pipeline exit nodes (``Msquare`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        state = request.state
        previous = state.node_outcomes.get(state.completed_nodes[-1]) if state.completed_nodes else None

        if previous is not None and previous.status == OutcomeStatus.SKIPPED:
            return Outcome(
                status=OutcomeStatus.SKIPPED,
                context_updates={"pipeline.outcome": "skipped"},
                notes=f"run skipped by {state.completed_nodes[-1]}",
            )
        return Outcome(
            status=OutcomeStatus.SUCCESS,
            context_updates={"pipeline.outcome": "success"},
        )


assert isinstance(ExitHandler(), Handler)

"""CodergenHandler — handles box (generation) nodes.

The handler builds the node's prompt, hands it to the generation backend
injected through ``EngineCallbacks.generate`` and turns the response into
the node's outcome.  A backend may return plain text (SUCCESS with that
output), a status mapping (``status``, ``preferred_label``,
``suggested_next_ids``, ``context_updates``, ``failure_reason``, ``output``)
or a ready-made ``Outcome``; a RETRY or FAIL result goes through the retry
policy like any other handler's.

Prompt layout::

    <node prompt, else label, else id>

    Workflow state:
    {"context": {...}, "nodeOutputs": {...}, "parallelOutputs": {...}}

Artefacts written to ``<logs>/<node_id>/``:

- ``prompt.md``     the full prompt
- ``context.json``  stringified context plus ``<node>.output`` projections
- ``response.md``   the backend's response

A backend exception becomes a FAIL outcome so the retry policy can re-run
the node; a missing backend is a configuration error and raises.
"""
from __future__ import annotations

import json
import logging
from typing import Mapping

from dotfactory.engine.callbacks import GenerationRequest, GenerationResult, maybe_await
from dotfactory.engine.exceptions import HandlerError
from dotfactory.engine.graph import Node
from dotfactory.engine.handlers.base import Handler, HandlerRequest, write_artifact
from dotfactory.engine.outcome import Outcome
from dotfactory.engine.state import EngineState

logger = logging.getLogger(__name__)

WORKFLOW_STATE_HEADER = "\n\nWorkflow state:\n"


def build_prompt(node: Node, state: EngineState) -> str:
    """Node prompt (or label, or id) followed by the workflow-state JSON block."""
    base = node.prompt or node.attrs.get("label") or node.id
    return f"{base}{WORKFLOW_STATE_HEADER}{state.workflow_state_json()}"


def outcome_from_response(response: GenerationResult) -> Outcome:
    """Turn whatever the generation backend returned into an Outcome.

    An Outcome passes through, a mapping is read like a tool ``status.json``
    and anything else is the response text of a successful generation.
    """
    if isinstance(response, Outcome):
        return response
    if isinstance(response, Mapping):
        return Outcome.from_mapping(response)
    return Outcome.success(output="" if response is None else str(response))


class CodergenHandler:
    """Handler for generation nodes (``box`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        return await self.generate(request)

    async def generate(self, request: HandlerRequest) -> Outcome:
        """Run one generation call for ``request.node``.

        Raises:
            HandlerError: If no generation backend is configured.
        """
        node = request.node
        generate = request.callbacks.generate
        if generate is None:
            raise HandlerError("no generation backend configured", node_id=node.id)

        prompt = build_prompt(node, request.state)
        stage_dir = request.stage_dir
        write_artifact(stage_dir, "prompt.md", prompt)
        write_artifact(
            stage_dir,
            "context.json",
            json.dumps(request.state.context_artifact(), indent=2),
        )

        try:
            response = await maybe_await(generate(GenerationRequest(
                node=node,
                prompt=prompt,
                state=request.state,
                stage_dir=stage_dir,
                attempt_number=request.attempt_number,
            )))
        except Exception as exc:
            logger.warning("Generation failed for node '%s': %s", node.id, exc)
            return Outcome.fail(f"generation failed: {exc}")

        outcome = outcome_from_response(response)
        text = outcome.output or ""
        write_artifact(stage_dir, "response.md", text)
        logger.debug(
            "Node '%s' generated %d chars (%s)", node.id, len(text), outcome.status.value
        )
        return outcome


assert isinstance(CodergenHandler(), Handler)

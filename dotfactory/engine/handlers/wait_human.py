"""WaitHumanHandler — handles hexagon (human-in-the-loop gate) nodes.

The node asks a person to pick one of its options and routes on the answer.

- Options are the labels of the node's outgoing edges, in declaration order.
  A node without labelled edges falls back to its ``options`` attribute,
  split on ``|``.
- The question goes to ``EngineCallbacks.ask_human``.  A ``timeout``
  attribute (``30s``, ``5m``, ``2h``...) bounds the wait; on expiry the
  node's ``default_choice`` is used, or the node FAILs.
- The answer is matched against the options ignoring case: the full label,
  the label without its accelerator (``[A] Approve``, ``A) Approve``), or
  the accelerator key alone (``A``, or a unique first letter).  An answer
  that matches nothing falls back to ``default_choice``, else the node FAILs.
- The matched option becomes the outcome's preferred label (so edge selection
  follows the matching labelled edge) and is recorded in context as
  ``human.gate.selected`` (the raw answer) and ``human.gate.label`` (the
  matched option label).

Artefacts: ``prompt.md`` (question and options) and ``response.md``.
"""
from __future__ import annotations

import asyncio
import logging
import re

from dotfactory.engine.callbacks import HumanQuestion, maybe_await, parse_duration
from dotfactory.engine.events.types import EventBuilder
from dotfactory.engine.exceptions import HandlerError
from dotfactory.engine.handlers.base import Handler, HandlerRequest, write_artifact
from dotfactory.engine.outcome import Outcome

logger = logging.getLogger(__name__)

_ACCELERATOR_RE = re.compile(
    r"^\s*(?:\[(?P<bracket>\w)\]|(?P<paren>\w)\)|(?P<dash>\w)\s+-\s+)\s*"
)


def question_options(request: HandlerRequest) -> list[str]:
    """Outgoing edge labels, else the ``options`` attribute split on ``|``."""
    labels = [e.label.strip() for e in request.graph.edges_from(request.node.id) if e.label.strip()]
    if labels:
        return labels
    raw = request.node.attrs.get("options", "")
    return [item.strip() for item in raw.split("|") if item.strip()]


def accelerator_key(option: str) -> tuple[str, str]:
    """Split an option into its accelerator key and bare label.

    ``"[A] Approve"``, ``"A) Approve"`` and ``"A - Approve"`` all give
    ``("a", "Approve")``; a plain ``"Approve"`` keys on its first character.
    """
    match = _ACCELERATOR_RE.match(option)
    if match is not None:
        key = next(g for g in match.group("bracket", "paren", "dash") if g)
        return key.lower(), option[match.end():].strip()
    return option[:1].lower(), option


def match_option(answer: str, options: tuple[str, ...] | list[str]) -> str | None:
    """Resolve *answer* to one of *options*, ignoring case.

    Tried in order: the full option text, the label without its accelerator,
    then the accelerator key.  A first-character key only counts when no
    other option shares it.  Without options the answer stands as given.
    Returns ``None`` when nothing matches.
    """
    wanted = answer.strip().lower()
    if not options:
        return answer.strip()
    if not wanted:
        return None
    for option in options:
        if option.lower() == wanted:
            return option
    keyed = [(option, *accelerator_key(option)) for option in options]
    for option, _key, bare in keyed:
        if bare.lower() == wanted:
            return option
    explicit = [option for option, key, bare in keyed if bare != option and key == wanted]
    if explicit:
        return explicit[0]
    by_initial = [option for option, key, bare in keyed if bare == option and key == wanted]
    if len(by_initial) == 1:
        return by_initial[0]
    return None


def _render_question(question: HumanQuestion) -> str:
    lines = [question.prompt, ""]
    if question.options:
        lines.append("Options:")
        lines.extend(f"- {option}" for option in question.options)
    if question.timeout_seconds is not None:
        lines.append("")
        lines.append(f"Timeout: {question.timeout_seconds:g}s")
    return "\n".join(lines) + "\n"


class WaitHumanHandler:
    """Handler for human decision gate nodes (``hexagon`` shape)."""

    async def execute(self, request: HandlerRequest) -> Outcome:
        node = request.node
        ask_human = request.callbacks.ask_human
        if ask_human is None:
            raise HandlerError("no human decision callback configured", node_id=node.id)

        question = HumanQuestion(
            node_id=node.id,
            prompt=node.prompt or node.attrs.get("label") or node.id,
            options=tuple(question_options(request)),
            timeout_seconds=parse_duration(node.timeout),
        )
        stage_dir = request.stage_dir
        write_artifact(stage_dir, "prompt.md", _render_question(question))

        if request.emitter is not None:
            await request.emitter.emit(EventBuilder.human_question(
                pipeline_id=request.pipeline_id,
                node_id=node.id,
                prompt=question.prompt,
                options=list(question.options),
            ))

        try:
            answer = await asyncio.wait_for(
                maybe_await(ask_human(question)),
                timeout=question.timeout_seconds,
            )
        except asyncio.TimeoutError:
            default_choice = node.attrs.get("default_choice", "").strip()
            if not default_choice:
                logger.warning("Human gate '%s' timed out with no default_choice", node.id)
                return Outcome.fail(f"human decision timed out after {node.timeout}")
            logger.info("Human gate '%s' timed out; using default_choice=%r", node.id, default_choice)
            answer = default_choice

        selected = "" if answer is None else str(answer).strip()
        write_artifact(stage_dir, "response.md", selected + "\n")
        label = match_option(selected, question.options)
        if label is None:
            default_choice = node.attrs.get("default_choice", "").strip()
            label = match_option(default_choice, question.options) if default_choice else None
            if label is None:
                logger.warning(
                    "Human gate '%s': answer %r matches none of %s",
                    node.id, selected, list(question.options),
                )
                return Outcome.fail(
                    f"unrecognised answer {selected!r} (options: {', '.join(question.options)})",
                    output=selected,
                    context_updates={"human.gate.selected": selected},
                )
            logger.info("Human gate '%s': unrecognised answer %r; using default_choice", node.id, selected)

        suggested = tuple(
            edge.target for edge in request.graph.edges_from(node.id)
            if edge.label.strip().lower() == label.lower()
        )
        return Outcome.success(
            output=selected,
            preferred_label=label or None,
            suggested_next_ids=suggested[:1],
            context_updates={
                "human.gate.selected": selected,
                "human.gate.label": label,
            },
        )


assert isinstance(WaitHumanHandler(), Handler)

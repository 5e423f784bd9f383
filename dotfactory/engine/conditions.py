"""Edge guard expressions.

Grammar::

    condition := clause ('&&' clause)*
    clause    := key op value | key
    op        := '=' | '==' | '!='
    key       := 'outcome' | 'preferred_label' | 'context.' name | name
    value     := bare-token | '"' chars '"' | "'" chars "'"

A bare ``key`` clause is true when the key resolves to a non-empty string.
Both sides of a comparison are compared as strings: context values stored
as booleans render as ``"true"``/``"false"`` and integral floats drop the
trailing ``.0`` so ``context.count=3`` matches a numeric 3.

``check_condition_syntax`` needs no run state, so the linter can validate
every edge guard before anything executes.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping

from dotfactory.engine.exceptions import ConditionSyntaxError

if TYPE_CHECKING:
    from dotfactory.engine.outcome import Outcome

__all__ = [
    "Clause",
    "check_condition_syntax",
    "evaluate_condition",
    "is_valid_condition",
    "parse_condition",
    "stringify",
]

_KEY_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_.\-$]*$")
_OPERATORS = ("!=", "==", "=")
_CONTEXT_PREFIX = "context."


@dataclass(frozen=True)
class Clause:
    """One ``key op value`` term.  ``op`` is ``""`` for a bare truthiness test."""
    key: str
    op: str = ""
    value: str = ""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _split_clauses(expression: str) -> list[str]:
    """Split on ``&&`` outside quotes, keeping empty pieces so they can be reported."""
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(expression):
        ch = expression[i]
        if ch in "\"'" and (i == 0 or expression[i - 1] != "\\"):
            if quote == ch:
                quote = None
            elif quote is None:
                quote = ch
        if quote is None and expression.startswith("&&", i):
            parts.append("".join(current).strip())
            current = []
            i += 2
            continue
        current.append(ch)
        i += 1
    if quote is not None:
        raise ConditionSyntaxError(f"Unterminated quote in condition: {expression!r}", expression)
    parts.append("".join(current).strip())
    return parts


def _find_operator(clause: str) -> tuple[int, str]:
    """Return ``(index, op)`` of the first operator outside quotes, or ``(-1, "")``."""
    quote: str | None = None
    for i, ch in enumerate(clause):
        if ch in "\"'":
            if quote == ch:
                quote = None
            elif quote is None:
                quote = ch
            continue
        if quote is not None:
            continue
        for op in _OPERATORS:
            if clause.startswith(op, i):
                return i, op
    return -1, ""


def _literal(raw: str, clause: str, expression: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    if not value:
        raise ConditionSyntaxError(f"Missing value in condition clause {clause!r}", expression)
    if any(c.isspace() for c in value) or any(c in "\"'" for c in value):
        raise ConditionSyntaxError(
            f"Unquoted value with spaces or stray quotes in clause {clause!r}", expression
        )
    if _find_operator(value)[0] >= 0:
        raise ConditionSyntaxError(f"More than one operator in clause {clause!r}", expression)
    return value


def parse_condition(expression: str) -> list[Clause]:
    """Parse *expression* into clauses.

    An empty or whitespace-only expression parses to ``[]`` (always true).

    Raises:
        ConditionSyntaxError: On empty clauses, missing keys or values,
            malformed keys, or unterminated quotes.
    """
    text = expression.strip()
    if not text:
        return []

    clauses: list[Clause] = []
    for piece in _split_clauses(text):
        if not piece:
            raise ConditionSyntaxError(f"Condition contains an empty clause: {expression!r}", expression)
        index, op = _find_operator(piece)
        if index < 0:
            key = piece
            if not _KEY_RE.match(key):
                raise ConditionSyntaxError(f"Invalid condition key {key!r}", expression)
            clauses.append(Clause(key=key))
            continue
        key = piece[:index].strip()
        if not key:
            raise ConditionSyntaxError(f"Missing key in condition clause {piece!r}", expression)
        if not _KEY_RE.match(key):
            raise ConditionSyntaxError(f"Invalid condition key {key!r}", expression)
        value = _literal(piece[index + len(op):], piece, expression)
        clauses.append(Clause(key=key, op="!=" if op == "!=" else "=", value=value))
    return clauses


def check_condition_syntax(expression: str) -> None:
    """Raise ``ConditionSyntaxError`` if *expression* is malformed."""
    parse_condition(expression)


def is_valid_condition(expression: str) -> bool:
    try:
        parse_condition(expression)
    except ConditionSyntaxError:
        return False
    return True


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def stringify(value: Any) -> str:
    """Render a context value the way conditions compare it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _lookup(key: str, context: Mapping[str, Any], node_outputs: Mapping[str, Any]) -> Any:
    if key in context:
        return context[key]
    if key in node_outputs:
        return node_outputs[key]
    return None


def _resolve(
    key: str,
    context: Mapping[str, Any],
    node_outputs: Mapping[str, Any],
    outcome: "Outcome | None",
) -> str:
    if key == "outcome":
        return outcome.status.value if outcome is not None else ""
    if key == "preferred_label":
        return (outcome.preferred_label or "") if outcome is not None else ""
    if key.startswith(_CONTEXT_PREFIX):
        direct = _lookup(key, context, node_outputs)
        if direct is not None:
            return stringify(direct)
        return stringify(_lookup(key[len(_CONTEXT_PREFIX):], context, node_outputs))
    return stringify(_lookup(key, context, node_outputs))


def evaluate_condition(
    expression: str,
    context: Mapping[str, Any],
    node_outputs: Mapping[str, Any] | None = None,
    outcome: "Outcome | None" = None,
) -> bool:
    """Evaluate *expression* against run state.

    Args:
        expression:   Guard text from an edge's ``condition`` attribute.
        context:      Current context snapshot.
        node_outputs: Per-node output texts, consulted after the context.
        outcome:      Outcome of the node being routed, for ``outcome`` and
                      ``preferred_label`` keys.

    Raises:
        ConditionSyntaxError: If *expression* is malformed.
    """
    outputs = node_outputs or {}
    for clause in parse_condition(expression):
        resolved = _resolve(clause.key, context, outputs, outcome)
        if not clause.op:
            if not resolved:
                return False
            continue
        expected = clause.value.lower() if clause.key == "outcome" else clause.value
        if clause.op == "=" and resolved != expected:
            return False
        if clause.op == "!=" and resolved == expected:
            return False
    return True

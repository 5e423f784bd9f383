"""Model stylesheet: CSS-like rules that assign generation parameters to nodes.

Grammar::

    stylesheet := rule+
    rule       := selector '{' declaration (';' declaration)* ';'? '}'
    selector   := '*' | shape | '.' class | '#' node_id
    declaration:= property ':' value

Specificity is universal 0, shape 1, class 2, id 3.  For each node and each
property, the value comes from the last matching rule when rules are ordered
by (specificity, declaration order), so a later rule of equal specificity
overrides an earlier one.  A property the node already carries is never
overridden.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from dotfactory.engine.exceptions import StylesheetError
from dotfactory.engine.graph import Graph, Node

logger = logging.getLogger(__name__)

# The properties generation backends read.  Rules may declare others
# (``model``, ``provider``...); those cascade the same way.
STYLE_PROPERTIES: tuple[str, ...] = ("llm_model", "llm_provider", "reasoning_effort")

_RULE_RE = re.compile(r"([^{}]+)\{([^{}]*)\}")


class SelectorKind(str, Enum):
    UNIVERSAL = "universal"
    SHAPE = "shape"
    CLASS = "class"
    ID = "id"


_SPECIFICITY: dict[SelectorKind, int] = {
    SelectorKind.UNIVERSAL: 0,
    SelectorKind.SHAPE: 1,
    SelectorKind.CLASS: 2,
    SelectorKind.ID: 3,
}


@dataclass(frozen=True)
class StylesheetRule:
    """One ``selector { ... }`` block."""

    selector: str
    kind: SelectorKind
    value: str
    order: int
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def specificity(self) -> int:
        return _SPECIFICITY[self.kind]

    def matches(self, node: Node) -> bool:
        if self.kind is SelectorKind.UNIVERSAL:
            return True
        if self.kind is SelectorKind.SHAPE:
            return node.shape == self.value
        if self.kind is SelectorKind.ID:
            return node.id == self.value
        return self.value in node.classes


def _selector(raw: str) -> tuple[SelectorKind, str]:
    selector = raw.strip()
    if selector == "*":
        return SelectorKind.UNIVERSAL, "*"
    if selector.startswith("#"):
        kind, value = SelectorKind.ID, selector[1:]
    elif selector.startswith("."):
        kind, value = SelectorKind.CLASS, selector[1:]
    else:
        kind, value = SelectorKind.SHAPE, selector
    if not value or any(c.isspace() for c in value):
        raise StylesheetError(f"Invalid stylesheet selector {selector!r}")
    return kind, value


def _unquote(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _declarations(body: str) -> dict[str, str]:
    properties: dict[str, str] = {}
    for declaration in (item.strip() for item in body.split(";")):
        if not declaration:
            continue
        key, colon, value = declaration.partition(":")
        key, value = key.strip(), _unquote(value)
        if not colon or not key or not value:
            raise StylesheetError(f"Invalid stylesheet declaration: {declaration}")
        properties[key] = value
    return properties


def parse_stylesheet(source: str) -> list[StylesheetRule]:
    """Parse stylesheet text into rules in declaration order.

    Raises:
        StylesheetError: On an empty-bodied selector, a malformed
            declaration or selector, or when non-empty input yields no rules.
    """
    text = source.strip()
    if not text:
        return []

    rules: list[StylesheetRule] = []
    consumed = 0
    for match in _RULE_RE.finditer(text):
        if text[consumed:match.start()].strip():
            raise StylesheetError(f"Unexpected stylesheet text: {text[consumed:match.start()].strip()!r}")
        consumed = match.end()
        selector = match.group(1).strip()
        body = match.group(2).strip()
        if not body:
            raise StylesheetError(f"Stylesheet selector {selector} has no declarations")
        kind, value = _selector(selector)
        rules.append(
            StylesheetRule(
                selector=selector,
                kind=kind,
                value=value,
                order=len(rules),
                properties=_declarations(body),
            )
        )

    if not rules:
        raise StylesheetError("No stylesheet rules parsed")
    if text[consumed:].strip():
        raise StylesheetError(f"Unexpected stylesheet text: {text[consumed:].strip()!r}")
    return rules


def resolve_properties(node: Node, rules: list[StylesheetRule]) -> dict[str, str]:
    """Return the cascaded properties for *node*, ignoring ones it already sets."""
    ordered = sorted(rules, key=lambda rule: (rule.specificity, rule.order))
    resolved: dict[str, str] = {}
    for rule in ordered:
        if not rule.matches(node):
            continue
        for key, value in rule.properties.items():
            if key not in node.attrs:
                resolved[key] = value
    return resolved


def apply_stylesheet(graph: Graph) -> Graph:
    """Apply the graph's ``model_stylesheet`` to every node; returns a new graph.

    Raises:
        StylesheetError: If the stylesheet does not parse.
    """
    source = graph.model_stylesheet
    if not source.strip():
        return graph
    rules = parse_stylesheet(source)
    styled = graph.copy()
    for node in styled.nodes.values():
        resolved = resolve_properties(node, rules)
        if resolved:
            logger.debug("Stylesheet resolved %s for node %s", resolved, node.id)
            node.attrs.update(resolved)
    return styled

"""Graph transforms applied between linting and execution.

``apply_transforms`` runs them in a fixed order, each returning a new graph:

1. ``flatten_subgraphs`` — fold subgraph defaults and labels into member nodes.
2. ``expand_variables``  — replace ``$name`` in prompts and labels with graph
   attribute values.
3. ``apply_stylesheet``  — cascade ``model_stylesheet`` rules onto nodes.
"""
from __future__ import annotations

import logging
import re

from dotfactory.engine.graph import Graph
from dotfactory.engine.stylesheet import apply_stylesheet

logger = logging.getLogger(__name__)

__all__ = ["apply_transforms", "expand_variables", "flatten_subgraphs"]

_VAR_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")

# Node attributes that take part in $var expansion.
EXPANDED_ATTRS: tuple[str, ...] = ("prompt", "label")


def _append_classes(current: str, extra: str) -> str:
    classes = [c.strip() for c in current.split(",") if c.strip()]
    for cls in (c.strip() for c in extra.split(",")):
        if cls and cls not in classes:
            classes.append(cls)
    return ",".join(classes)


def flatten_subgraphs(graph: Graph) -> Graph:
    """Merge subgraph-scoped node defaults into the flat node map.

    Precedence is explicit-on-node > subgraph defaults > global defaults.
    A subgraph's default ``class`` is appended to the node's own classes
    rather than replacing them, followed by the ``label`` of every enclosing
    subgraph as a class (``label="Loop A"`` adds ``loop-a``) so stylesheet
    rules can target a cluster.  The returned graph has no subgraphs.
    """
    if not graph.subgraphs:
        return graph

    flat = graph.copy()
    for subgraph in flat.subgraphs:
        for member in subgraph.members:
            node = flat.nodes.get(member.node_id)
            if node is None:
                continue
            for key, value in member.defaults.items():
                if key == "class":
                    node.attrs["class"] = _append_classes(node.attrs.get("class", ""), value)
                elif key not in node.explicit_keys:
                    node.attrs[key] = value
            label_classes = ",".join(s.label_class for s in subgraph.lineage() if s.label_class)
            if label_classes:
                node.attrs["class"] = _append_classes(node.attrs.get("class", ""), label_classes)
    logger.debug("Flattened %d subgraph(s) of %r", len(flat.subgraphs), flat.name)
    flat.subgraphs = []
    return flat


def expand_variables(graph: Graph) -> Graph:
    """Replace ``$name`` tokens in node prompts and labels with graph attributes.

    Tokens naming an attribute the graph does not define are left verbatim.
    """
    variables = graph.attrs

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        return variables[name] if name in variables else match.group(0)

    expanded = graph.copy()
    for node in expanded.nodes.values():
        for key in EXPANDED_ATTRS:
            text = node.attrs.get(key)
            if text and "$" in text:
                node.attrs[key] = _VAR_RE.sub(_sub, text)
    return expanded


def apply_transforms(graph: Graph) -> Graph:
    """Run the full transform pipeline.  The input graph is never mutated.

    Raises:
        StylesheetError: If ``model_stylesheet`` does not parse.
    """
    return apply_stylesheet(expand_variables(flatten_subgraphs(graph)))

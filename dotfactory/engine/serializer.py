"""Canonical DOT serialisation.

``serialize(graph)`` is the parser's approximate inverse and produces
byte-identical output for equivalent graphs, which makes it suitable for
idempotence checks and diffing::

    digraph name {
      graph [k="v", ...];
      id [k="v", ...];          # nodes sorted by id
      a -> b [k="v", ...];      # edges sorted by (source, target, attrs)
      node [k="v", ...];
      edge [k="v", ...];
    }

Every attribute block is sorted by key and every value is JSON-quoted.
Node and edge attributes already carry the defaults that applied to them, so
the ``node``/``edge`` default blocks are written last, where re-parsing them
cannot leak into any statement.  Graphs that still hold subgraphs are
flattened first: member nodes keep the defaults and the label-derived
classes their subgraphs gave them, while subgraph-level attributes such as
a cluster ``label`` are not written.
"""
from __future__ import annotations

import json
import re

from dotfactory.engine.graph import Edge, Graph
from dotfactory.engine.transforms import flatten_subgraphs

__all__ = ["serialize"]

_BARE_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RESERVED = frozenset({"digraph", "graph", "subgraph", "node", "edge", "strict"})


def _quote(value: str) -> str:
    return json.dumps(str(value), ensure_ascii=False)


def _format_id(node_id: str) -> str:
    if _BARE_ID_RE.match(node_id) and node_id not in _RESERVED:
        return node_id
    return _quote(node_id)


def _format_key(key: str) -> str:
    return key if re.match(r"^[A-Za-z_][A-Za-z0-9_.]*$", key) and key not in _RESERVED else _quote(key)


def _attr_block(attrs: dict[str, str]) -> str:
    if not attrs:
        return ""
    body = ", ".join(f"{_format_key(k)}={_quote(v)}" for k, v in sorted(attrs.items()))
    return f" [{body}]"


def _edge_sort_key(edge: Edge) -> tuple[str, str, str]:
    return (edge.source, edge.target, json.dumps(sorted(edge.attrs.items())))


def serialize(graph: Graph) -> str:
    """Render *graph* as canonical DOT text ending with a newline."""
    flat = flatten_subgraphs(graph)
    header = f"digraph {_format_id(flat.name)} {{" if flat.name else "digraph {"
    lines: list[str] = [header]

    if flat.attrs:
        lines.append(f"  graph{_attr_block(flat.attrs)};")
    for node_id in sorted(flat.nodes):
        lines.append(f"  {_format_id(node_id)}{_attr_block(flat.nodes[node_id].attrs)};")
    for edge in sorted(flat.edges, key=_edge_sort_key):
        lines.append(
            f"  {_format_id(edge.source)} -> {_format_id(edge.target)}{_attr_block(edge.attrs)};"
        )
    if flat.node_defaults:
        lines.append(f"  node{_attr_block(flat.node_defaults)};")
    if flat.edge_defaults:
        lines.append(f"  edge{_attr_block(flat.edge_defaults)};")

    lines.append("}")
    return "\n".join(lines) + "\n"

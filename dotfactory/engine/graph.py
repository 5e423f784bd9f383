"""In-memory graph models for DOT pipelines.

The parser produces these dataclasses and the transform pipeline returns new
copies of them; once transforms are done the executor treats the graph as a
read-only map.  All mutable run state lives in ``EngineState``.

Design notes:
- ``@dataclass`` (not Pydantic) because the graph is a static structure after
  the transforms run; only the checkpoint needs serialisation.
- ``attrs`` is the single source of truth for every node and edge attribute,
  including ``shape`` and ``label``.  Typed ``@property`` accessors surface
  the attributes the engine cares about so unrecognised keys survive a
  parse → serialise round trip untouched.
- ``nodes`` is an insertion-ordered dict, so declaration order is simply
  ``list(graph.nodes)``.
- Adjacency indices (``_edges_from``, ``_edges_to``) are built once in
  ``__post_init__`` so edge lookups during traversal are O(1).
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Shape → handler-type mapping
# ---------------------------------------------------------------------------

DEFAULT_SHAPE = "box"

SHAPE_TO_HANDLER: dict[str, str] = {
    "Mdiamond": "start",
    "Msquare": "exit",
    "box": "codergen",
    "diamond": "conditional",
    "hexagon": "wait.human",
    "component": "parallel",
    "tripleoctagon": "parallel.fan_in",
    "parallelogram": "tool",
    "house": "stack.manager_loop",
}

# Types an explicit ``type=`` attribute may name without falling through to
# the custom registry.
BUILTIN_HANDLER_TYPES: frozenset[str] = frozenset(SHAPE_TO_HANDLER.values())

# Node types that call the generation backend; used by the synopsis classifier.
GENERATION_TYPES: frozenset[str] = frozenset({"codergen", "stack.manager_loop"})

_TRUE_VALUES = frozenset({"true", "1", "yes"})
_CLASS_SLUG_RE = re.compile(r"[^a-z0-9]+")


def parse_bool(raw: Any) -> bool:
    """Interpret a DOT attribute value as a boolean (``true``/``1``/``yes``)."""
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in _TRUE_VALUES


def parse_int(raw: Any, default: int | None = None) -> int | None:
    """Parse an integer attribute, returning *default* when absent or malformed."""
    if raw is None or raw == "":
        return default
    try:
        return int(str(raw).strip())
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Edge
# ---------------------------------------------------------------------------

@dataclass
class Edge:
    """A parsed DOT directed edge between two nodes.

    Attributes:
        source: Source node ID.
        target: Target node ID.
        attrs:  Full attribute bag (``label``, ``condition``, ``weight``,
                ``loop_restart`` and anything else written in the source).
    """

    source: str
    target: str
    attrs: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        """Stable string identifier for this edge (used in logging and events)."""
        return f"{self.source}->{self.target}"

    @property
    def label(self) -> str:
        return self.attrs.get("label", "")

    @property
    def condition(self) -> str:
        """Raw guard expression.  Empty string means unconditional."""
        return self.attrs.get("condition", "").strip()

    @property
    def weight(self) -> float:
        """Numeric routing weight; 0 when unset or malformed."""
        try:
            return float(self.attrs.get("weight", 0) or 0)
        except (ValueError, TypeError):
            return 0.0

    @property
    def loop_restart(self) -> bool:
        return parse_bool(self.attrs.get("loop_restart"))


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

@dataclass
class Node:
    """A parsed DOT node.

    Any attribute not surfaced by a property can still be read via
    ``node.attrs["key"]``.

    Attributes:
        id:            Node identifier as written in the DOT source.
        attrs:         Full attribute bag, global defaults already merged in.
        explicit_keys: Keys written directly on a node statement for this
                       node.  Subgraph flattening only fills keys outside
                       this set.
    """

    id: str
    attrs: dict[str, str] = field(default_factory=dict)
    explicit_keys: set[str] = field(default_factory=set, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Handler classification
    # ------------------------------------------------------------------

    @property
    def shape(self) -> str:
        return self.attrs.get("shape", DEFAULT_SHAPE)

    @property
    def label(self) -> str:
        return self.attrs.get("label", self.id)

    @property
    def explicit_type(self) -> str:
        """Value of the ``type`` attribute, empty when unset."""
        return self.attrs.get("type", "").strip()

    @property
    def handler_type(self) -> str:
        """The handler type this node dispatches to.

        An explicit built-in ``type`` wins over the shape.  Any other
        explicit type, or a shape outside ``SHAPE_TO_HANDLER``, is
        ``"custom"`` and is resolved through the caller's custom registry
        by ``custom_type``.
        """
        explicit = self.explicit_type
        if explicit:
            return explicit if explicit in BUILTIN_HANDLER_TYPES else "custom"
        return SHAPE_TO_HANDLER.get(self.shape, "custom")

    @property
    def custom_type(self) -> str:
        """Registry key for custom nodes: the ``type`` attribute, else the shape."""
        return self.explicit_type or self.shape

    @property
    def is_start(self) -> bool:
        return self.handler_type == "start"

    @property
    def is_exit(self) -> bool:
        return self.handler_type == "exit"

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    @property
    def prompt(self) -> str:
        """Prompt text.  Empty string if not set."""
        return self.attrs.get("prompt", "")

    @property
    def classes(self) -> list[str]:
        """The comma-separated ``class`` attribute as a list, in order."""
        raw = self.attrs.get("class", "")
        return [item.strip() for item in raw.split(",") if item.strip()]

    @property
    def goal_gate(self) -> bool:
        return parse_bool(self.attrs.get("goal_gate"))

    @property
    def allow_partial(self) -> bool:
        """If True, a node still failing after its retries ends PARTIAL_SUCCESS."""
        return parse_bool(self.attrs.get("allow_partial"))

    @property
    def max_retries(self) -> int | None:
        """Declared ``max_retries``; ``None`` defers to the graph default."""
        return parse_int(self.attrs.get("max_retries"))

    @property
    def max_visits(self) -> int | None:
        return parse_int(self.attrs.get("max_visits"))

    @property
    def retry_target(self) -> str | None:
        return self.attrs.get("retry_target") or None

    @property
    def tool_command(self) -> str:
        return self.attrs.get("tool_command", "")

    @property
    def timeout(self) -> str:
        """Raw ``timeout`` attribute (e.g. ``"30s"``).  Empty when unset."""
        return self.attrs.get("timeout", "")

    @property
    def join_policy(self) -> str:
        """Fan-in join policy: ``"wait_all"`` (default) or ``"first_success"``."""
        return self.attrs.get("join_policy", "wait_all")


# ---------------------------------------------------------------------------
# Subgraph
# ---------------------------------------------------------------------------

@dataclass
class SubgraphMember:
    """Defaults a subgraph scope contributes to one node.

    ``defaults`` is the merged chain of enclosing subgraph ``node [...]``
    defaults (outermost first, innermost last) in effect when the node was
    first declared.
    """

    node_id: str
    defaults: dict[str, str] = field(default_factory=dict)


@dataclass
class Subgraph:
    """A ``subgraph`` block recorded by the parser, pending flattening.

    ``parent`` is the enclosing subgraph, ``None`` at the top level.
    """

    name: str
    attrs: dict[str, str] = field(default_factory=dict)
    members: list[SubgraphMember] = field(default_factory=list)
    parent: Subgraph | None = None

    @property
    def label_class(self) -> str:
        """The ``label`` as a class name: ``"Loop A"`` becomes ``"loop-a"``."""
        return _CLASS_SLUG_RE.sub("-", self.attrs.get("label", "").lower()).strip("-")

    def lineage(self) -> list[Subgraph]:
        """This subgraph and its enclosing subgraphs, outermost first."""
        chain: list[Subgraph] = []
        current: Subgraph | None = self
        while current is not None:
            chain.append(current)
            current = current.parent
        return chain[::-1]

    @property
    def node_ids(self) -> list[str]:
        return [member.node_id for member in self.members]


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class Graph:
    """In-memory representation of a parsed DOT pipeline.

    Attributes:
        name:          Graph name as written in the ``digraph`` declaration.
        attrs:         Graph-level attributes; these double as the ``$var``
                       namespace for variable expansion.
        nodes:         Dict mapping node ID → ``Node`` in declaration order.
        edges:         Ordered list of all edges.
        node_defaults: Top-level ``node [...]`` defaults.
        edge_defaults: Top-level ``edge [...]`` defaults.
        subgraphs:     Subgraph blocks not yet flattened.
    """

    name: str
    attrs: dict[str, str] = field(default_factory=dict)
    nodes: dict[str, Node] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)
    node_defaults: dict[str, str] = field(default_factory=dict)
    edge_defaults: dict[str, str] = field(default_factory=dict)
    subgraphs: list[Subgraph] = field(default_factory=list)

    # Cached adjacency, not serialised
    _edges_from: dict[str, list[Edge]] = field(
        default_factory=dict, repr=False, compare=False
    )
    _edges_to: dict[str, list[Edge]] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self._build_adjacency()

    def _build_adjacency(self) -> None:
        """Build source and target adjacency indices from ``self.edges``."""
        self._edges_from = {}
        self._edges_to = {}
        for edge in self.edges:
            self._edges_from.setdefault(edge.source, []).append(edge)
            self._edges_to.setdefault(edge.target, []).append(edge)

    def copy(self) -> Graph:
        """Deep copy used by transforms so the input graph is never mutated."""
        return Graph(
            name=self.name,
            attrs=dict(self.attrs),
            nodes={nid: copy.deepcopy(node) for nid, node in self.nodes.items()},
            edges=[Edge(e.source, e.target, dict(e.attrs)) for e in self.edges],
            node_defaults=dict(self.node_defaults),
            edge_defaults=dict(self.edge_defaults),
            subgraphs=copy.deepcopy(self.subgraphs),
        )

    # ------------------------------------------------------------------
    # Traversal helpers
    # ------------------------------------------------------------------

    def edges_from(self, node_id: str) -> list[Edge]:
        """Return all outgoing edges from *node_id* in declaration order."""
        return list(self._edges_from.get(node_id, []))

    def edges_to(self, node_id: str) -> list[Edge]:
        """Return all incoming edges to *node_id* in declaration order."""
        return list(self._edges_to.get(node_id, []))

    def node(self, node_id: str) -> Node:
        """Retrieve a node by ID.

        Raises:
            KeyError: If *node_id* is not present in the graph.
        """
        return self.nodes[node_id]

    @property
    def node_order(self) -> list[str]:
        return list(self.nodes)

    # ------------------------------------------------------------------
    # Well-known node sets
    # ------------------------------------------------------------------

    @property
    def start_nodes(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.is_start]

    @property
    def start_node(self) -> Node:
        """The unique start node.

        Raises:
            ValueError: If the graph has zero or more than one start node.
        """
        starts = self.start_nodes
        if len(starts) != 1:
            raise ValueError(
                f"Graph must have exactly one start node (Mdiamond); found {len(starts)}"
            )
        return starts[0]

    @property
    def exit_nodes(self) -> list[Node]:
        """All exit nodes in declaration order."""
        return [n for n in self.nodes.values() if n.is_exit]

    @property
    def goal_gate_nodes(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.goal_gate]

    # ------------------------------------------------------------------
    # Graph-level attribute accessors
    # ------------------------------------------------------------------

    @property
    def goal(self) -> str:
        return self.attrs.get("goal", "")

    @property
    def label(self) -> str:
        return self.attrs.get("label", self.name)

    @property
    def model_stylesheet(self) -> str:
        return self.attrs.get("model_stylesheet", "")

    @property
    def default_max_retry(self) -> int:
        """Graph-wide fallback for nodes without ``max_retries`` (default 0)."""
        return parse_int(self.attrs.get("default_max_retry"), 0) or 0

    @property
    def retry_target(self) -> str | None:
        """Graph-level fallback goal-gate retry target."""
        return self.attrs.get("retry_target") or None

    @property
    def goal_gate_max_redirects(self) -> int:
        """How many times one gated node may be redirected before the run fails."""
        return parse_int(self.attrs.get("goal_gate_max_redirects"), 3) or 0

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

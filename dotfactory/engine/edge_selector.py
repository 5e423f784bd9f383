"""EdgeSelector — picks the single outgoing edge to follow after a node.

Priority order (highest to lowest):
    1. Condition truth  — edges whose non-empty condition evaluates True;
                          highest weight first, declaration order on ties
    2. Preferred label  — unconditional edge whose label matches
                          outcome.preferred_label (trimmed, case-insensitive)
    3. Suggested node   — unconditional edge whose target is in
                          outcome.suggested_next_ids (in suggestion order)
    4. Edge weight      — unconditional edge with the highest weight;
                          declaration order on ties

An edge whose condition evaluates False is never taken by a later step.
Fan-out nodes do not use this class; they follow every outgoing edge.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dotfactory.engine.conditions import evaluate_condition
from dotfactory.engine.exceptions import NoEligibleEdgeError
from dotfactory.engine.graph import Edge, Graph, Node
from dotfactory.engine.outcome import Outcome

if TYPE_CHECKING:
    from dotfactory.engine.state import EngineState

logger = logging.getLogger(__name__)


def _by_weight(edges: list[Edge]) -> list[Edge]:
    # sorted() is stable, so equal weights keep declaration order
    return sorted(edges, key=lambda e: -e.weight)


def _normalize_label(label: str) -> str:
    return label.strip().lower()


class EdgeSelector:
    """Selects the next edge using the four-step precedence above."""

    def matching_conditions(
        self,
        graph: Graph,
        node: Node,
        outcome: Outcome,
        state: "EngineState",
    ) -> list[Edge]:
        """Edges with a condition that evaluates True, best first."""
        context = state.context.snapshot()
        matched = [
            edge for edge in graph.edges_from(node.id)
            if edge.condition
            and evaluate_condition(edge.condition, context, state.node_outputs, outcome)
        ]
        return _by_weight(matched)

    def select(
        self,
        graph: Graph,
        node: Node,
        outcome: Outcome,
        state: "EngineState",
    ) -> Edge:
        """Select the next edge from *node*'s outgoing edges.

        Raises:
            NoEligibleEdgeError: If no step produces a result.
        """
        outgoing = graph.edges_from(node.id)
        if not outgoing:
            raise NoEligibleEdgeError(node_id=node.id, available_edges="(none)")

        # Step 1: Condition match
        matched = self.matching_conditions(graph, node, outcome, state)
        if matched:
            return self._chosen(node, matched[0], "condition")

        unconditional = [edge for edge in outgoing if not edge.condition]

        # Step 2: Preferred label match
        if outcome.preferred_label:
            wanted = _normalize_label(outcome.preferred_label)
            for edge in unconditional:
                if edge.label and _normalize_label(edge.label) == wanted:
                    return self._chosen(node, edge, "preferred_label")

        # Step 3: Suggested next node
        for suggested in outcome.suggested_next_ids:
            for edge in unconditional:
                if edge.target == suggested:
                    return self._chosen(node, edge, "suggested_next")

        # Step 4: Weight-based selection among unconditional edges
        if unconditional:
            return self._chosen(node, _by_weight(unconditional)[0], "weight")

        raise NoEligibleEdgeError(
            node_id=node.id,
            available_edges=", ".join(
                f"{e.id} [condition={e.condition!r}]" for e in outgoing
            ),
        )

    @staticmethod
    def _chosen(node: Node, edge: Edge, step: str) -> Edge:
        logger.debug("Edge %s selected from %s by %s", edge.id, node.id, step)
        return edge

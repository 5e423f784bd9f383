"""Structural linting for DOT pipelines.

Two surfaces over the same rule set:

- ``lint(graph)`` reports every finding and never raises.
- ``validate(graph)`` raises ``ValidationError`` when any ERROR remains.
  It treats a missing or duplicated start node as an ERROR because the
  executor cannot begin without exactly one; ``lint`` reports that same
  finding as a WARNING.

Rules (rule id — severity under ``lint``):
    start_node          exactly one start node (Mdiamond)          WARNING
    terminal_node       exactly one exit node (Msquare)            ERROR
    start_no_incoming   start node has no incoming edges           ERROR
    exit_no_outgoing    exit nodes have no outgoing edges          ERROR
    edge_source_exists  edge sources are declared nodes            ERROR
    edge_target_exists  edge targets are declared nodes            ERROR
    condition_syntax    edge conditions parse                      ERROR
    reachability        every node reachable from start            ERROR
    exit_reachable      an exit is reachable from every node       ERROR
    retry_target_exists retry_target names a declared node         WARNING
    stylesheet_syntax   model_stylesheet parses                    ERROR
    unknown_type        node dispatches to the custom registry     INFO

``classify(graph)`` is informational only: it labels the pipeline PLANNING,
EXECUTION or HYBRID and never influences execution.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from dotfactory.engine.conditions import check_condition_syntax
from dotfactory.engine.exceptions import (
    ConditionSyntaxError,
    StylesheetError,
    ValidationError,
)
from dotfactory.engine.graph import GENERATION_TYPES, Graph
from dotfactory.engine.stylesheet import parse_stylesheet
from dotfactory.engine.transforms import flatten_subgraphs

logger = logging.getLogger(__name__)

__all__ = ["Diagnostic", "Severity", "Synopsis", "classify", "lint", "validate"]


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class Synopsis(str, Enum):
    PLANNING = "PLANNING"
    EXECUTION = "EXECUTION"
    HYBRID = "HYBRID"


@dataclass(frozen=True)
class Diagnostic:
    """A single lint finding.

    Attributes:
        rule:     Stable rule id (e.g. ``exit_no_outgoing``).
        severity: ERROR, WARNING or INFO.
        message:  Human-readable description.
        node_id:  Node the finding is about, if any.
        edge:     ``source->target`` of the edge the finding is about, if any.
        fix:      Optional hint on how to fix it.
    """

    rule: str
    severity: Severity
    message: str
    node_id: str | None = None
    edge: str | None = None
    fix: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.node_id:
            d["node_id"] = self.node_id
        if self.edge:
            d["edge"] = self.edge
        if self.fix:
            d["fix"] = self.fix
        return d

    def __str__(self) -> str:
        return f"{self.severity.value} {self.rule}: {self.message}"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _bfs(starts: list[str], adj: dict[str, list[str]]) -> set[str]:
    """Return every node reachable from *starts* (inclusive)."""
    seen = set(starts)
    queue = deque(starts)
    while queue:
        current = queue.popleft()
        for nxt in adj.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def _check_terminals(graph: Graph) -> list[Diagnostic]:
    issues: list[Diagnostic] = []
    starts = graph.start_nodes
    exits = graph.exit_nodes

    if len(starts) != 1:
        issues.append(Diagnostic(
            rule="start_node",
            severity=Severity.WARNING,
            message=f"expected exactly one start node with shape=Mdiamond (found {len(starts)})",
            node_id=starts[1].id if len(starts) > 1 else None,
            fix="Declare a single node with shape=Mdiamond as the pipeline entry point",
        ))
    if len(exits) != 1:
        issues.append(Diagnostic(
            rule="terminal_node",
            severity=Severity.ERROR,
            message=f"expected exactly one exit node with shape=Msquare (found {len(exits)})",
            node_id=exits[1].id if len(exits) > 1 else None,
            fix="Declare a single node with shape=Msquare and route every path to it",
        ))

    for start in starts:
        incoming = graph.edges_to(start.id)
        if incoming:
            sources = ", ".join(e.source for e in incoming)
            issues.append(Diagnostic(
                rule="start_no_incoming",
                severity=Severity.ERROR,
                message=f"start node '{start.id}' must not have incoming edges (from {sources})",
                node_id=start.id,
            ))
    for exit_node in exits:
        outgoing = graph.edges_from(exit_node.id)
        if outgoing:
            targets = ", ".join(e.target for e in outgoing)
            issues.append(Diagnostic(
                rule="exit_no_outgoing",
                severity=Severity.ERROR,
                message=f"exit node '{exit_node.id}' must not have outgoing edges (to {targets})",
                node_id=exit_node.id,
                fix="Remove the outgoing edges or change the node's shape",
            ))
    return issues


def _check_edges(graph: Graph) -> list[Diagnostic]:
    issues: list[Diagnostic] = []
    for edge in graph.edges:
        if edge.source not in graph.nodes:
            issues.append(Diagnostic(
                rule="edge_source_exists",
                severity=Severity.ERROR,
                message=f"edge source '{edge.source}' is not a declared node",
                edge=edge.id,
            ))
        if edge.target not in graph.nodes:
            issues.append(Diagnostic(
                rule="edge_target_exists",
                severity=Severity.ERROR,
                message=f"edge target '{edge.target}' is not a declared node",
                edge=edge.id,
            ))
        if edge.condition:
            try:
                check_condition_syntax(edge.condition)
            except ConditionSyntaxError as exc:
                issues.append(Diagnostic(
                    rule="condition_syntax",
                    severity=Severity.ERROR,
                    message=f"invalid condition on edge {edge.id}: {exc}",
                    edge=edge.id,
                    fix="Use 'key=value', 'key!=value' clauses joined by '&&'",
                ))
    return issues


def _check_reachability(graph: Graph) -> list[Diagnostic]:
    issues: list[Diagnostic] = []
    adj: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    reverse_adj: dict[str, list[str]] = {nid: [] for nid in graph.nodes}
    for edge in graph.edges:
        if edge.source in graph.nodes and edge.target in graph.nodes:
            adj[edge.source].append(edge.target)
            reverse_adj[edge.target].append(edge.source)

    starts = [n.id for n in graph.start_nodes]
    if starts:
        reachable = _bfs(starts, adj)
        for node_id in graph.nodes:
            if node_id not in reachable:
                issues.append(Diagnostic(
                    rule="reachability",
                    severity=Severity.ERROR,
                    message=f"orphan node '{node_id}' is not reachable from start",
                    node_id=node_id,
                    fix="Add an edge leading to this node or remove it",
                ))

    exits = [n.id for n in graph.exit_nodes]
    if exits:
        can_finish = _bfs(exits, reverse_adj)
        for node_id in graph.nodes:
            if node_id not in can_finish:
                issues.append(Diagnostic(
                    rule="exit_reachable",
                    severity=Severity.ERROR,
                    message=f"node '{node_id}' has no path to an exit node (dead-end; the run cannot terminate from it)",
                    node_id=node_id,
                ))
    return issues


def _check_attributes(graph: Graph) -> list[Diagnostic]:
    issues: list[Diagnostic] = []
    for node in graph.nodes.values():
        target = node.retry_target
        if target and target not in graph.nodes:
            issues.append(Diagnostic(
                rule="retry_target_exists",
                severity=Severity.WARNING,
                message=f"retry_target '{target}' of node '{node.id}' is not a declared node",
                node_id=node.id,
            ))
        if node.handler_type == "custom":
            issues.append(Diagnostic(
                rule="unknown_type",
                severity=Severity.INFO,
                message=f"node '{node.id}' uses custom type '{node.custom_type}'; a handler must be registered at run time",
                node_id=node.id,
            ))
    if graph.retry_target and graph.retry_target not in graph.nodes:
        issues.append(Diagnostic(
            rule="retry_target_exists",
            severity=Severity.WARNING,
            message=f"graph retry_target '{graph.retry_target}' is not a declared node",
        ))
    if graph.model_stylesheet.strip():
        try:
            parse_stylesheet(graph.model_stylesheet)
        except StylesheetError as exc:
            issues.append(Diagnostic(
                rule="stylesheet_syntax",
                severity=Severity.ERROR,
                message=f"model_stylesheet does not parse: {exc}",
            ))
    return issues


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def lint(graph: Graph) -> list[Diagnostic]:
    """Run every rule and return the findings.  Never raises."""
    flat = flatten_subgraphs(graph)
    diagnostics: list[Diagnostic] = []
    diagnostics.extend(_check_terminals(flat))
    diagnostics.extend(_check_edges(flat))
    diagnostics.extend(_check_reachability(flat))
    diagnostics.extend(_check_attributes(flat))
    logger.debug(
        "Lint of %r: %d error(s), %d warning(s)",
        graph.name,
        sum(1 for d in diagnostics if d.severity is Severity.ERROR),
        sum(1 for d in diagnostics if d.severity is Severity.WARNING),
    )
    return diagnostics


def validate(graph: Graph) -> list[Diagnostic]:
    """Lint with execution-blocking severities.

    Returns the remaining non-error diagnostics when the graph is runnable.

    Raises:
        ValidationError: If any ERROR-severity diagnostic exists.
    """
    diagnostics = [
        replace(d, severity=Severity.ERROR) if d.rule == "start_node" else d
        for d in lint(graph)
    ]
    if any(d.severity is Severity.ERROR for d in diagnostics):
        raise ValidationError(diagnostics)
    return diagnostics


def has_errors(diagnostics: list[Diagnostic]) -> bool:
    return any(d.severity is Severity.ERROR for d in diagnostics)


def classify(graph: Graph) -> Synopsis:
    """Label the pipeline by the kinds of work its nodes do."""
    types = {node.handler_type for node in flatten_subgraphs(graph).nodes.values()}
    has_tool = "tool" in types
    has_generation = bool(types & GENERATION_TYPES)
    if has_tool and has_generation:
        return Synopsis.HYBRID
    if has_tool:
        return Synopsis.EXECUTION
    return Synopsis.PLANNING

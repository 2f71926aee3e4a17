"""Scenario graph evaluation — validation, reachability and lint.

A scenario graph is a directed graph of narrative nodes. Edges may carry a
guard expression (see awf_engine.guards); an edge is only followed when its
guard holds for the current guard context.

Graphs are validated once when stored. Reachability is recomputed every turn
because guard inputs (relationships, flags, objectives) change between turns.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from typing import Any

from awf_engine.errors import GraphError, GuardSyntaxError
from awf_engine.guards import evaluate_guard, parse_guard
from awf_engine.models import GameState, GraphWarning, ScenarioGraph

logger = logging.getLogger(__name__)

MAX_OUT_DEGREE = 6


def entry_node(graph: ScenarioGraph) -> str | None:
    if graph.entry_node:
        return graph.entry_node
    return graph.nodes[0].id if graph.nodes else None


def validate_graph(graph: ScenarioGraph) -> None:
    """Raise GraphError on duplicate ids, dangling edges, bad entry node or guard."""
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            raise GraphError(f"Duplicate node id {node.id!r}")
        seen.add(node.id)

    for edge in graph.edges:
        for end in (edge.from_, edge.to):
            if end not in seen:
                raise GraphError(f"Edge {edge.from_!r} -> {edge.to!r} references unknown node {end!r}")
        if edge.guard is not None:
            try:
                parse_guard(edge.guard)
            except GuardSyntaxError as e:
                raise GuardSyntaxError(f"Edge {edge.from_!r} -> {edge.to!r}: {e}") from e

    if graph.entry_node is not None and graph.entry_node not in seen:
        raise GraphError(f"Entry node {graph.entry_node!r} not found in graph")


class ScenarioGraphs:
    """Validated graphs keyed by scenario id."""

    def __init__(self) -> None:
        self._graphs: dict[str, ScenarioGraph] = {}

    def set_graph(self, scenario_id: str, graph: ScenarioGraph) -> None:
        validate_graph(graph)
        self._graphs[scenario_id] = graph
        logger.debug("scenario graph stored id=%s nodes=%d edges=%d",
                     scenario_id, len(graph.nodes), len(graph.edges))

    def get_graph(self, scenario_id: str) -> ScenarioGraph | None:
        return self._graphs.get(scenario_id)


def reachable_nodes(graph: ScenarioGraph, guard_ctx: Mapping[str, Any]) -> set[str]:
    """Breadth-first traversal from the entry node over edges whose guard holds."""
    start = entry_node(graph)
    if start is None:
        return set()

    outgoing: dict[str, list] = {}
    for edge in graph.edges:
        outgoing.setdefault(edge.from_, []).append(edge)

    visited = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for edge in outgoing.get(current, []):
            if edge.to in visited:
                continue
            if evaluate_guard(edge.guard, guard_ctx):
                visited.add(edge.to)
                queue.append(edge.to)
    return visited


def lint_graph(graph: ScenarioGraph) -> list[GraphWarning]:
    """Non-fatal structural warnings: orphans, high fan-out, cycles."""
    warnings: list[GraphWarning] = []
    start = entry_node(graph)

    incoming = {e.to for e in graph.edges}
    for node in graph.nodes:
        if node.id != start and node.id not in incoming:
            warnings.append(GraphWarning(
                kind="orphan", node=node.id,
                message=f"Node {node.id!r} has no incoming edge and is not the entry node",
            ))

    adjacency: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        adjacency.setdefault(edge.from_, []).append(edge.to)

    for node_id, targets in adjacency.items():
        if len(targets) > MAX_OUT_DEGREE:
            warnings.append(GraphWarning(
                kind="fan_out", node=node_id,
                message=f"Node {node_id!r} has {len(targets)} outgoing edges (> {MAX_OUT_DEGREE})",
            ))

    for node_id in _cycle_entries(adjacency):
        warnings.append(GraphWarning(
            kind="cycle", node=node_id,
            message=f"Cycle detected through node {node_id!r}",
        ))
    return warnings


def _cycle_entries(adjacency: dict[str, list[str]]) -> list[str]:
    """Iterative DFS with an on-stack set; returns the node closing each back edge."""
    visited: set[str] = set()
    on_stack: set[str] = set()
    found: list[str] = []

    for root in adjacency:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack = [(root, iter(adjacency.get(root, [])))]
        while stack:
            node, targets = stack[-1]
            target = next(targets, None)
            if target is None:
                on_stack.discard(node)
                stack.pop()
            elif target in on_stack:
                if target not in found:
                    found.append(target)
            elif target not in visited:
                visited.add(target)
                on_stack.add(target)
                stack.append((target, iter(adjacency.get(target, []))))
    return found


def guard_context(state: GameState) -> dict[str, Any]:
    """Build the mapping guards are evaluated against.

    Namespaces: rel (relationships slice), flag, res, obj (objective id ->
    status), time, plus every hot key and every slice under its own name.
    """
    hot = state.hot
    objectives = {
        o["id"]: o.get("status")
        for o in hot.get("objectives", [])
        if isinstance(o, dict) and "id" in o
    }
    ctx: dict[str, Any] = dict(hot)
    ctx.update(state.slices)
    ctx.update({
        "rel": state.slices.get("relationships", {}),
        "flag": hot.get("flags", {}),
        "res": hot.get("resources", {}),
        "obj": objectives,
        "time": hot.get("time", {}),
    })
    return ctx

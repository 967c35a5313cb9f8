"""
Graph analysis for workflow runs.

- validate_graph: dangling edges, duplicate ids, cycles.
- compute_waves: Kahn partitioning into groups of mutually independent nodes.
- execution_subgraph: selected nodes plus everything they transitively need.

Everything here is pure and works on any objects exposing `.id` (nodes) and
`.source` / `.target` (edges).
"""

from __future__ import annotations

from collections import deque
from typing import Iterable, Protocol, Sequence, TypeVar

from pydantic import BaseModel

from app.services.errors import WorkflowValidationError


class _Node(Protocol):
    id: str


class _Edge(Protocol):
    source: str
    target: str


N = TypeVar("N", bound=_Node)
E = TypeVar("E", bound=_Edge)


class GraphValidationResult(BaseModel):
    valid: bool
    error: str | None = None


def _adjacency(
    node_ids: Iterable[str], edges: Iterable[_Edge], *, reverse: bool = False
) -> dict[str, list[str]]:
    """Adjacency over known ids only; edges touching unknown ids are dropped."""
    adjacency: dict[str, list[str]] = {nid: [] for nid in node_ids}
    for edge in edges:
        if edge.source not in adjacency or edge.target not in adjacency:
            continue
        if reverse:
            adjacency[edge.target].append(edge.source)
        else:
            adjacency[edge.source].append(edge.target)
    return adjacency


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_graph(nodes: Sequence[_Node], edges: Sequence[_Edge]) -> GraphValidationResult:
    """
    Check that the graph is a DAG whose edges only reference known nodes.

    Cycle detection is a depth-first search that keeps the current path in an
    on-stack set; reaching a neighbour that is still on the stack is a
    back-edge. The search is iterative, so long chains are fine.
    """
    node_ids: list[str] = []
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            return GraphValidationResult(valid=False, error=f"Duplicate node ID '{node.id}'")
        seen.add(node.id)
        node_ids.append(node.id)

    for edge in edges:
        if edge.source not in seen or edge.target not in seen:
            missing = edge.source if edge.source not in seen else edge.target
            return GraphValidationResult(
                valid=False,
                error=f"Edge references non-existent node '{missing}'",
            )

    adjacency = _adjacency(node_ids, edges)
    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in node_ids:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack: list[tuple[str, Iterable[str]]] = [(root, iter(adjacency[root]))]

        while stack:
            node_id, neighbours = stack[-1]
            advanced = False
            for neighbour in neighbours:
                if neighbour in on_stack:
                    return GraphValidationResult(
                        valid=False,
                        error=f"Workflow contains a cycle ({node_id} -> {neighbour})",
                    )
                if neighbour not in visited:
                    visited.add(neighbour)
                    on_stack.add(neighbour)
                    stack.append((neighbour, iter(adjacency[neighbour])))
                    advanced = True
                    break
            if not advanced:
                stack.pop()
                on_stack.discard(node_id)

    return GraphValidationResult(valid=True)


def require_valid_graph(nodes: Sequence[_Node], edges: Sequence[_Edge]) -> None:
    result = validate_graph(nodes, edges)
    if not result.valid:
        raise WorkflowValidationError(result.error or "Invalid workflow graph")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


def compute_waves(nodes: Sequence[_Node], edges: Sequence[_Edge]) -> list[list[str]]:
    """
    Partition nodes into execution waves.

    Each wave holds every remaining node whose remaining in-degree is zero.
    Within a wave, nodes keep the order they were submitted in. Edges that
    touch nodes outside `nodes` are ignored, so this works on subgraphs.
    """
    node_ids = [n.id for n in nodes]
    adjacency = _adjacency(node_ids, edges)
    in_degree: dict[str, int] = {nid: 0 for nid in node_ids}
    for targets in adjacency.values():
        for target in targets:
            in_degree[target] += 1

    waves: list[list[str]] = []
    remaining = list(node_ids)

    while remaining:
        wave = [nid for nid in remaining if in_degree[nid] == 0]
        if not wave:
            # Only reachable when validate_graph was skipped.
            raise WorkflowValidationError(
                "Workflow contains a cycle: no schedulable nodes among "
                f"{', '.join(remaining)}"
            )
        waves.append(wave)

        scheduled = set(wave)
        remaining = [nid for nid in remaining if nid not in scheduled]
        for nid in wave:
            for target in adjacency[nid]:
                in_degree[target] -= 1

    return waves


def topological_order(nodes: Sequence[_Node], edges: Sequence[_Edge]) -> list[str]:
    """Flat execution order: the waves concatenated."""
    return [nid for wave in compute_waves(nodes, edges) for nid in wave]


# ---------------------------------------------------------------------------
# Neighbourhood queries
# ---------------------------------------------------------------------------


def _reachable(start: str, adjacency: dict[str, list[str]]) -> set[str]:
    visited: set[str] = set()
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        for nxt in adjacency.get(current, []):
            if nxt not in visited:
                queue.append(nxt)
    visited.discard(start)
    return visited


def upstream_nodes(node_id: str, nodes: Sequence[_Node], edges: Sequence[_Edge]) -> set[str]:
    """All transitive dependencies of node_id (excluding itself)."""
    return _reachable(node_id, _adjacency([n.id for n in nodes], edges, reverse=True))


def downstream_nodes(node_id: str, nodes: Sequence[_Node], edges: Sequence[_Edge]) -> set[str]:
    """All transitive dependents of node_id (excluding itself)."""
    return _reachable(node_id, _adjacency([n.id for n in nodes], edges))


def parent_nodes(node_id: str, edges: Sequence[_Edge]) -> list[str]:
    return [e.source for e in edges if e.target == node_id]


def child_nodes(node_id: str, edges: Sequence[_Edge]) -> list[str]:
    return [e.target for e in edges if e.source == node_id]


def execution_subgraph(
    selected_ids: Iterable[str],
    nodes: Sequence[N],
    edges: Sequence[E],
) -> tuple[list[N], list[E]]:
    """
    Restrict the graph to the selected nodes and their full upstream closure.

    Edges are kept only when both endpoints are in the closure. Node and edge
    order follow the input.
    """
    reverse = _adjacency([n.id for n in nodes], edges, reverse=True)
    required: set[str] = set()
    for node_id in selected_ids:
        if node_id not in reverse:
            raise WorkflowValidationError(f"Selected node '{node_id}' is not in the workflow")
        required.add(node_id)
        required |= _reachable(node_id, reverse)

    sub_nodes = [n for n in nodes if n.id in required]
    sub_edges = [e for e in edges if e.source in required and e.target in required]
    return sub_nodes, sub_edges

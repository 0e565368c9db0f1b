"""DAG validation helpers."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping

from planforge.dag.build import GraphNode, build_adjacency
from planforge.util.errors import PlanError


def detect_cycles(dependencies: Mapping[str, list[str]]) -> str | None:
    """Return a readable cycle description, or None when the graph is acyclic.

    Depth-first search that keeps the active recursion path; revisiting a node
    still on the path closes a cycle, reported as ``a -> b -> c -> a``.
    Dependencies naming unknown ids are ignored here.
    """
    visited: set[str] = set()
    visiting: set[str] = set()
    path: list[str] = []

    def _visit(node_id: str) -> str | None:
        if node_id in visiting:
            start = path.index(node_id)
            cycle = [*path[start:], node_id]
            return "Circular dependency detected: " + " -> ".join(cycle)
        if node_id in visited:
            return None
        visiting.add(node_id)
        path.append(node_id)
        for dep in dependencies.get(node_id, []):
            if dep not in dependencies:
                continue
            found = _visit(dep)
            if found is not None:
                return found
        path.pop()
        visiting.discard(node_id)
        visited.add(node_id)
        return None

    for node_id in dependencies:
        found = _visit(node_id)
        if found is not None:
            return found
    return None


def validate_all_deps_exist(nodes: Iterable[GraphNode]) -> None:
    """Raise one PlanError listing every dangling dependency reference."""
    node_list = list(nodes)
    known = {node.id for node in node_list}
    problems = [
        f"Job '{node.id}' references unknown dependency '{dep}'"
        for node in node_list
        for dep in node.dependencies
        if dep not in known
    ]
    if problems:
        raise PlanError("Invalid dependencies:\n" + "\n".join(problems))


def assert_acyclic(nodes: Iterable[GraphNode]) -> list[str]:
    """Validate graph has no cycle using Kahn's algorithm; return topological order."""
    node_list = list(nodes)
    dependents, in_degree = build_adjacency(node_list)
    degrees = dict(in_degree)
    q = deque([node.id for node in node_list if degrees.get(node.id, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                q.append(nxt)

    if len(order) != len(node_list):
        cycle = detect_cycles({node.id: list(node.dependencies) for node in node_list})
        raise PlanError(cycle or "Plan has cyclic dependencies.")
    return order

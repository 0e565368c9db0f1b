"""Build graph structures over a minimal ``{id, dependencies}`` view."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol


class GraphNode(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def dependencies(self) -> list[str]: ...


def compute_dependents(nodes: Iterable[GraphNode]) -> dict[str, list[str]]:
    """Return reverse edges: node id -> ids of nodes that depend on it."""
    node_list = list(nodes)
    dependents: dict[str, list[str]] = {node.id: [] for node in node_list}
    for node in node_list:
        for dep in node.dependencies:
            if dep in dependents and node.id not in dependents[dep]:
                dependents[dep].append(node.id)
    return dependents


def compute_roots_and_leaves(nodes: Iterable[GraphNode]) -> tuple[list[str], list[str]]:
    """Roots have no dependencies; leaves are named as a dependency by nobody."""
    node_list = list(nodes)
    referenced: set[str] = set()
    for node in node_list:
        referenced.update(node.dependencies)
    roots = [node.id for node in node_list if not node.dependencies]
    leaves = [node.id for node in node_list if node.id not in referenced]
    return roots, leaves


def build_adjacency(nodes: Iterable[GraphNode]) -> tuple[dict[str, list[str]], dict[str, int]]:
    """Return dependents adjacency and in-degree by node id."""
    node_list = list(nodes)
    in_degree = {node.id: len(node.dependencies) for node in node_list}
    return compute_dependents(node_list), in_degree

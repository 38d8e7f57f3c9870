"""
Plugin Dependency Graph

Directed graph of plugin ids. Edges point from a dependency to the
plugins that depend on it, so a topological sort yields load order.
"""

from __future__ import annotations

import heapq
from collections import defaultdict, deque
from typing import Any, Dict, Iterable, Iterator, List, Set, Tuple


class DependencyGraph:
    """
    Directed graph for dependency tracking.

    Features:
    - Node and edge management
    - Deterministic topological sort (ties broken by ascending id)
    - Cycle detection reporting the full cycle
    - Transitive dependency and dependent queries
    - Subgraph extraction
    """

    def __init__(self):
        self._nodes: Set[str] = set()
        self._edges: Dict[str, Set[str]] = defaultdict(set)  # dependency -> dependents
        self._reverse_edges: Dict[str, Set[str]] = defaultdict(set)  # dependent -> dependencies

    def add_node(self, node: str) -> None:
        self._nodes.add(node)

    def add_edge(self, dependency: str, dependent: str) -> None:
        """Record that ``dependent`` must load after ``dependency``."""
        self.add_node(dependency)
        self.add_node(dependent)
        self._edges[dependency].add(dependent)
        self._reverse_edges[dependent].add(dependency)

    def get_dependencies(self, node: str) -> Set[str]:
        """Direct dependencies of a node."""
        return set(self._reverse_edges.get(node, ()))

    def get_dependents(self, node: str) -> Set[str]:
        """Nodes that directly depend on this node."""
        return set(self._edges.get(node, ()))

    def get_all_dependencies(self, node: str) -> Set[str]:
        """Transitive dependencies of a node."""
        return self._closure(node, self._reverse_edges)

    def get_all_dependents(self, node: str) -> Set[str]:
        """Transitive dependents of a node."""
        return self._closure(node, self._edges)

    @staticmethod
    def _closure(node: str, adjacency: Dict[str, Set[str]]) -> Set[str]:
        visited: Set[str] = set()
        queue = deque([node])
        while queue:
            current = queue.popleft()
            for neighbor in adjacency.get(current, ()):
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append(neighbor)
        return visited

    def is_reachable(self, from_node: str, to_node: str) -> bool:
        """Check if ``to_node`` is a transitive dependent of ``from_node``."""
        return to_node in self.get_all_dependents(from_node)

    # === Topological Sort ===

    def topological_sort(self) -> List[str]:
        """
        Kahn's algorithm with a min-heap of ready nodes.

        Among nodes whose dependencies are all placed, the smallest id is
        always emitted first, so the order is reproducible across runs.

        Returns:
            Nodes in load order (dependencies first)

        Raises:
            ValueError: If the graph has a cycle
        """
        in_degree: Dict[str, int] = {
            node: len(self._reverse_edges.get(node, ())) for node in self._nodes
        }
        ready = [node for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result: List[str] = []

        while ready:
            node = heapq.heappop(ready)
            result.append(node)
            for dependent in self._edges.get(node, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(result) != len(self._nodes):
            raise ValueError("graph has cycles, topological sort not possible")

        return result

    # === Cycle Detection ===

    def find_cycles(self) -> List[List[str]]:
        """
        Find cycles by depth-first traversal along depends-on edges.

        Each back-edge to a node still on the traversal path yields one
        cycle, listed in depends-on direction and closed with its first
        node: ``["a", "b", "a"]`` means a depends on b and b on a.
        Traversal visits nodes and neighbors in sorted order and keeps
        its own stack, so chain length is not bounded by recursion.
        """
        cycles: List[List[str]] = []
        visited: Set[str] = set()
        on_path: Set[str] = set()
        path: List[str] = []

        for root in sorted(self._nodes):
            if root in visited:
                continue

            visited.add(root)
            on_path.add(root)
            path.append(root)
            stack: List[Tuple[str, Iterator[str]]] = [
                (root, iter(sorted(self._reverse_edges.get(root, ()))))
            ]

            while stack:
                node, dependencies = stack[-1]
                dependency = next(dependencies, None)

                if dependency is None:
                    stack.pop()
                    path.pop()
                    on_path.discard(node)
                elif dependency not in visited:
                    visited.add(dependency)
                    on_path.add(dependency)
                    path.append(dependency)
                    stack.append(
                        (dependency, iter(sorted(self._reverse_edges.get(dependency, ()))))
                    )
                elif dependency in on_path:
                    start = path.index(dependency)
                    cycles.append(path[start:] + [dependency])

        return cycles

    # === Subgraph ===

    def subgraph(self, nodes: Iterable[str]) -> "DependencyGraph":
        """Graph restricted to the given nodes."""
        keep = set(nodes) & self._nodes
        graph = DependencyGraph()
        for node in keep:
            graph.add_node(node)
            for dependent in self._edges.get(node, ()):
                if dependent in keep:
                    graph.add_edge(node, dependent)
        return graph

    # === Serialization ===

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": sorted(self._nodes),
            "depends_on": {
                node: sorted(deps)
                for node, deps in sorted(self._reverse_edges.items())
                if deps
            },
        }

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: object) -> bool:
        return node in self._nodes

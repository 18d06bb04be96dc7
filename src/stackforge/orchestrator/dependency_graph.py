"""Dependency graph used for validation and deterministic ordering."""

import heapq
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from stackforge.utils.errors import CycleError, UnresolvedReferenceError


class EdgeKind(Enum):
    """Why one node depends on another."""
    REFERENCE = "reference"  # attribute value refers to the other node
    EXPLICIT = "explicit"  # listed in depends_on
    ORDERING = "ordering"  # imposed by the planner between actions


@dataclass
class DependencyNode:
    """Node in the dependency graph."""

    node_id: str
    order: int
    dependencies: Set[str] = field(default_factory=set)  # Node IDs this node depends on
    dependents: Set[str] = field(default_factory=set)  # Node IDs that depend on this node


class DependencyGraph:
    """Directed graph of "depends on" edges.

    Every node carries an ``order`` (declaration order); it breaks ties in
    every traversal so results are deterministic.
    """

    def __init__(self):
        """Initialize empty dependency graph."""
        self.nodes: Dict[str, DependencyNode] = {}
        self.edge_kinds: Dict[Tuple[str, str], EdgeKind] = {}
        self._pending_edges: Dict[str, Set[str]] = defaultdict(set)

    def add_node(self, node_id: str, order: Optional[int] = None) -> DependencyNode:
        """Add a node, or re-rank an existing one.

        Args:
            node_id: Unique node identifier
            order: Tie-break rank; defaults to insertion order
        """
        if node_id in self.nodes:
            node = self.nodes[node_id]
            if order is not None:
                node.order = order
            return node

        node = DependencyNode(
            node_id=node_id,
            order=len(self.nodes) if order is None else order
        )
        self.nodes[node_id] = node
        return node

    def add_dependency(self, node_id: str, dependency_id: str, kind: EdgeKind = EdgeKind.REFERENCE) -> None:
        """Record that ``node_id`` depends on ``dependency_id``.

        The dependency may be added to the graph later; ``validate`` reports
        any that never appear.
        """
        if node_id not in self.nodes:
            raise KeyError(node_id)

        existing = self.edge_kinds.get((node_id, dependency_id))
        if existing is None or existing == EdgeKind.ORDERING or kind == EdgeKind.REFERENCE:
            self.edge_kinds[(node_id, dependency_id)] = kind

        self.nodes[node_id].dependencies.add(dependency_id)
        if dependency_id in self.nodes:
            self.nodes[dependency_id].dependents.add(node_id)
        else:
            self._pending_edges[dependency_id].add(node_id)

    def _attach_pending(self) -> None:
        for dependency_id in list(self._pending_edges):
            if dependency_id in self.nodes:
                self.nodes[dependency_id].dependents.update(self._pending_edges.pop(dependency_id))

    def get_dependencies(self, node_id: str) -> Set[str]:
        """Get direct dependencies of a node."""
        if node_id not in self.nodes:
            return set()
        return self.nodes[node_id].dependencies.copy()

    def _sorted_ids(self, ids) -> List[str]:
        return sorted(ids, key=lambda i: (self.nodes[i].order, i) if i in self.nodes else (float("inf"), i))

    def detect_circular_dependencies(self) -> Optional[List[str]]:
        """Detect circular dependencies in the graph.

        Returns:
            Node IDs forming a cycle, first node repeated at the end
            (``a -> b -> a`` means a depends on b which depends on a),
            or None if the graph is acyclic
        """
        # White (0): unvisited, Gray (1): on the current path, Black (2): done
        color = {node_id: 0 for node_id in self.nodes}

        for root in self._sorted_ids(self.nodes):
            if color[root] != 0:
                continue

            path: List[str] = [root]
            color[root] = 1
            stack = [iter(self._sorted_ids(self.nodes[root].dependencies))]

            while stack:
                advanced = False
                for dep_id in stack[-1]:
                    if dep_id not in self.nodes:
                        continue
                    if color[dep_id] == 1:
                        start = path.index(dep_id)
                        return path[start:] + [dep_id]
                    if color[dep_id] == 0:
                        color[dep_id] = 1
                        path.append(dep_id)
                        stack.append(iter(self._sorted_ids(self.nodes[dep_id].dependencies)))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    color[path.pop()] = 2

        return None

    def validate(self) -> None:
        """Validate the dependency graph.

        Raises:
            UnresolvedReferenceError: If a node depends on a missing node
            CycleError: If the graph contains a cycle
        """
        for node_id in self._sorted_ids(self.nodes):
            for dep_id in self._sorted_ids(self.nodes[node_id].dependencies):
                if dep_id not in self.nodes:
                    raise UnresolvedReferenceError(
                        f"'{node_id}' depends on '{dep_id}' which does not exist",
                        resource_id=node_id
                    )

        cycle = self.detect_circular_dependencies()
        if cycle:
            raise CycleError(cycle)

    def topological_sort(self) -> List[str]:
        """Order nodes so every node follows everything it depends on.

        Among nodes that are ready at the same time the lowest ``order`` goes
        first.

        Raises:
            UnresolvedReferenceError, CycleError: If the graph is invalid
        """
        self.validate()
        self._attach_pending()

        in_degree = {node_id: len(node.dependencies) for node_id, node in self.nodes.items()}
        ready = [(node.order, node_id) for node_id, node in self.nodes.items() if in_degree[node_id] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node_id = heapq.heappop(ready)
            result.append(node_id)

            for dependent_id in self.nodes[node_id].dependents:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(ready, (self.nodes[dependent_id].order, dependent_id))

        if len(result) != len(self.nodes):
            raise CycleError(self.detect_circular_dependencies() or sorted(set(self.nodes) - set(result)))

        return result

"""Desired-state types produced by the graph builder."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from stackforge.orchestrator.dependency_graph import DependencyGraph, EdgeKind
from stackforge.orchestrator.references import Reference


@dataclass(frozen=True)
class Resource:
    """A declared resource after variable substitution.

    ``attributes`` still holds resource references as ``${...}`` text; they
    are resolved against state by the planner and again, lazily, by the
    executor.
    """

    address: str
    type: str
    name: str
    attributes: Dict[str, Any]
    index: int
    references: Tuple[Reference, ...] = ()
    depends_on: Tuple[str, ...] = ()

    @property
    def dependencies(self) -> List[str]:
        """Addresses this resource depends on, references first, no duplicates."""
        seen = []
        for ref in self.references:
            if ref.target not in seen:
                seen.append(ref.target)
        for address in self.depends_on:
            if address not in seen:
                seen.append(address)
        return seen


@dataclass(frozen=True)
class Output:
    """An output expression after variable substitution."""

    name: str
    value: Any
    description: Optional[str] = None
    sensitive: bool = False


@dataclass
class DesiredGraph:
    """All declared resources plus their dependency edges."""

    resources: Dict[str, Resource]
    graph: DependencyGraph
    variables: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Output] = field(default_factory=dict)

    def get(self, address: str) -> Optional[Resource]:
        return self.resources.get(address)

    def ordered(self) -> List[Resource]:
        """Resources in declaration order."""
        return sorted(self.resources.values(), key=lambda r: r.index)

    def dependencies_of(self, address: str) -> List[str]:
        return self.resources[address].dependencies

    def edge_kind(self, address: str, dependency: str) -> Optional[EdgeKind]:
        return self.graph.edge_kinds.get((address, dependency))

    def creation_order(self) -> List[str]:
        return self.graph.topological_sort()

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, address: str) -> bool:
        return address in self.resources

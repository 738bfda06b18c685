"""Dependency ordering and cycle detection.

This module orders resource nodes so that every node comes after all of
its dependencies:
1. Topological sorting for execution order (Kahn's algorithm)
2. Cycle detection naming the cycle's node sequence
3. Readiness queries for the execution scheduler
4. Reverse ordering for teardown

Ordering is deterministic: among nodes that are ready at the same time,
the lexicographically smallest address goes first.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass, field

from .graph import ResourceGraph

logger = logging.getLogger(__name__)


class CycleError(Exception):
    """Raised when a dependency cycle is detected.

    Attributes:
        cycle: Node sequence of one cycle, first node repeated at the end.
        involved: Every node that sits on or behind a cycle.
    """

    def __init__(self, cycle: list[Hashable], involved: list[Hashable] | None = None) -> None:
        self.cycle = cycle
        self.involved = involved or list(cycle[:-1])
        path = " -> ".join(str(node) for node in cycle)
        super().__init__(f"Circular dependency detected: {path}")


@dataclass
class DependencyGraph:
    """Directed acyclic graph of node dependencies.

    Keys can be any hashable with a meaningful ``str`` (resource addresses
    or plan action keys).
    """

    depends_on: dict[Hashable, set[Hashable]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Mapping[Hashable, Iterable[Hashable]]) -> DependencyGraph:
        graph = cls()
        for node, deps in mapping.items():
            graph.add_node(node, deps)
        return graph

    @classmethod
    def from_resource_graph(cls, resource_graph: ResourceGraph) -> DependencyGraph:
        return cls.from_mapping(resource_graph.dependency_map())

    def add_node(self, node: Hashable, depends_on: Iterable[Hashable] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            node: Node key.
            depends_on: Keys this node depends on. Dependencies not yet
                present are added as nodes without dependencies.
        """
        deps = set(depends_on or ())
        self.depends_on.setdefault(node, set()).update(deps)
        for dep in deps:
            self.depends_on.setdefault(dep, set())

    def __len__(self) -> int:
        return len(self.depends_on)

    def dependents(self) -> dict[Hashable, set[Hashable]]:
        """Adjacency reversed: dependency -> nodes that depend on it."""
        result: dict[Hashable, set[Hashable]] = {node: set() for node in self.depends_on}
        for node, deps in self.depends_on.items():
            for dep in deps:
                result[dep].add(node)
        return result

    def transitive_dependents(self, node: Hashable) -> set[Hashable]:
        """All nodes that directly or indirectly depend on ``node``."""
        reverse = self.dependents()
        seen: set[Hashable] = set()
        stack = list(reverse.get(node, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(reverse[current])
        return seen

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self) -> list[Hashable]:
        """Return nodes in dependency order (dependencies first).

        Returns:
            List of node keys in execution order.

        Raises:
            CycleError: If a cycle is detected.
        """
        dependents = self.dependents()
        in_degree: dict[Hashable, int] = {
            node: len(deps) for node, deps in self.depends_on.items()
        }

        # Kahn's algorithm
        result: list[Hashable] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort(key=str)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.depends_on):
            remaining = {node for node, degree in in_degree.items() if degree > 0}
            cycle = self._find_cycle(remaining)
            logger.error(
                "Dependency cycle detected",
                extra={"cycle": [str(n) for n in cycle], "involved": len(remaining)},
            )
            raise CycleError(cycle, sorted(remaining, key=str))

        return result

    def reverse_order(self) -> list[Hashable]:
        """Return nodes in teardown order (dependents first)."""
        return list(reversed(self.topological_sort()))

    def get_ready(
        self, satisfied: set[Hashable], exclude: set[Hashable] | None = None
    ) -> list[Hashable]:
        """Get nodes that are ready to run (all dependencies satisfied).

        Args:
            satisfied: Nodes already completed successfully.
            exclude: Nodes to skip (running, failed or blocked).

        Returns:
            Sorted list of node keys that can run now.
        """
        skip = satisfied | (exclude or set())
        ready = [
            node
            for node, deps in self.depends_on.items()
            if node not in skip and deps <= satisfied
        ]
        return sorted(ready, key=str)

    def _find_cycle(self, remaining: set[Hashable]) -> list[Hashable]:
        """Walk dependency edges inside the residual set until a node repeats.

        Every residual node has an unprocessed dependency that is itself
        residual, so the walk always closes a cycle.
        """
        start = min(remaining, key=str)
        path: list[Hashable] = []
        position: dict[Hashable, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            candidates = sorted(
                (dep for dep in self.depends_on[current] if dep in remaining), key=str
            )
            current = candidates[0]

        cycle = path[position[current]:]
        # Present in dependent -> dependency order, starting at the smallest
        pivot = cycle.index(min(cycle, key=str))
        cycle = cycle[pivot:] + cycle[:pivot]
        return cycle + [cycle[0]]


def resolve_order(resource_graph: ResourceGraph) -> list:
    """Topologically order the nodes of a resource graph.

    Raises:
        CycleError: If the graph contains a cycle.
    """
    order = DependencyGraph.from_resource_graph(resource_graph).topological_sort()
    logger.debug("Resolved dependency order", extra={"nodes": len(order)})
    return order

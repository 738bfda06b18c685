"""Resource graph construction.

Turns validated definition documents into a graph of addressed resource
nodes:
1. Repetition (``count`` / ``forEach``) is expanded into distinct nodes
2. Static expressions (variables, instance keys) are substituted
3. Resource references stay deferred and become implicit edges
4. ``dependsOn`` entries become explicit edges

EXAMPLE:
```yaml
resources:
  - type: azure_virtual_network
    name: hub
    attributes:
      name: vnet-hub
  - type: azure_subnet
    name: app
    count: 2
    attributes:
      name: "snet-app-${count.index}"
      virtual_network_id: "${azure_virtual_network.hub.id}"
```
yields ``azure_virtual_network.hub``, ``azure_subnet.app[0]`` and
``azure_subnet.app[1]``, each subnet with an implicit edge to the vnet.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .address import AddressError, ResourceAddress
from .expressions import (
    EvaluationContext,
    ExpressionError,
    Reference,
    UnresolvedReferenceError,
    collect_references,
    compile_value,
)
from .models import LifecycleConfig, ResourceBlock
from .spec_loader import LoadedDefinitions, ParseError

logger = logging.getLogger(__name__)


class DuplicateAddressError(Exception):
    """Raised when two declared nodes share the same address."""

    def __init__(self, address: ResourceAddress) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class LifecycleState(str, Enum):
    """Lifecycle of a resource node."""

    PLANNED = "planned"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    TAINTED = "tainted"


class EdgeKind(str, Enum):
    IMPLICIT = "implicit"  # Attribute reference
    EXPLICIT = "explicit"  # dependsOn


@dataclass(frozen=True)
class Edge:
    """Directed edge from a dependent node to one of its dependencies."""

    dependent: ResourceAddress
    dependency: ResourceAddress
    kind: EdgeKind = EdgeKind.IMPLICIT


@dataclass
class ResourceNode:
    """A single declared resource.

    ``attributes`` holds literal values and deferred ``Template`` values;
    templates are only resolved when the node is executed.
    """

    address: ResourceAddress
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[ResourceAddress] = field(default_factory=list)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    provider_id: str | None = None
    state: LifecycleState = LifecycleState.PLANNED

    @property
    def resource_type(self) -> str:
        return self.address.type

    @property
    def references(self) -> list[Reference]:
        return collect_references(self.attributes)


@dataclass
class ResourceGraph:
    """Desired-state graph: nodes keyed by address plus dependency edges."""

    nodes: dict[ResourceAddress, ResourceNode] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)

    def add_node(self, node: ResourceNode) -> None:
        if node.address in self.nodes:
            raise DuplicateAddressError(node.address)
        self.nodes[node.address] = node

    def add_edge(self, edge: Edge) -> None:
        if edge not in self.edges:
            self.edges.append(edge)

    def __contains__(self, address: object) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, address: ResourceAddress) -> set[ResourceAddress]:
        return {e.dependency for e in self.edges if e.dependent == address}

    def dependents_of(self, address: ResourceAddress) -> set[ResourceAddress]:
        return {e.dependent for e in self.edges if e.dependency == address}

    def dependency_map(self) -> dict[ResourceAddress, set[ResourceAddress]]:
        """Adjacency in the dependent -> dependencies direction."""
        result: dict[ResourceAddress, set[ResourceAddress]] = {a: set() for a in self.nodes}
        for edge in self.edges:
            result[edge.dependent].add(edge.dependency)
        return result

    def instances_of(self, block: ResourceAddress) -> list[ResourceAddress]:
        """All node addresses expanded from a block address."""
        return sorted(a for a in self.nodes if a.base == block.base)

    def resolve_targets(self, reference: Reference) -> list[ResourceAddress]:
        """Node addresses a reference points to (several for splat)."""
        if reference.splat:
            return [a for a in self.instances_of(reference.target) if a.is_instance]
        if reference.target in self.nodes:
            return [reference.target]
        return []


def _instances(block: ResourceBlock) -> list[tuple[int | str | None, EvaluationContext]]:
    """Expand a block into (instance key, context) pairs."""
    if block.count is not None:
        return [(i, EvaluationContext(count_index=i)) for i in range(block.count)]
    if isinstance(block.for_each, list):
        return [(k, EvaluationContext(each_key=k, each_value=k)) for k in block.for_each]
    if isinstance(block.for_each, dict):
        return [
            (str(k), EvaluationContext(each_key=str(k), each_value=v))
            for k, v in block.for_each.items()
        ]
    return [(None, EvaluationContext())]


class GraphBuilder:
    """Builds a ResourceGraph from loaded definitions."""

    def __init__(self, variables: dict[str, Any] | None = None) -> None:
        self._variables = dict(variables or {})
        self._repeated_blocks: set[ResourceAddress] = set()

    def build(self, blocks: Iterable[ResourceBlock]) -> ResourceGraph:
        """Build the graph.

        Raises:
            DuplicateAddressError: If two nodes share an address.
            UnresolvedReferenceError: If a reference names no declared node.
            ParseError: If an expression is malformed.
        """
        graph = ResourceGraph()
        pending_depends: list[tuple[ResourceNode, list[str]]] = []
        blocks = list(blocks)

        for block in blocks:
            base = ResourceAddress(block.type, block.name)
            if block.count is not None or block.for_each is not None:
                self._repeated_blocks.add(base)

            for key, ctx in _instances(block):
                address = ResourceAddress(block.type, block.name, key)
                context = EvaluationContext(
                    variables=self._variables,
                    count_index=ctx.count_index,
                    each_key=ctx.each_key,
                    each_value=ctx.each_value,
                )
                try:
                    attributes = compile_value(block.attributes, context)
                except ExpressionError as e:
                    raise ParseError(f"{address}: {e}") from e
                except UnresolvedReferenceError as e:
                    raise UnresolvedReferenceError(f"{address}: {e}", e.reference) from e

                node = ResourceNode(
                    address=address,
                    attributes=attributes,
                    lifecycle=block.lifecycle,
                )
                graph.add_node(node)
                pending_depends.append((node, block.depends_on))

        for node, depends_on in pending_depends:
            self._link_references(graph, node)
            self._link_depends_on(graph, node, depends_on)

        logger.info(
            "Built resource graph",
            extra={"blocks": len(blocks), "nodes": len(graph.nodes), "edges": len(graph.edges)},
        )
        return graph

    def _link_references(self, graph: ResourceGraph, node: ResourceNode) -> None:
        for reference in node.references:
            target = reference.target
            if (
                not reference.splat
                and not target.is_instance
                and target in self._repeated_blocks
            ):
                raise UnresolvedReferenceError(
                    f"{node.address}: '{reference}' refers to a repeated block; "
                    f"use an index or [*]",
                    reference.expression,
                )
            targets = graph.resolve_targets(reference)
            if not targets and not (reference.splat and target.base in self._repeated_blocks):
                raise UnresolvedReferenceError(
                    f"{node.address}: reference '{reference}' names an undeclared resource",
                    reference.expression,
                )
            for dependency in targets:
                if dependency == node.address:
                    raise UnresolvedReferenceError(
                        f"{node.address}: resource references itself via '{reference}'",
                        reference.expression,
                    )
                graph.add_edge(Edge(node.address, dependency, EdgeKind.IMPLICIT))

    def _link_depends_on(
        self, graph: ResourceGraph, node: ResourceNode, depends_on: list[str]
    ) -> None:
        for raw in depends_on:
            try:
                target = ResourceAddress.parse(raw)
            except AddressError as e:
                raise ParseError(f"{node.address}: invalid dependsOn entry: {e}") from e

            if target.is_instance or target not in self._repeated_blocks:
                targets = [target] if target in graph else []
            else:
                targets = graph.instances_of(target)

            if not targets and (target.is_instance or target.base not in self._repeated_blocks):
                raise UnresolvedReferenceError(
                    f"{node.address}: dependsOn '{raw}' names an undeclared resource", raw
                )
            for dependency in targets:
                node.depends_on.append(dependency)
                graph.add_edge(Edge(node.address, dependency, EdgeKind.EXPLICIT))


def build_graph(definitions: LoadedDefinitions) -> ResourceGraph:
    """Build the desired-state graph from loaded definitions."""
    builder = GraphBuilder(definitions.variables)
    return builder.build(block for doc in definitions.documents for block in doc.resources)

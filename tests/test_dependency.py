"""Tests for dependency ordering."""

from __future__ import annotations

import random
from pathlib import Path

import pytest

from converge.address import ResourceAddress
from converge.dependency import CycleError, DependencyGraph, resolve_order
from converge.graph import GraphBuilder
from converge.spec_loader import parse_definition
from fake_cloud import NETWORK_STACK


def _position(order: list, node: object) -> int:
    return order.index(node)


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node_creates_dependencies(self) -> None:
        """Test that unknown dependencies are added as nodes."""
        graph = DependencyGraph()
        graph.add_node("firewall", ["hub"])

        assert graph.depends_on == {"firewall": {"hub"}, "hub": set()}
        assert len(graph) == 2

    def test_topological_sort(self) -> None:
        """Test that dependencies come first."""
        graph = DependencyGraph.from_mapping(
            {"app": ["db", "net"], "db": ["net"], "net": [], "dns": []}
        )

        assert graph.topological_sort() == ["dns", "net", "db", "app"]

    def test_ties_are_lexicographic(self) -> None:
        """Test that ready nodes are ordered by name."""
        graph = DependencyGraph.from_mapping({"c": [], "a": [], "b": []})

        assert graph.topological_sort() == ["a", "b", "c"]

    def test_empty_graph(self) -> None:
        """Test that an empty graph has an empty order."""
        assert DependencyGraph().topological_sort() == []

    def test_deterministic_across_insertion_order(self) -> None:
        """Test that the order does not depend on how nodes were added."""
        mapping = {"a": ["b"], "b": [], "c": ["b"], "d": ["a", "c"], "e": []}
        items = list(mapping.items())
        expected = DependencyGraph.from_mapping(mapping).topological_sort()

        rng = random.Random(7)
        for _ in range(10):
            rng.shuffle(items)
            assert DependencyGraph.from_mapping(dict(items)).topological_sort() == expected

    def test_random_acyclic_graphs(self) -> None:
        """Test the ordering property on generated acyclic graphs."""
        rng = random.Random(42)
        for _ in range(25):
            size = rng.randint(1, 30)
            nodes = [f"n{i:02d}" for i in range(size)]
            # Edges only point to earlier nodes, so the graph is acyclic
            mapping = {
                node: rng.sample(nodes[:i], rng.randint(0, min(i, 3)))
                for i, node in enumerate(nodes)
            }

            order = DependencyGraph.from_mapping(mapping).topological_sort()

            assert sorted(order) == nodes
            for node, deps in mapping.items():
                for dep in deps:
                    assert _position(order, dep) < _position(order, node)

    def test_two_node_cycle(self) -> None:
        """Test that a two-node cycle is named in order."""
        graph = DependencyGraph.from_mapping({"a": ["b"], "b": ["a"]})

        with pytest.raises(CycleError) as exc_info:
            graph.topological_sort()

        assert exc_info.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(exc_info.value)

    def test_cycle_behind_acyclic_part(self) -> None:
        """Test that nodes depending on a cycle are reported as involved."""
        graph = DependencyGraph.from_mapping(
            {"x": ["y"], "y": ["z"], "z": ["x"], "top": ["x"], "free": []}
        )

        with pytest.raises(CycleError) as exc_info:
            graph.validate()

        assert exc_info.value.cycle == ["x", "y", "z", "x"]
        assert exc_info.value.involved == ["top", "x", "y", "z"]

    def test_self_cycle(self) -> None:
        """Test a node depending on itself."""
        graph = DependencyGraph.from_mapping({"a": ["a"]})

        with pytest.raises(CycleError) as exc_info:
            graph.topological_sort()

        assert exc_info.value.cycle == ["a", "a"]

    def test_reverse_order(self) -> None:
        """Test that teardown order puts dependents first."""
        graph = DependencyGraph.from_mapping({"app": ["db"], "db": ["net"], "net": []})

        assert graph.reverse_order() == ["app", "db", "net"]

    def test_get_ready(self) -> None:
        """Test readiness as dependencies complete."""
        graph = DependencyGraph.from_mapping({"app": ["db", "net"], "db": ["net"], "net": []})

        assert graph.get_ready(set()) == ["net"]
        assert graph.get_ready({"net"}) == ["db"]
        assert graph.get_ready({"net"}, exclude={"db"}) == []
        assert graph.get_ready({"net", "db"}) == ["app"]
        assert graph.get_ready({"net", "db", "app"}) == []

    def test_transitive_dependents(self) -> None:
        """Test that dependents are collected through the whole chain."""
        graph = DependencyGraph.from_mapping(
            {"app": ["db"], "db": ["net"], "net": [], "dns": ["net"], "log": []}
        )

        assert graph.transitive_dependents("net") == {"db", "app", "dns"}
        assert graph.transitive_dependents("app") == set()


class TestResolveOrder:
    """Tests for resolve_order over resource graphs."""

    def test_network_stack_order(self) -> None:
        """Test the order of the sample stack."""
        document = parse_definition(NETWORK_STACK, Path("main.yaml"))[0]
        graph = GraphBuilder(document.variables).build(document.resources)

        order = [str(a) for a in resolve_order(graph)]

        assert order == [
            "fake_bucket.logs",
            "fake_network.main",
            "fake_subnet.app[0]",
            "fake_subnet.app[1]",
            "fake_vm.web",
        ]

    def test_cycle_in_definitions(self) -> None:
        """Test that a reference cycle names the addresses."""
        content = """
resources:
  - type: fake_bucket
    name: a
    attributes:
      name: "${fake_bucket.b.fqdn}"
  - type: fake_bucket
    name: b
    dependsOn: [fake_bucket.a]
"""
        document = parse_definition(content, Path("main.yaml"))[0]
        graph = GraphBuilder(document.variables).build(document.resources)

        with pytest.raises(CycleError) as exc_info:
            resolve_order(graph)

        assert exc_info.value.cycle == [
            ResourceAddress("fake_bucket", "a"),
            ResourceAddress("fake_bucket", "b"),
            ResourceAddress("fake_bucket", "a"),
        ]
        assert "fake_bucket.a -> fake_bucket.b -> fake_bucket.a" in str(exc_info.value)

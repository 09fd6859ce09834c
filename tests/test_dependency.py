"""Tests for resource dependency ordering."""

from __future__ import annotations

import pytest
from helpers import BUCKET, make_validated

from stack_controller.dependency import (
    DependencyGraph,
    DependencyNode,
    EdgeOrigin,
    build_dependency_graph,
)
from stack_controller.errors import CyclicDependency


def _ref(name: str) -> dict[str, str]:
    return {"Ref": name}


class TestDependencyNode:
    """Tests for DependencyNode dataclass."""

    def test_default_values(self) -> None:
        """Test default node values."""
        node = DependencyNode(name="A")
        assert node.name == "A"
        assert node.depends_on == set()


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node(self) -> None:
        """Test adding nodes."""
        graph = DependencyGraph()
        graph.add_node("Service", ["LogGroup"])

        assert "Service" in graph.nodes
        assert "LogGroup" in graph.nodes  # Auto-created
        assert graph.nodes["Service"].depends_on == {"LogGroup"}
        assert graph.origins[("LogGroup", "Service")] == {EdgeOrigin.REFERENCE}

    def test_validate_detects_cycle(self) -> None:
        """Test validation detects cycles and names their members."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])  # Cycle: a -> b -> c -> a
        graph.add_node("d", ["a"])  # Downstream of the cycle, not part of it

        with pytest.raises(CyclicDependency, match="Circular dependency") as exc_info:
            graph.validate()
        assert sorted(exc_info.value.cycle) == ["a", "b", "c"]

    def test_topological_sort(self) -> None:
        """Test dependencies come first."""
        graph = DependencyGraph()
        graph.add_node("firewall", ["network", "logs"])
        graph.add_node("network", ["logs"])
        graph.add_node("logs")

        assert graph.topological_sort() == ["logs", "network", "firewall"]

    def test_topological_sort_breaks_ties_by_name(self) -> None:
        """Test independent nodes are ordered by name, not insertion."""
        graph = DependencyGraph()
        for name in ("zeta", "alpha", "mid"):
            graph.add_node(name)

        assert graph.topological_sort() == ["alpha", "mid", "zeta"]

    def test_ranks(self) -> None:
        """Test rank is the longest path from a root."""
        graph = DependencyGraph()
        graph.add_node("a")
        graph.add_node("b", ["a"])
        graph.add_node("c", ["b"])
        graph.add_node("d", ["a", "c"])
        graph.add_node("e")

        assert graph.ranks() == {"a": 0, "b": 1, "c": 2, "d": 3, "e": 0}

    def test_get_ready_nodes(self) -> None:
        """Test readiness honours satisfied and excluded sets."""
        graph = DependencyGraph()
        graph.add_node("a")
        graph.add_node("b", ["a"])
        graph.add_node("c")

        assert graph.get_ready_nodes(set()) == ["a", "c"]
        assert graph.get_ready_nodes({"a"}, excluded={"c"}) == ["b"]

    def test_descendants_and_ordering(self) -> None:
        """Test reachability in either direction."""
        graph = DependencyGraph()
        graph.add_node("b", ["a"])
        graph.add_node("c", ["b"])
        graph.add_node("x")

        assert graph.descendants("a") == {"b", "c"}
        assert graph.dependents("a") == ["b"]
        assert graph.is_ordered("c", "a")
        assert not graph.is_ordered("a", "x")


class TestBuildDependencyGraph:
    """Tests for graph construction from a template."""

    def test_reference_and_explicit_edges(self) -> None:
        """Test Ref, GetAtt and DependsOn all add edges."""
        validated = make_validated(
            {
                "Logs": {"Type": BUCKET},
                "Bucket": {"Type": BUCKET},
                "Service": {
                    "Type": BUCKET,
                    "DependsOn": "Logs",
                    "Properties": {
                        "Target": _ref("Bucket"),
                        "Arn": {"Fn::GetAtt": ["Bucket", "Arn"]},
                        "Env": _ref("Env"),
                    },
                },
            },
            parameters={"Env": {"Type": "String", "Default": "dev"}},
        )
        graph = build_dependency_graph(validated)

        assert set(graph.nodes) == {"Logs", "Bucket", "Service"}
        assert graph.nodes["Service"].depends_on == {"Logs", "Bucket"}
        assert graph.origins[("Logs", "Service")] == {EdgeOrigin.EXPLICIT}
        assert graph.origins[("Bucket", "Service")] == {EdgeOrigin.REFERENCE}

    def test_redundant_depends_on_is_accepted(self) -> None:
        """Test a DependsOn that repeats a reference edge is harmless."""
        validated = make_validated(
            {
                "A": {"Type": BUCKET},
                "B": {"Type": BUCKET, "DependsOn": ["A"], "Properties": {"X": _ref("A")}},
            }
        )
        graph = build_dependency_graph(validated)

        assert graph.origins[("A", "B")] == {EdgeOrigin.REFERENCE, EdgeOrigin.EXPLICIT}
        assert graph.topological_sort() == ["A", "B"]

    def test_reference_cycle_names_both_members(self) -> None:
        """Test A -> B -> A is reported with both names."""
        validated = make_validated(
            {
                "A": {"Type": BUCKET, "Properties": {"X": _ref("B")}},
                "B": {"Type": BUCKET, "Properties": {"X": _ref("A")}},
            }
        )
        with pytest.raises(CyclicDependency) as exc_info:
            build_dependency_graph(validated)
        assert sorted(exc_info.value.names) == ["A", "B"]

    def test_self_reference(self) -> None:
        """Test a resource referencing itself is a cycle of one."""
        validated = make_validated({"A": {"Type": BUCKET, "Properties": {"X": _ref("A")}}})
        with pytest.raises(CyclicDependency) as exc_info:
            build_dependency_graph(validated)
        assert exc_info.value.cycle == ["A"]

    def test_self_depends_on(self) -> None:
        """Test DependsOn naming the resource itself fails."""
        validated = make_validated({"A": {"Type": BUCKET, "DependsOn": "A"}})
        with pytest.raises(CyclicDependency):
            build_dependency_graph(validated)

    def test_depends_on_contradicting_references(self) -> None:
        """Test an explicit hint against the reference order fails."""
        validated = make_validated(
            {
                "A": {"Type": BUCKET},
                "B": {"Type": BUCKET, "Properties": {"X": _ref("A")}},
                "C": {"Type": BUCKET, "Properties": {"X": _ref("B")}},
            }
        )
        validated.resources["A"].depends_on.append("C")

        with pytest.raises(CyclicDependency) as exc_info:
            build_dependency_graph(validated)
        assert sorted(exc_info.value.names) == ["A", "C"]

    def test_nexus_order(self) -> None:
        """Test the container service ordering through references and hints."""
        validated = make_validated(
            {
                "SecurityGroup": {"Type": BUCKET},
                "LoadBalancer": {"Type": BUCKET, "Properties": {"Groups": [_ref("SecurityGroup")]}},
                "LogGroup": {"Type": BUCKET},
                "TaskDefinition": {"Type": BUCKET, "Properties": {"Logs": _ref("LogGroup")}},
                "Service": {
                    "Type": BUCKET,
                    "DependsOn": "LogGroup",
                    "Properties": {
                        "TaskDefinition": _ref("TaskDefinition"),
                        "LoadBalancer": _ref("LoadBalancer"),
                    },
                },
                "DnsRecord": {
                    "Type": BUCKET,
                    "Properties": {"Target": {"Fn::GetAtt": ["LoadBalancer", "Arn"]}},
                },
            }
        )
        graph = build_dependency_graph(validated)

        assert graph.topological_sort() == [
            "LogGroup",
            "SecurityGroup",
            "LoadBalancer",
            "DnsRecord",
            "TaskDefinition",
            "Service",
        ]
        assert graph.ranks()["Service"] == 2

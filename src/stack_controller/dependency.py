"""Dependency graph construction, ordering and cycle detection.

This module implements dependency management for template resources:
1. Dependency graph construction from references and DependsOn declarations
2. Topological sorting for execution order
3. Cycle detection before any ordering is attempted
4. Rank (longest path from a root) for grouping independent work

DESIGN PHILOSOPHY:
- An edge A -> B means "A must be applied before B"
- Edges come from Ref/GetAtt expressions in B's properties and from B's
  explicit DependsOn list. DependsOn only adds edges; an explicit hint that
  closes a cycle with the reference edges is a contradiction and fails
- Ties between independent nodes are broken by name for determinism

The same graph type orders plan actions in the planner and executor.

EXAMPLE TEMPLATE:
```yaml
Service:
  Type: AWS::ECS::Service
  DependsOn: NexusLogGroup        # explicit edge NexusLogGroup -> Service
  Properties:
    TaskDefinition: !Ref TaskDefinition   # reference edge TaskDefinition -> Service
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .errors import CyclicDependency
from .expressions import iter_refs

if TYPE_CHECKING:
    from .validation import ValidatedTemplate

logger = logging.getLogger(__name__)


class EdgeOrigin(str, Enum):
    """Why an edge exists."""

    REFERENCE = "reference"  # Ref/GetAtt in a property value
    EXPLICIT = "explicit"  # DependsOn declaration


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: set[str] = field(default_factory=set)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of named nodes."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)
    origins: dict[tuple[str, str], set[EdgeOrigin]] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: Iterable[str] | None = None) -> None:
        """Add a node, or extend an existing node's dependencies.

        Args:
            name: Node name.
            depends_on: Names that must come before this node.
        """
        self.nodes.setdefault(name, DependencyNode(name=name))
        for dep in depends_on or ():
            self.add_edge(dep, name)

    def add_edge(
        self, before: str, after: str, origin: EdgeOrigin = EdgeOrigin.REFERENCE
    ) -> None:
        """Add an edge meaning ``before`` must come before ``after``."""
        self.nodes.setdefault(before, DependencyNode(name=before))
        self.nodes.setdefault(after, DependencyNode(name=after)).depends_on.add(before)
        self.origins.setdefault((before, after), set()).add(origin)

    def dependents(self, name: str) -> list[str]:
        """Nodes with a direct edge from ``name``."""
        return sorted(n.name for n in self.nodes.values() if name in n.depends_on)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependency: If a cycle is detected.
        """
        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {
            name: len(node.depends_on) for name, node in self.nodes.items()
        }
        dependents = self._dependents_map()

        queue = [name for name, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop()
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            remaining = {name for name, degree in in_degree.items() if degree > 0}
            raise CyclicDependency(self._find_cycle(remaining))

    def _dependents_map(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
        return dependents

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Return one concrete cycle among nodes left over by Kahn's algorithm."""
        # Every leftover node has a leftover dependency; walk them until a repeat
        start = min(candidates)
        path: list[str] = []
        position: dict[str, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = min(dep for dep in self.nodes[current].depends_on if dep in candidates)
        cycle = path[position[current] :]
        # Report in edge order (dependency first)
        cycle.reverse()
        return cycle

    def topological_sort(self) -> list[str]:
        """Return node names in dependency order (dependencies first).

        Raises:
            CyclicDependency: If a cycle is detected.
        """
        self.validate()

        in_degree: dict[str, int] = {
            name: len(node.depends_on) for name, node in self.nodes.items()
        }
        dependents = self._dependents_map()

        # Kahn's algorithm
        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def ranks(self) -> dict[str, int]:
        """Return the longest-path depth of each node (roots are rank 0)."""
        rank: dict[str, int] = {}
        for name in self.topological_sort():
            deps = self.nodes[name].depends_on
            rank[name] = 1 + max((rank[d] for d in deps), default=-1)
        return rank

    def get_ready_nodes(self, satisfied: set[str], excluded: set[str] | None = None) -> list[str]:
        """Get nodes whose dependencies are all satisfied.

        Args:
            satisfied: Names already completed.
            excluded: Names never to return (running, failed, aborted).

        Returns:
            Sorted names ready to run now.
        """
        excluded = excluded or set()
        ready = []
        for node in self.nodes.values():
            if node.name in satisfied or node.name in excluded:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.name)
        return sorted(ready)

    def descendants(self, name: str) -> set[str]:
        """All nodes reachable from ``name`` (transitive dependents)."""
        dependents = self._dependents_map()
        seen: set[str] = set()
        stack = list(dependents.get(name, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dependents[current])
        return seen

    def is_ordered(self, first: str, second: str) -> bool:
        """Check whether one node is reachable from the other."""
        return second in self.descendants(first) or first in self.descendants(second)


def build_dependency_graph(validated: ValidatedTemplate) -> DependencyGraph:
    """Build the resource dependency graph of a validated template.

    Args:
        validated: Template whose references are known to resolve.

    Returns:
        Acyclic dependency graph over resource logical names.

    Raises:
        CyclicDependency: If references and DependsOn declarations form a
            cycle, a resource references itself, or an explicit hint
            contradicts the reference edges.
    """
    resources = validated.resources
    reference_graph = DependencyGraph()
    graph = DependencyGraph()

    for name, resource in resources.items():
        reference_graph.add_node(name)
        graph.add_node(name)
        for ref in iter_refs(resource.properties):
            if ref.name not in resources:
                continue  # parameter or pseudo parameter
            if ref.name == name:
                raise CyclicDependency([name])
            reference_graph.add_edge(ref.name, name, EdgeOrigin.REFERENCE)
            graph.add_edge(ref.name, name, EdgeOrigin.REFERENCE)

    # Reference edges alone must already be acyclic
    reference_graph.validate()

    for name, resource in resources.items():
        for dep in resource.depends_on:
            if dep == name:
                raise CyclicDependency([name])
            if dep in reference_graph.descendants(name):
                # The hint says dep before name, references say name before dep
                logger.error(
                    "DependsOn contradicts reference ordering",
                    extra={"resource": name, "depends_on": dep},
                )
                raise CyclicDependency([name, dep])
            graph.add_edge(dep, name, EdgeOrigin.EXPLICIT)

    graph.validate()
    logger.debug(
        "Dependency graph built",
        extra={
            "nodes": len(graph.nodes),
            "edges": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph

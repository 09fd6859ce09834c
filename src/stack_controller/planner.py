"""Planner: diff desired resources against applied state.

The planner walks the resource dependency graph in topological order and
decides, per resource, one of Create / NoOp / Update / Replace. Applied
resources that are no longer declared, and replaced instances left over from
an interrupted run, become Delete actions. The result is a Plan: actions plus
the ordering edges the executor must respect.

DESIGN PHILOSOPHY:
- Plans are pure: no remote call and no state write happens here
- Values that are only known after apply (new identifiers, attributes of
  resources being created, replaced or updated) count as changes
- A Ref to a resource that is updated in place stays known; its identity is
  stable. A GetAtt to it is unknown
- Replacement ordering follows the type's policy; a physical name that stays
  the same forces delete-before-create because both instances cannot coexist
- Deletes run in reverse dependency order, after every desired resource that
  used to depend on the deleted one has been handled

ACTION KEYS:
- Desired resources use their logical name ("Service")
- The retired half of a replacement is "<name>#old"
- A leftover instance from an earlier replacement is "<name>#pending:<remote_id>"

COMPARISON RULES:
Stored snapshots are resolved values that went through JSON, so comparison
treats a missing property like None and "100" like 100.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dependency import DependencyGraph, build_dependency_graph
from .errors import PlanConflict
from .expressions import UNKNOWN, ResolutionContext, contains_unknown, resolve
from .resource_types import ReplacementPolicy, ResourceTypeSchema
from .state_store import AppliedState
from .validation import ValidatedTemplate

logger = logging.getLogger(__name__)

RETIRED_SUFFIX = "#old"
PENDING_PREFIX = "#pending:"
TYPE_PATH = "Type"


class ActionKind(str, Enum):
    """What an action does to its resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"  # Creates the new instance; the old one is a separate delete
    DELETE = "delete"
    NOOP = "noop"


MUTATING_KINDS = frozenset(
    {ActionKind.CREATE, ActionKind.UPDATE, ActionKind.REPLACE, ActionKind.DELETE}
)


@dataclass
class PropertyChange:
    """Difference in one top-level property."""

    path: str
    old: Any
    new: Any
    requires_replacement: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "old": _display(self.old),
            "new": _display(self.new),
            "requires_replacement": self.requires_replacement,
        }


@dataclass
class Action:
    """One step of a plan.

    Attributes:
        key: Unique key within the plan (see ACTION KEYS).
        kind: What the action does.
        name: Logical name of the resource.
        type: Resource type tag.
        changes: Property diff (empty for create, delete and noop).
        rank: Longest-path depth in the action graph.
        remote_id: Identifier the action targets. For update and delete this
            is the existing instance; for replace it is the instance being
            retired.
        prerequisites: Keys of actions that must succeed first.
        retired: True for deletes of replaced instances.
        replacement_policy: Effective ordering of a replacement.
        properties: Desired property expression tree, resolved again at
            execution time.
        depends_on: Resource dependencies recorded in state after apply.
    """

    key: str
    kind: ActionKind
    name: str
    type: str
    changes: list[PropertyChange] = field(default_factory=list)
    rank: int = 0
    remote_id: str | None = None
    prerequisites: list[str] = field(default_factory=list)
    retired: bool = False
    replacement_policy: ReplacementPolicy | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def is_mutating(self) -> bool:
        return self.kind in MUTATING_KINDS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "kind": self.kind.value,
            "name": self.name,
            "type": self.type,
            "rank": self.rank,
            "remote_id": self.remote_id,
            "prerequisites": list(self.prerequisites),
        }
        if self.changes:
            data["changes"] = [change.to_dict() for change in self.changes]
        if self.retired:
            data["retired"] = True
        if self.replacement_policy is not None:
            data["replacement_policy"] = self.replacement_policy.value
        return data


@dataclass
class Plan:
    """Ordered actions plus a preview of output values."""

    actions: list[Action] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Action | None:
        for action in self.actions:
            if action.key == key:
                return action
        return None

    def by_kind(self, kind: ActionKind) -> list[Action]:
        return [action for action in self.actions if action.kind == kind]

    @property
    def has_changes(self) -> bool:
        return any(action.is_mutating for action in self.actions)

    def summary(self) -> dict[str, int]:
        """Count actions per kind."""
        counts = {kind.value: 0 for kind in ActionKind}
        for action in self.actions:
            counts[action.kind.value] += 1
        return counts

    def action_graph(self) -> DependencyGraph:
        """Ordering graph over action keys."""
        graph = DependencyGraph()
        for action in self.actions:
            graph.add_node(action.key, action.prerequisites)
        return graph

    def to_dict(self) -> dict[str, Any]:
        return {
            "actions": [action.to_dict() for action in self.actions],
            "outputs": {name: _display(value) for name, value in self.outputs.items()},
            "parameters": dict(self.parameters),
            "summary": self.summary(),
        }


def _display(value: Any) -> Any:
    """Render UNKNOWN leaves for human and JSON output."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: _display(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_display(v) for v in value]
    return value


# =============================================================================
# Property comparison
# =============================================================================


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return value


def values_equal(old: Any, new: Any) -> bool:
    """Compare an applied value with a desired one.

    UNKNOWN is never equal to anything.
    """
    if contains_unknown(new):
        return False
    return _normalize(old) == _normalize(new)


def diff_properties(
    old: Mapping[str, Any], new: Mapping[str, Any], schema: ResourceTypeSchema
) -> list[PropertyChange]:
    """Top-level property differences, sorted by property name."""
    changes: list[PropertyChange] = []
    for path in sorted(set(old) | set(new)):
        before = old.get(path)
        after = new.get(path)
        if values_equal(before, after):
            continue
        changes.append(
            PropertyChange(
                path=path,
                old=before,
                new=after,
                requires_replacement=schema.requires_replacement(path),
            )
        )
    return changes


# =============================================================================
# Planner
# =============================================================================


def retired_key(name: str) -> str:
    return f"{name}{RETIRED_SUFFIX}"


def pending_key(name: str, remote_id: str) -> str:
    return f"{name}{PENDING_PREFIX}{remote_id}"


class Planner:
    """Compute plans for a validated template against applied state."""

    def plan(
        self,
        validated: ValidatedTemplate,
        applied: Mapping[str, AppliedState],
        graph: DependencyGraph | None = None,
    ) -> Plan:
        """Compute the plan that converges applied state to the template.

        Args:
            validated: Validated template with bound parameters.
            applied: Last-applied state keyed by logical name.
            graph: Resource dependency graph (built when omitted).

        Returns:
            Plan whose actions are sorted by rank, then logical name.

        Raises:
            CyclicDependency: If the template's resources form a cycle.
            PlanConflict: If two unordered actions mutate the same remote
                identifier.
        """
        if graph is None:
            graph = build_dependency_graph(validated)

        context = ResolutionContext(
            parameters=dict(validated.parameters),
            exports=validated.exports,
        )
        actions: dict[str, Action] = {}
        # Physical identity each mutating action targets, for conflict detection
        targets: dict[str, tuple[str, str]] = {}

        for name in graph.topological_sort():
            resource = validated.resources[name]
            schema = validated.registry.get(resource.type, name)
            prior = applied.get(name)
            desired = resolve(resource.properties, context, name)
            depends_on = sorted(graph.nodes[name].depends_on)

            action = Action(
                key=name,
                kind=ActionKind.NOOP,
                name=name,
                type=resource.type,
                properties=resource.properties,
                prerequisites=list(depends_on),
                depends_on=depends_on,
            )

            if prior is None:
                action.kind = ActionKind.CREATE
            elif prior.type != resource.type:
                action.kind = ActionKind.REPLACE
                action.changes = [
                    PropertyChange(TYPE_PATH, prior.type, resource.type, requires_replacement=True)
                ] + [
                    PropertyChange(c.path, c.old, c.new, requires_replacement=True)
                    for c in diff_properties(prior.properties, desired, schema)
                ]
            else:
                action.changes = diff_properties(prior.properties, desired, schema)
                if any(change.requires_replacement for change in action.changes):
                    action.kind = ActionKind.REPLACE
                elif action.changes:
                    action.kind = ActionKind.UPDATE

            if prior is not None:
                action.remote_id = prior.remote_id

            if action.kind == ActionKind.REPLACE:
                assert prior is not None
                action.replacement_policy = self._replacement_policy(
                    schema, prior, desired, has_dependents=bool(graph.dependents(name))
                )

            # Values dependents will see
            if action.kind in (ActionKind.CREATE, ActionKind.REPLACE):
                context.resource_ids[name] = UNKNOWN
                context.attributes[name] = UNKNOWN
            elif action.kind == ActionKind.UPDATE:
                assert prior is not None
                context.resource_ids[name] = prior.remote_id
                context.attributes[name] = UNKNOWN
            else:
                assert prior is not None
                context.resource_ids[name] = prior.remote_id
                context.attributes[name] = dict(prior.attributes)

            physical = self._physical_name(schema, desired)
            if action.kind in (ActionKind.CREATE, ActionKind.REPLACE) and physical is not None:
                targets[action.key] = (resource.type, physical)
            elif action.kind == ActionKind.UPDATE and action.remote_id is not None:
                targets[action.key] = (resource.type, action.remote_id)

            actions[action.key] = action

            if action.kind == ActionKind.REPLACE:
                assert prior is not None
                retired = Action(
                    key=retired_key(name),
                    kind=ActionKind.DELETE,
                    name=name,
                    type=prior.type,
                    remote_id=prior.remote_id,
                    retired=True,
                    replacement_policy=action.replacement_policy,
                )
                actions[retired.key] = retired
                targets[retired.key] = (prior.type, prior.remote_id)

        self._add_deletes(validated, applied, actions, targets)
        self._order_deletes(validated, applied, graph, actions)

        ordering = DependencyGraph()
        for action in actions.values():
            ordering.add_node(action.key, action.prerequisites)
        ranks = ordering.ranks()

        self._check_conflicts(ordering, targets)

        ordered: list[Action] = []
        for key in sorted(actions, key=lambda k: (ranks[k], k)):
            action = actions[key]
            action.rank = ranks[key]
            action.prerequisites = sorted(set(action.prerequisites))
            ordered.append(action)

        plan = Plan(
            actions=ordered,
            outputs=self._preview_outputs(validated, context),
            parameters=validated.display_parameters(),
        )
        logger.info(
            "Plan computed",
            extra={"actions": len(ordered), **{k: v for k, v in plan.summary().items() if v}},
        )
        return plan

    @staticmethod
    def _physical_name(schema: ResourceTypeSchema, desired: Mapping[str, Any]) -> str | None:
        if schema.name_property is None:
            return None
        value = desired.get(schema.name_property)
        if value in (None, "") or contains_unknown(value):
            return None
        return str(value)

    def _replacement_policy(
        self,
        schema: ResourceTypeSchema,
        prior: AppliedState,
        desired: Mapping[str, Any],
        has_dependents: bool,
    ) -> ReplacementPolicy:
        physical = self._physical_name(schema, desired)
        if (
            physical is not None
            and prior.type == schema.type_name
            and values_equal(prior.properties.get(schema.name_property or ""), physical)
        ):
            # Old and new instance would share a physical name
            return ReplacementPolicy.DELETE_BEFORE_CREATE
        if schema.replacement_policy == ReplacementPolicy.AUTO:
            return (
                ReplacementPolicy.CREATE_BEFORE_DELETE
                if has_dependents
                else ReplacementPolicy.DELETE_BEFORE_CREATE
            )
        return schema.replacement_policy

    def _add_deletes(
        self,
        validated: ValidatedTemplate,
        applied: Mapping[str, AppliedState],
        actions: dict[str, Action],
        targets: dict[str, tuple[str, str]],
    ) -> None:
        """Delete actions for removed resources and leftover instances."""
        for name in sorted(applied):
            state = applied[name]
            for remote_id in state.pending_deletion:
                leftover = Action(
                    key=pending_key(name, remote_id),
                    kind=ActionKind.DELETE,
                    name=name,
                    type=state.type,
                    remote_id=remote_id,
                    retired=True,
                )
                actions[leftover.key] = leftover
                targets[leftover.key] = (state.type, remote_id)

            if name in validated.resources:
                continue
            removed = Action(
                key=name,
                kind=ActionKind.DELETE,
                name=name,
                type=state.type,
                remote_id=state.remote_id,
            )
            # Leftovers go first so the state entry that lists them stays
            # until they are gone
            removed.prerequisites.extend(
                pending_key(name, remote_id) for remote_id in state.pending_deletion
            )
            actions[removed.key] = removed
            targets[removed.key] = (state.type, state.remote_id)

    def _order_deletes(
        self,
        validated: ValidatedTemplate,
        applied: Mapping[str, AppliedState],
        graph: DependencyGraph,
        actions: dict[str, Action],
    ) -> None:
        """Add ordering edges for every delete action."""
        # Who depended on whom when last applied
        former_dependents: dict[str, set[str]] = {}
        for name, state in applied.items():
            for dep in state.depends_on:
                former_dependents.setdefault(dep, set()).add(name)

        for action in actions.values():
            if action.kind != ActionKind.DELETE:
                continue
            name = action.name
            delete_first = action.replacement_policy == ReplacementPolicy.DELETE_BEFORE_CREATE

            waits_for: set[str] = set(former_dependents.get(name, set()))
            if delete_first:
                # The replacement waits for the old instance to go
                actions[name].prerequisites.append(action.key)
                waits_for &= set(applied) - set(validated.resources)
            elif name in validated.resources:
                # The new instance exists first and dependents move over to it
                waits_for.add(name)
                waits_for.update(graph.dependents(name))

            for other in sorted(waits_for):
                if other in validated.resources:
                    action.prerequisites.append(other)
                elif other in actions and actions[other].kind == ActionKind.DELETE:
                    # Removed resource that used to depend on this one
                    action.prerequisites.append(other)

    def _check_conflicts(
        self, ordering: DependencyGraph, targets: Mapping[str, tuple[str, str]]
    ) -> None:
        by_target: dict[tuple[str, str], list[str]] = {}
        for key, target in targets.items():
            by_target.setdefault(target, []).append(key)

        for (_, remote_id), keys in sorted(by_target.items()):
            keys.sort()
            for i, first in enumerate(keys):
                for second in keys[i + 1 :]:
                    if not ordering.is_ordered(first, second):
                        logger.error(
                            "Unordered actions target the same remote identifier",
                            extra={"remote_id": remote_id, "actions": [first, second]},
                        )
                        raise PlanConflict(remote_id, [first, second])

    @staticmethod
    def _preview_outputs(
        validated: ValidatedTemplate, context: ResolutionContext
    ) -> dict[str, Any]:
        return {
            name: resolve(output.value, context, name)
            for name, output in validated.template.outputs.items()
        }


def compute_plan(
    validated: ValidatedTemplate,
    applied: Mapping[str, AppliedState],
    graph: DependencyGraph | None = None,
) -> Plan:
    """Convenience wrapper around Planner().plan()."""
    return Planner().plan(validated, applied, graph)

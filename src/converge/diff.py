"""Diff engine: desired graph vs. state snapshot.

For each address present in the desired graph and/or the snapshot the
engine emits one action:

- ``no-op``: attributes semantically unchanged
- ``create``: address absent from the snapshot
- ``update``: changed attributes that can be mutated in place
- ``replace``: a changed attribute is immutable per provider schema, or
  the record is tainted
- ``delete``: address in the snapshot but not in the desired graph

A create-before-delete replace leaves the old object *deposed*; its
deletion is a separate action keyed ``<address>#deposed`` that waits for
every dependent to move to the new object.

The engine never mutates the snapshot it receives. Planning is pure: the
same graph against the same snapshot always yields the same plan, and a
plan computed right after a successful apply is all no-op.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .address import ResourceAddress
from .dependency import DependencyGraph
from .expressions import (
    UNKNOWN,
    Reference,
    UnresolvedReferenceError,
    resolve_value,
    to_display,
    traverse,
)
from .graph import EdgeKind, ResourceGraph, ResourceNode
from .models import ReplaceStrategy, ResourceTypeSchema
from .normalizer import DiffNormalizer, glob_match
from .provider import ProviderRegistry
from .state import ResourceRecord, StateSnapshot

logger = logging.getLogger(__name__)

DEPOSED_SUFFIX = "#deposed"


class ActionType(str, Enum):
    """Classification of a planned action."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class AttributeChange:
    """One entry of an attribute delta."""

    path: str
    before: Any
    after: Any
    requires_replace: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "before": to_display(self.before),
            "after": to_display(self.after),
            "requires_replace": self.requires_replace,
        }


@dataclass
class PlannedAction:
    """A single step of a plan.

    Attributes:
        key: Unique action key (the address, or ``<address>#deposed``).
        address: Resource address the action applies to.
        resource_type: Resource type name.
        action: Classification.
        changes: Minimal attribute delta.
        replace_strategy: Ordering of a replace, None otherwise.
        requires: Keys of the actions this one must wait for.
        node: Desired node (None for deletions).
        deposed: True for the deletion of deposed objects.
        reason: Human-readable explanation of the classification.
    """

    key: str
    address: ResourceAddress
    resource_type: str
    action: ActionType
    changes: list[AttributeChange] = field(default_factory=list)
    replace_strategy: ReplaceStrategy | None = None
    requires: list[str] = field(default_factory=list)
    node: ResourceNode | None = field(default=None, repr=False)
    deposed: bool = False
    reason: str = ""

    @property
    def is_change(self) -> bool:
        return self.action != ActionType.NO_OP

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "key": self.key,
            "address": str(self.address),
            "type": self.resource_type,
            "action": self.action.value,
            "requires": list(self.requires),
            "changes": [c.to_dict() for c in self.changes],
        }
        if self.replace_strategy is not None:
            result["replace_strategy"] = self.replace_strategy.value
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass
class Plan:
    """Ordered list of actions.

    Desired-graph actions come first, in dependency order, followed by
    deletions in reverse dependency order.
    """

    actions: list[PlannedAction] = field(default_factory=list)
    graph: ResourceGraph | None = field(default=None, repr=False)
    destroy: bool = False

    def __iter__(self) -> Iterator[PlannedAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def get(self, key: str) -> PlannedAction | None:
        for action in self.actions:
            if action.key == key:
                return action
        return None

    @property
    def keys(self) -> list[str]:
        return [a.key for a in self.actions]

    @property
    def changes(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.is_change]

    @property
    def has_changes(self) -> bool:
        return any(a.is_change for a in self.actions)

    def summary(self) -> dict[str, int]:
        counts = Counter(a.action.value for a in self.actions)
        return {t.value: counts.get(t.value, 0) for t in ActionType}

    def to_dict(self) -> dict[str, Any]:
        return {
            "destroy": self.destroy,
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions],
        }


def deposed_key(address: ResourceAddress | str) -> str:
    return f"{address}{DEPOSED_SUFFIX}"


def record_value(record: ResourceRecord, path: tuple, expression: str = "") -> Any:
    """Value of a reference path inside an applied record.

    ``id`` (or an empty path) is the provider identifier; other paths look
    into provider outputs first, then applied attributes.
    """
    if not path or path == ("id",):
        if record.provider_id is None:
            raise UnresolvedReferenceError(
                f"'{expression or record.address}' has no provider identifier",
                reference=expression,
            )
        return record.provider_id
    head = path[0]
    source = record.outputs if head in record.outputs else record.attributes
    return traverse(source, path, expression)


def resolve_reference(
    reference: Reference,
    graph: ResourceGraph,
    value_of: Callable[[ResourceAddress, Reference], Any],
) -> Any:
    """Resolve a reference to one value, or a list for splat references."""
    if reference.splat:
        return [value_of(address, reference) for address in graph.resolve_targets(reference)]
    return value_of(reference.target, reference)


def matches_ignore(path: str, patterns: list[str]) -> bool:
    """True if ``path`` or one of its parents matches an ignoreChanges pattern."""
    parts = path.split(".")
    for i in range(1, len(parts) + 1):
        prefix = ".".join(parts[:i])
        if any(glob_match(prefix, pattern) for pattern in patterns):
            return True
    return False


def merge_ignored(desired: Any, prior: Any, patterns: list[str], path: str = "") -> Any:
    """Keep prior values at ignored paths so they are never sent as changes."""
    if not patterns or not isinstance(desired, dict):
        return desired
    prior_dict = prior if isinstance(prior, dict) else {}
    merged: dict[str, Any] = {}
    for key in sorted(set(desired) | set(prior_dict)):
        child = f"{path}.{key}" if path else key
        if matches_ignore(child, patterns):
            if key in prior_dict:
                merged[key] = prior_dict[key]
            elif key in desired:
                merged[key] = desired[key]
        elif key in desired:
            merged[key] = merge_ignored(desired[key], prior_dict.get(key), patterns, child)
    return merged


class DiffEngine:
    """Compares a desired graph against a read-only state snapshot."""

    def __init__(
        self, registry: ProviderRegistry, normalizer: DiffNormalizer | None = None
    ) -> None:
        self._registry = registry
        self._normalizer = normalizer or DiffNormalizer(rules=registry.normalization_rules())

    # -------------------------------------------------------------------------
    # Apply plans
    # -------------------------------------------------------------------------

    def plan(
        self,
        graph: ResourceGraph,
        order: list[ResourceAddress],
        snapshot: StateSnapshot,
    ) -> Plan:
        """Compute the plan that moves the snapshot to the desired graph.

        Args:
            graph: Desired-state graph.
            order: Topological order of the graph's nodes.
            snapshot: Read-only state snapshot.

        Returns:
            The plan, desired actions in ``order`` followed by deletions.

        Raises:
            UnknownResourceTypeError: If a type has no provider.
            UnresolvedReferenceError: If a reference path does not exist in
                an unchanged dependency.
            CycleError: If action ordering constraints form a cycle.
        """
        self._registry.validate_types({a.type for a in graph.nodes})

        actions: dict[str, PlannedAction] = {}
        planned_values: dict[ResourceAddress, tuple[ActionType, dict[str, Any]]] = {}

        for address in order:
            node = graph.nodes[address]
            record = snapshot.get(address)
            desired = self._desired_attributes(node, graph, snapshot, planned_values)
            action = self._classify(node, record, desired, graph, snapshot)
            action.requires = sorted(str(dep) for dep in graph.dependencies_of(address))
            actions[action.key] = action
            planned_values[address] = (action.action, desired)

        desired_addresses = {str(a) for a in graph.nodes}
        orphans = [addr for addr in snapshot.addresses if addr not in desired_addresses]
        deletes = self._delete_actions(orphans, snapshot)

        # Deposed objects: new replacements and leftovers from interrupted runs
        deposed_actions: list[PlannedAction] = []
        for address in order:
            action = actions[str(address)]
            record = snapshot.get(address)
            left_over = record is not None and bool(record.deposed)
            is_cbd = (
                action.action == ActionType.REPLACE
                and action.replace_strategy == ReplaceStrategy.CREATE_BEFORE_DELETE
            )
            if not (is_cbd or left_over):
                continue
            requires = {str(address)}
            requires.update(str(d) for d in graph.dependents_of(address))
            requires.update(
                d.key for d in deletes if self._record_depends_on(snapshot, d.key, str(address))
            )
            deposed_actions.append(
                PlannedAction(
                    key=deposed_key(address),
                    address=address,
                    resource_type=address.type,
                    action=ActionType.DELETE,
                    requires=sorted(requires),
                    deposed=True,
                    reason="delete deposed object after replacement",
                )
            )

        # Orphans still referenced by a desired node's last applied state go
        # after that node has moved on; a delete-before-create replace waits
        # for orphans that depend on the object it deletes.
        for delete in deletes:
            for address in order:
                if self._record_depends_on(snapshot, str(address), delete.key):
                    delete.requires.append(str(address))
            delete.requires = sorted(set(delete.requires))
        for address in order:
            action = actions[str(address)]
            if (
                action.action == ActionType.REPLACE
                and action.replace_strategy == ReplaceStrategy.DELETE_BEFORE_CREATE
            ):
                extra = [
                    d.key
                    for d in deletes
                    if self._record_depends_on(snapshot, d.key, str(address))
                ]
                action.requires = sorted(set(action.requires) | set(extra))

        plan = Plan(
            actions=list(actions.values()) + deletes + deposed_actions,
            graph=graph,
        )
        self._validate_ordering(plan)

        logger.info("Computed plan", extra={"summary": plan.summary()})
        return plan

    def _desired_attributes(
        self,
        node: ResourceNode,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        planned_values: dict[ResourceAddress, tuple[ActionType, dict[str, Any]]],
    ) -> dict[str, Any]:
        """Resolve templates with the values known at planning time."""

        def value_of(address: ResourceAddress, reference: Reference) -> Any:
            action, desired = planned_values[address]
            record = snapshot.get(address)
            path = reference.path

            if action in (ActionType.CREATE, ActionType.REPLACE) or record is None:
                if not path or path == ("id",):
                    return UNKNOWN
                if path[0] in desired:
                    return traverse(desired, path, reference.expression)
                return UNKNOWN

            if action == ActionType.UPDATE and path and path != ("id",):
                if path[0] not in record.outputs and path[0] in desired:
                    return traverse(desired, path, reference.expression)
            return record_value(record, path, reference.expression)

        return resolve_value(
            node.attributes, lambda ref: resolve_reference(ref, graph, value_of)
        )

    def _classify(
        self,
        node: ResourceNode,
        record: ResourceRecord | None,
        desired: dict[str, Any],
        graph: ResourceGraph,
        snapshot: StateSnapshot,
    ) -> PlannedAction:
        schema = self._registry.schema_for(node.resource_type)
        action = PlannedAction(
            key=str(node.address),
            address=node.address,
            resource_type=node.resource_type,
            action=ActionType.NO_OP,
            node=node,
        )

        if record is None:
            action.action = ActionType.CREATE
            action.changes = [
                AttributeChange(path=key, before=None, after=value)
                for key, value in sorted(desired.items())
            ]
            return action

        changes = self._delta(
            record.attributes, desired, schema, node.lifecycle.ignore_changes
        )
        action.changes = changes

        if record.tainted:
            action.action = ActionType.REPLACE
            action.reason = "tainted by a failed operation"
        elif any(c.requires_replace for c in changes):
            action.action = ActionType.REPLACE
            immutable = [c.path for c in changes if c.requires_replace]
            action.reason = f"immutable attribute(s) changed: {', '.join(immutable)}"
        elif changes:
            action.action = ActionType.UPDATE
        else:
            return action

        if action.action == ActionType.REPLACE:
            action.replace_strategy = self._replace_strategy(node, schema, graph, snapshot)
        return action

    def _replace_strategy(
        self,
        node: ResourceNode,
        schema: ResourceTypeSchema,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
    ) -> ReplaceStrategy:
        if schema.replace_strategy != ReplaceStrategy.AUTO:
            return schema.replace_strategy
        if node.lifecycle.create_before_destroy is not None:
            if node.lifecycle.create_before_destroy:
                return ReplaceStrategy.CREATE_BEFORE_DELETE
            return ReplaceStrategy.DELETE_BEFORE_CREATE

        # An existing dependent still points at the old identifier
        for edge in graph.edges:
            if (
                edge.dependency == node.address
                and edge.kind == EdgeKind.IMPLICIT
                and edge.dependent in snapshot
            ):
                return ReplaceStrategy.CREATE_BEFORE_DELETE
        return ReplaceStrategy.DELETE_BEFORE_CREATE

    def _delta(
        self,
        before: dict[str, Any],
        after: dict[str, Any],
        schema: ResourceTypeSchema,
        ignore_changes: list[str],
    ) -> list[AttributeChange]:
        """Minimal attribute delta after normalization and ignoreChanges."""
        changes: list[AttributeChange] = []
        for key in sorted(set(before) | set(after)):
            self._delta_value(before.get(key), after.get(key), schema, key, changes)
        if ignore_changes:
            changes = [c for c in changes if not matches_ignore(c.path, ignore_changes)]
        return changes

    def _delta_value(
        self,
        before: Any,
        after: Any,
        schema: ResourceTypeSchema,
        path: str,
        out: list[AttributeChange],
    ) -> None:
        equivalent, _ = self._normalizer.are_equivalent(before, after, schema.type_name, path)
        if equivalent:
            return
        if isinstance(before, dict) and isinstance(after, dict):
            for key in sorted(set(before) | set(after)):
                self._delta_value(
                    before.get(key), after.get(key), schema, f"{path}.{key}", out
                )
            return
        out.append(
            AttributeChange(
                path=path,
                before=before,
                after=after,
                requires_replace=schema.is_immutable(path),
            )
        )

    # -------------------------------------------------------------------------
    # Deletions
    # -------------------------------------------------------------------------

    @staticmethod
    def _record_depends_on(snapshot: StateSnapshot, dependent: str, dependency: str) -> bool:
        record = snapshot.get(dependent)
        return record is not None and dependency in record.dependencies

    def _delete_actions(
        self, addresses: list[str], snapshot: StateSnapshot
    ) -> list[PlannedAction]:
        """Delete actions in reverse dependency order of the recorded state."""
        members = set(addresses)
        records: dict[str, ResourceRecord] = {}
        for address in addresses:
            record = snapshot.get(address)
            if record is None:
                raise ValueError(f"Cannot plan the deletion of {address}: no state record")
            records[address] = record

        recorded = DependencyGraph()
        for address, record in records.items():
            recorded.add_node(address, [d for d in record.dependencies if d in members])

        actions: list[PlannedAction] = []
        for address in recorded.reverse_order():
            record = records[address]
            dependents = sorted(
                other
                for other in addresses
                if self._record_depends_on(snapshot, other, address)
            )
            actions.append(
                PlannedAction(
                    key=address,
                    address=ResourceAddress.parse(address),
                    resource_type=record.type,
                    action=ActionType.DELETE,
                    changes=[
                        AttributeChange(path=key, before=value, after=None)
                        for key, value in sorted(record.attributes.items())
                    ],
                    requires=dependents,
                    reason="not in desired state",
                )
            )
        return actions

    def plan_destroy(self, snapshot: StateSnapshot) -> Plan:
        """Plan the deletion of every record, in reverse dependency order."""
        self._registry.validate_types({r.type for r in snapshot.resources.values()})
        plan = Plan(actions=self._delete_actions(snapshot.addresses, snapshot), destroy=True)
        self._validate_ordering(plan)
        logger.info("Computed destroy plan", extra={"summary": plan.summary()})
        return plan

    @staticmethod
    def _validate_ordering(plan: Plan) -> None:
        """Raises CycleError if action ordering constraints are cyclic."""
        keys = set(plan.keys)
        ordering = DependencyGraph()
        for action in plan.actions:
            action.requires = [k for k in action.requires if k in keys]
            ordering.add_node(action.key, action.requires)
        ordering.validate()

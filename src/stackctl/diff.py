"""Diff engine: desired graph versus applied state.

For each declared node the resolved desired properties are compared with the
last-applied snapshot:

- no snapshot                                -> Create
- differences only in mutable properties     -> Update
- a replacement-triggering property differs  -> Replace
- snapshot for a node no longer declared     -> Delete

Which properties trigger replacement is capability-table data supplied by the
provider. A property carrying a deferred value (its source is being created
or replaced in this run) always counts as changed.

Comparison normalizes syntactically different but equivalent values:
"30" == 30, "true" == True, missing == None, mapping key order ignored.
Strings are never compared as numbers with other strings.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .capabilities import CapabilityTable
from .errors import ValidationError
from .graph import ResourceGraph
from .planner import DependencyPlanner
from .references import DeferredValue, ReferenceResolver, ResolvedValue
from .state import AppliedState, ResourceState

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    """Kinds of change in a change set."""

    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"


class ReplaceStrategy(str, Enum):
    """Order of the two halves of a replacement."""

    CREATE_BEFORE_DELETE = "create_before_delete"
    DELETE_BEFORE_CREATE = "delete_before_create"


@dataclass
class Change:
    """One operation of a change set.

    Attributes:
        logical_id: Target node.
        action: Kind of change.
        resource_type: Desired type (prior type for Delete).
        desired: Resolved desired properties; None for Delete.
        prior: Applied snapshot the change was computed against.
        changed_properties: Properties that differ (all for Create).
        replacement_reasons: Changed properties that force replacement.
        strategy: For Replace, the order of create and delete.
        depends_on: Dependencies used for scheduling (desired graph, or
            the applied snapshot for Delete).
    """

    logical_id: str
    action: ChangeAction
    resource_type: str
    desired: dict[str, ResolvedValue | DeferredValue] | None = None
    prior: ResourceState | None = None
    changed_properties: list[str] = field(default_factory=list)
    replacement_reasons: list[str] = field(default_factory=list)
    strategy: ReplaceStrategy | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def deferred_properties(self) -> list[str]:
        if not self.desired:
            return []
        return [k for k, v in self.desired.items() if isinstance(v, DeferredValue)]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "logical_id": self.logical_id,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "changed_properties": self.changed_properties,
        }
        if self.prior is not None:
            data["physical_id"] = self.prior.physical_id
        if self.replacement_reasons:
            data["replacement_reasons"] = self.replacement_reasons
        if self.strategy is not None:
            data["strategy"] = self.strategy.value
        if self.deferred_properties:
            data["deferred_properties"] = self.deferred_properties
        return data


@dataclass
class ChangeSet:
    """Ordered changes: creates/updates/replaces first, then deletes."""

    changes: list[Change] = field(default_factory=list)

    def __iter__(self):
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def get(self, logical_id: str) -> Change | None:
        return next((c for c in self.changes if c.logical_id == logical_id), None)

    def logical_ids(self) -> list[str]:
        return [c.logical_id for c in self.changes]

    def counts(self) -> dict[str, int]:
        counter = Counter(c.action.value for c in self.changes)
        return {action.value: counter.get(action.value, 0) for action in ChangeAction}

    def to_dict(self) -> dict[str, Any]:
        return {"changes": [c.to_dict() for c in self.changes], "counts": self.counts()}


def _renderings(value: bool | int | float) -> set[str]:
    """Strings a template may use for a scalar the provider returns typed."""
    if isinstance(value, bool):
        return {"true", "True"} if value else {"false", "False"}
    if isinstance(value, int):
        return {str(value)}
    if math.isnan(value) or math.isinf(value):
        return set()
    if value.is_integer():
        return {repr(value), str(int(value))}
    return {repr(value)}


def values_equal(left: Any, right: Any) -> bool:
    """Compare property values, ignoring syntax-only differences.

    Strings compare verbatim with strings. A string equals a number or
    boolean only when it is that value's canonical rendering, so "30" equals
    30 but "030" and "30.0" do not.
    """
    if isinstance(left, dict) and isinstance(right, dict):
        keys = {k for k, v in left.items() if v is not None}
        keys |= {k for k, v in right.items() if v is not None}
        return all(values_equal(left.get(k), right.get(k)) for k in keys)
    if isinstance(left, list | tuple) and isinstance(right, list | tuple):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, str) or isinstance(right, str):
        text, other = (left, right) if isinstance(left, str) else (right, left)
        if isinstance(other, bool | int | float):
            return text in _renderings(other)
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if isinstance(left, float) and isinstance(right, float) and math.isnan(left):
        return math.isnan(right)
    return left == right


class DiffEngine:
    """Computes change sets from a resolved graph and applied state."""

    def __init__(self, capabilities: CapabilityTable) -> None:
        self._capabilities = capabilities

    def diff(
        self,
        graph: ResourceGraph,
        order: list[str],
        resolver: ReferenceResolver,
        applied: AppliedState,
    ) -> ChangeSet:
        """Produce the change set.

        Args:
            graph: Desired graph (references already annotated).
            order: Planner order of ``graph`` (dependencies first).
            resolver: Resolver bound to ``graph``.
            applied: Last-applied state.

        Raises:
            ValidationError: If resolved properties break a capability rule.
        """
        changes: list[Change] = []
        pending: set[str] = set()
        problems: list[str] = []

        for logical_id in order:
            node = graph.nodes[logical_id]
            prior = applied.resources.get(logical_id)
            desired = resolver.resolve_properties(logical_id, applied.resources, pending)
            row = self._capabilities.get(node.resource_type)

            complete = {k: v.value for k, v in desired.items() if isinstance(v, ResolvedValue)}
            if len(complete) == len(desired):
                problems.extend(
                    f"{logical_id}: {p}" for p in row.validate_properties(complete)
                )

            change = self._compare(logical_id, node.resource_type, desired, prior)
            if change is None:
                continue
            change.depends_on = node.dependencies
            if change.action in (ChangeAction.CREATE, ChangeAction.REPLACE):
                pending.add(logical_id)
            changes.append(change)

        if problems:
            raise ValidationError("Resource properties violate type constraints", problems)

        removed = [lid for lid in applied.resources if lid not in graph.nodes]
        for logical_id in DependencyPlanner.deletion_order(removed, applied.dependencies()):
            prior = applied.resources[logical_id]
            changes.append(
                Change(
                    logical_id=logical_id,
                    action=ChangeAction.DELETE,
                    resource_type=prior.resource_type,
                    prior=prior,
                    depends_on=list(prior.depends_on),
                )
            )

        change_set = ChangeSet(changes)
        logger.info(
            "Computed change set",
            extra={"counts": change_set.counts(), "order": change_set.logical_ids()},
        )
        return change_set

    def _compare(
        self,
        logical_id: str,
        resource_type: str,
        desired: dict[str, ResolvedValue | DeferredValue],
        prior: ResourceState | None,
    ) -> Change | None:
        if prior is None:
            return Change(
                logical_id=logical_id,
                action=ChangeAction.CREATE,
                resource_type=resource_type,
                desired=desired,
                changed_properties=sorted(desired),
            )

        row = self._capabilities.get(resource_type)

        if prior.resource_type != resource_type:
            return Change(
                logical_id=logical_id,
                action=ChangeAction.REPLACE,
                resource_type=resource_type,
                desired=desired,
                prior=prior,
                changed_properties=sorted(set(desired) | set(prior.properties)),
                replacement_reasons=["Type"],
                strategy=self._strategy(row.name_property, desired, prior),
            )

        changed: list[str] = []
        for name in sorted(set(desired) | set(prior.properties)):
            wanted = desired.get(name)
            if isinstance(wanted, DeferredValue):
                changed.append(name)
                continue
            wanted_value = wanted.value if wanted is not None else None
            if not values_equal(wanted_value, prior.properties.get(name)):
                changed.append(name)

        if not changed:
            return None

        reasons = [name for name in changed if row.requires_replacement(name)]
        if reasons:
            return Change(
                logical_id=logical_id,
                action=ChangeAction.REPLACE,
                resource_type=resource_type,
                desired=desired,
                prior=prior,
                changed_properties=changed,
                replacement_reasons=reasons,
                strategy=self._strategy(row.name_property, desired, prior),
            )

        return Change(
            logical_id=logical_id,
            action=ChangeAction.UPDATE,
            resource_type=resource_type,
            desired=desired,
            prior=prior,
            changed_properties=changed,
        )

    @staticmethod
    def _strategy(
        name_property: str | None,
        desired: dict[str, ResolvedValue | DeferredValue],
        prior: ResourceState,
    ) -> ReplaceStrategy:
        """Create first unless the pinned name would collide."""
        if name_property is None:
            return ReplaceStrategy.CREATE_BEFORE_DELETE
        wanted = desired.get(name_property)
        if isinstance(wanted, ResolvedValue) and wanted.value is not None:
            if values_equal(wanted.value, prior.properties.get(name_property)):
                return ReplaceStrategy.DELETE_BEFORE_CREATE
        return ReplaceStrategy.CREATE_BEFORE_DELETE

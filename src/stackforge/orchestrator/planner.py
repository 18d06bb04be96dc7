"""Planner: diff the desired graph against recorded state and order the actions."""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone

from stackforge.orchestrator.dependency_graph import DependencyGraph, EdgeKind
from stackforge.orchestrator.references import (
    UNKNOWN,
    Reference,
    contains_unknown,
    substitute,
    walk_path,
)
from stackforge.orchestrator.resources import DesiredGraph, Output, Resource
from stackforge.provisioners.base import ChangeType, ResourceSchema
from stackforge.state.models import RemoteState, ResourceState
from stackforge.utils.errors import (
    ErrorContext,
    PlanConflictError,
    UnresolvedReferenceError,
    ValidationError,
)
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)

_ABSENT = object()


@dataclass
class AttributeDiff:
    """One top-level attribute that differs between state and configuration."""

    path: str
    before: Any
    after: Any
    forces_replacement: bool = False


@dataclass
class PlannedAction:
    """A single create, update, replace or delete."""

    address: str
    change_type: ChangeType
    resource: Optional[Resource] = None
    prior: Optional[ResourceState] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    diffs: List[AttributeDiff] = field(default_factory=list)
    wait_for: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def resource_type(self) -> str:
        return self.resource.type if self.resource else self.prior.type

    @property
    def changed_attributes(self) -> List[str]:
        return [diff.path for diff in self.diffs]


@dataclass
class Plan:
    """Ordered actions plus everything apply needs to check and finish them."""

    actions: List[PlannedAction]
    unchanged: List[str] = field(default_factory=list)
    state_serial: int = 0
    outputs: Dict[str, Output] = field(default_factory=dict)
    destroy: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get_action(self, address: str) -> Optional[PlannedAction]:
        for action in self.actions:
            if action.address == address:
                return action
        return None

    def get_changes_by_type(self, change_type: ChangeType) -> List[PlannedAction]:
        """Get all actions of a specific type."""
        return [action for action in self.actions if action.change_type == change_type]

    def is_empty(self) -> bool:
        return not self.actions

    def summary(self) -> Dict[str, int]:
        """Get a summary of actions by type."""
        summary = {
            'create': 0,
            'update': 0,
            'replace': 0,
            'delete': 0,
            'no_change': len(self.unchanged),
        }
        for action in self.actions:
            summary[action.change_type.value] += 1
        return summary


class Planner:
    """Creates apply and destroy plans.

    Planning is pure: it reads the desired graph and a state snapshot and
    never talks to the provider. The same inputs always give the same plan.
    """

    def __init__(self, schemas: Dict[str, ResourceSchema]):
        """Initialize planner.

        Args:
            schemas: Provider schema for every supported resource type
        """
        self.schemas = schemas
        self.logger = get_logger(__name__)

    def validate(self, graph: DesiredGraph) -> None:
        """Check every resource against its provider schema.

        Raises:
            ValidationError: Unsupported type or missing required attribute
        """
        for resource in graph.ordered():
            schema = self.schemas.get(resource.type)
            if schema is None:
                raise ValidationError(
                    f"Unsupported resource type '{resource.type}' for {resource.address}",
                    context=ErrorContext(resource_id=resource.address, resource_type=resource.type),
                    suggestions=[f"Supported types: {', '.join(sorted(self.schemas))}"]
                )
            missing = sorted(name for name in schema.required if name not in resource.attributes)
            if missing:
                raise ValidationError(
                    f"{resource.address} is missing required attribute(s): {', '.join(missing)}",
                    resource_id=resource.address
                )

    def create_plan(self, graph: DesiredGraph, state: RemoteState) -> Plan:
        """Compare desired resources with recorded state.

        Raises:
            ValidationError: If the graph does not fit the provider schemas
            PlanConflictError: If two resources collide on a unique attribute
        """
        self.logger.info("Creating plan...")
        self.validate(graph)

        actions: Dict[str, PlannedAction] = {}
        planned: Dict[str, Dict[str, Any]] = {}
        unchanged: List[str] = []

        # Dependencies first, so references see their target's planned action
        for address in graph.creation_order():
            resource = graph.get(address)
            attributes = substitute(
                resource.attributes,
                lambda ref: self._resolve(address, ref, graph, state, actions, planned)
            )
            planned[address] = attributes

            action = self._diff(resource, attributes, state.get_resource(address))
            if action is None:
                unchanged.append(address)
            else:
                actions[address] = action

        self._check_conflicts(graph, planned)

        orphans = [record for record in state.ordered_resources() if record.address not in graph]
        for record in orphans:
            actions[record.address] = PlannedAction(
                address=record.address,
                change_type=ChangeType.DELETE,
                prior=record,
                reason="Resource no longer in configuration"
            )

        ordering = self._order(graph, state, actions, orphans)
        plan = Plan(
            actions=[actions[address] for address in ordering],
            unchanged=sorted(unchanged, key=lambda a: graph.get(a).index),
            state_serial=state.serial,
            outputs=dict(graph.outputs),
        )

        summary = plan.summary()
        self.logger.info(
            f"Plan created: {summary['create']} create, {summary['update']} update, "
            f"{summary['replace']} replace, {summary['delete']} delete, "
            f"{summary['no_change']} unchanged"
        )
        return plan

    def create_destroy_plan(self, state: RemoteState) -> Plan:
        """Delete every recorded resource, dependents first."""
        self.logger.info("Creating destruction plan...")

        order = DependencyGraph()
        actions = {}
        for index, record in enumerate(state.ordered_resources()):
            actions[record.address] = PlannedAction(
                address=record.address,
                change_type=ChangeType.DELETE,
                prior=record,
                reason="Destroy requested"
            )
            order.add_node(record.address, order=index)

        for address in actions:
            for dependent in state.get_dependents(address):
                order.add_dependency(address, dependent, EdgeKind.ORDERING)

        plan = Plan(
            actions=self._sorted_actions(order, actions),
            state_serial=state.serial,
            destroy=True,
        )
        self.logger.info(f"Destruction plan created: {len(plan.actions)} resources")
        return plan

    def _resolve(
        self,
        owner: str,
        ref: Reference,
        graph: DesiredGraph,
        state: RemoteState,
        actions: Dict[str, PlannedAction],
        planned: Dict[str, Dict[str, Any]]
    ) -> Any:
        """Value a reference will have once its target is applied, or UNKNOWN."""
        target = graph.get(ref.target)
        schema = self.schemas[target.type]
        action = actions.get(ref.target)
        change_type = action.change_type if action else ChangeType.NO_CHANGE
        record = state.get_resource(ref.target)
        target_attributes = planned[ref.target]

        if ref.attribute in schema.computed:
            if change_type in (ChangeType.CREATE, ChangeType.REPLACE):
                return UNKNOWN
            if change_type == ChangeType.UPDATE and ref.attribute in schema.volatile:
                return UNKNOWN
            if ref.attribute not in record.computed:
                return UNKNOWN
            value = record.computed[ref.attribute]
        elif ref.attribute in target_attributes:
            value = target_attributes[ref.attribute]
        elif record is not None and record.has_attribute(ref.attribute):
            value = record.lookup(ref.attribute)
        else:
            raise UnresolvedReferenceError(
                f"'{owner}' refers to '${{{ref.expression}}}' but {ref.target} "
                f"has no attribute '{ref.attribute}'",
                resource_id=owner
            )

        try:
            return walk_path(value, ref.path)
        except KeyError as e:
            raise UnresolvedReferenceError(
                f"'{owner}' refers to '${{{ref.expression}}}' which does not exist",
                resource_id=owner,
                cause=e
            )

    def _diff(
        self,
        resource: Resource,
        attributes: Dict[str, Any],
        record: Optional[ResourceState]
    ) -> Optional[PlannedAction]:
        if record is None:
            return PlannedAction(
                address=resource.address,
                change_type=ChangeType.CREATE,
                resource=resource,
                attributes=attributes,
                diffs=[AttributeDiff(path=k, before=None, after=v) for k, v in attributes.items()],
                reason="Resource does not exist"
            )

        schema = self.schemas[resource.type]
        diffs = []
        keys = list(attributes) + [k for k in record.attributes if k not in attributes]
        for key in keys:
            after = attributes.get(key, _ABSENT)
            before = record.attributes.get(key, _ABSENT)
            if after != before or (after is not _ABSENT and contains_unknown(after)):
                diffs.append(AttributeDiff(
                    path=key,
                    before=None if before is _ABSENT else before,
                    after=None if after is _ABSENT else after,
                    forces_replacement=schema.forces_replacement(key)
                ))

        if record.type != resource.type:
            change_type, reason = ChangeType.REPLACE, f"Type changed from {record.type}"
        elif any(diff.forces_replacement for diff in diffs):
            forced = ", ".join(d.path for d in diffs if d.forces_replacement)
            change_type, reason = ChangeType.REPLACE, f"Immutable attribute(s) changed: {forced}"
        elif diffs:
            change_type, reason = ChangeType.UPDATE, "Resource configuration has changed"
        else:
            return None

        return PlannedAction(
            address=resource.address,
            change_type=change_type,
            resource=resource,
            prior=record,
            attributes=attributes,
            diffs=diffs,
            reason=reason
        )

    def _check_conflicts(self, graph: DesiredGraph, planned: Dict[str, Dict[str, Any]]) -> None:
        seen: Dict[tuple, str] = {}
        for resource in graph.ordered():
            schema = self.schemas[resource.type]
            attributes = planned[resource.address]
            for group in schema.unique:
                values = tuple(attributes.get(name) for name in group)
                if all(value is None for value in values) or any(contains_unknown(v) for v in values):
                    continue
                key = (resource.type, group, repr(values))
                if key in seen:
                    described = ", ".join(f"{n}={v!r}" for n, v in zip(group, values))
                    raise PlanConflictError(
                        f"{seen[key]} and {resource.address} both use {described}; "
                        f"{resource.type} requires this to be unique",
                        resource_id=resource.address
                    )
                seen[key] = resource.address

    def _order(
        self,
        graph: DesiredGraph,
        state: RemoteState,
        actions: Dict[str, PlannedAction],
        orphans: List[ResourceState]
    ) -> List[str]:
        order = DependencyGraph()
        for address, action in actions.items():
            if action.resource is not None:
                order.add_node(address, order=action.resource.index)
        for position, record in enumerate(orphans):
            order.add_node(record.address, order=len(graph) + position)

        for address, action in actions.items():
            if action.change_type == ChangeType.DELETE:
                # Recorded dependents go first
                for dependent in state.get_dependents(address):
                    if dependent in actions:
                        order.add_dependency(address, dependent, EdgeKind.ORDERING)
                for dependency in action.prior.dependencies:
                    replaced = actions.get(dependency)
                    if replaced is not None and replaced.change_type == ChangeType.REPLACE:
                        order.add_dependency(dependency, address, EdgeKind.ORDERING)
            else:
                for dependency in graph.dependencies_of(address):
                    if dependency in actions:
                        order.add_dependency(address, dependency, EdgeKind.ORDERING)

        return [action.address for action in self._sorted_actions(order, actions)]

    @staticmethod
    def _sorted_actions(order: DependencyGraph, actions: Dict[str, PlannedAction]) -> List[PlannedAction]:
        result = []
        for address in order.topological_sort():
            action = actions[address]
            action.wait_for = sorted(
                order.get_dependencies(address),
                key=lambda a: order.nodes[a].order
            )
            result.append(action)
        return result

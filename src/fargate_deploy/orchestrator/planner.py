"""Resource planner: desired state + recorded state -> ordered plan."""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple
from dataclasses import dataclass, field
from enum import Enum

from fargate_deploy.orchestrator.dependency_graph import DependencyGraph
from fargate_deploy.orchestrator.resources import (
    DesiredResource,
    Tier,
    find_references,
    resolve_references,
)
from fargate_deploy.provisioners.base import BaseProvisioner
from fargate_deploy.state.models import ResourceRecord
from fargate_deploy.utils.errors import DependencyError
from fargate_deploy.utils.logging import get_logger


class Action(Enum):
    """Type of change for a resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    NO_OP = "no-op"
    DELETE = "delete"


@dataclass
class Operation:
    """A single planned change to a resource."""

    resource_id: str
    kind: str
    action: Action
    tier: Tier
    wave: int = 0
    desired: Optional[DesiredResource] = None
    record: Optional[ResourceRecord] = None
    reason: Optional[str] = None
    changed: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        """Stable name such as ``create-vpc``."""
        return f"{self.action.value}-{self.resource_id}"

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (int(self.tier), self.wave, self.resource_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.label,
            'resource_id': self.resource_id,
            'kind': self.kind,
            'action': self.action.value,
            'tier': self.tier.label,
            'wave': self.wave,
            'reason': self.reason,
            'changed': self.changed,
            'physical_id': self.record.physical_id if self.record else None,
        }


@dataclass
class DriftReport:
    """A recorded resource that no longer exists in AWS."""

    resource_id: str
    kind: str
    physical_id: str
    blocked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_id': self.resource_id,
            'kind': self.kind,
            'physical_id': self.physical_id,
            'blocked': self.blocked,
        }


@dataclass
class Plan:
    """Ordered set of operations that converges recorded state to desired state.

    ``operations`` holds actionable operations only, ordered by tier, then
    wave within the tier, then resource id. An empty list means the
    environment has converged.
    """

    environment: str
    operations: List[Operation] = field(default_factory=list)
    unchanged: List[Operation] = field(default_factory=list)
    drifted: List[DriftReport] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    destruction: bool = False

    def has_changes(self) -> bool:
        """Check if the plan has any actionable operations."""
        return bool(self.operations)

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.drifted)

    def get_operation(self, resource_id: str) -> Optional[Operation]:
        for operation in self.operations:
            if operation.resource_id == resource_id:
                return operation
        return None

    def tiers(self) -> List[Tuple[Tier, List[List[Operation]]]]:
        """Group operations by tier, then by wave, preserving plan order."""
        grouped: List[Tuple[Tier, List[List[Operation]]]] = []
        for operation in self.operations:
            if not grouped or grouped[-1][0] != operation.tier:
                grouped.append((operation.tier, []))
            waves = grouped[-1][1]
            if not waves or waves[-1][0].wave != operation.wave:
                waves.append([])
            waves[-1].append(operation)
        return grouped

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of operations by action."""
        summary = {action.value: 0 for action in Action}
        for operation in self.operations:
            summary[operation.action.value] += 1
        summary[Action.NO_OP.value] = len(self.unchanged)
        summary['drifted'] = len(self.drifted)
        summary['blocked'] = len(self.blocked)
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'environment': self.environment,
            'converged': not self.operations and not self.drifted,
            'summary': self.get_summary(),
            'operations': [operation.to_dict() for operation in self.operations],
            'unchanged': [operation.resource_id for operation in self.unchanged],
            'drifted': [report.to_dict() for report in self.drifted],
            'blocked': self.blocked,
            'orphaned': self.orphaned,
        }


class ResourcePlanner:
    """Creates deployment and destruction plans."""

    def __init__(self, provisioners: Optional[Mapping[str, BaseProvisioner]] = None):
        """Initialize resource planner.

        Args:
            provisioners: Provisioners keyed by resource kind; used for
                replace-only properties and drift detection
        """
        self.provisioners = provisioners or {}
        self.logger = get_logger(__name__)

    def plan(
        self,
        environment: str,
        desired_resources: Mapping[str, DesiredResource],
        records: Mapping[str, ResourceRecord],
        refresh: bool = False,
        confirmed_drift: Iterable[str] = ()
    ) -> Plan:
        """Create a plan by comparing desired resources with recorded state.

        Args:
            environment: Environment name
            desired_resources: Desired resources keyed by id
            records: Recorded resources keyed by id
            refresh: Check that recorded resources still exist in AWS
            confirmed_drift: Drifted resource ids the operator confirmed for recreation

        Returns:
            Deterministic Plan
        """
        graph = DependencyGraph(desired_resources.values())
        waves = graph.wave_index()
        order = graph.topological_sort()
        confirmed = set(confirmed_drift)

        drifted_ids = self._detect_drift(desired_resources, records) if refresh else []
        plan = Plan(environment=environment)

        blocked: Set[str] = set()
        for resource_id in drifted_ids:
            if resource_id in confirmed:
                continue
            record = records[resource_id]
            dependents = sorted(graph.get_all_dependents(resource_id))
            plan.drifted.append(DriftReport(
                resource_id=resource_id,
                kind=record.kind,
                physical_id=record.physical_id,
                blocked=dependents,
            ))
            blocked.add(resource_id)
            blocked.update(dependents)

        plan.blocked = sorted((r for r in blocked if r not in drifted_ids), key=lambda r: (desired_resources[r].tier, r))
        plan.orphaned = sorted(set(records) - set(desired_resources))

        replaced: Set[str] = set()
        destroyed: Set[str] = set()
        for resource_id in order:
            if resource_id in blocked:
                continue
            desired = desired_resources[resource_id]
            record = records.get(resource_id)
            recreate = resource_id in drifted_ids and resource_id in confirmed
            operation = self._plan_resource(desired, None if recreate else record, records, replaced, destroyed)
            operation.wave = waves[resource_id]
            if recreate:
                operation.record = record
                operation.reason = "recorded resource no longer exists; recreation confirmed"

            if operation.action in (Action.CREATE, Action.REPLACE):
                replaced.add(resource_id)
            if operation.action == Action.REPLACE:
                destroyed.add(resource_id)

            if operation.action == Action.NO_OP:
                plan.unchanged.append(operation)
            else:
                plan.operations.append(operation)

        plan.operations.sort(key=lambda op: op.sort_key)
        plan.unchanged.sort(key=lambda op: op.sort_key)

        summary = plan.get_summary()
        self.logger.info(
            f"Plan for {environment}: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['no-op']} unchanged, {summary['drifted']} drifted"
        )
        return plan

    def _detect_drift(
        self,
        desired_resources: Mapping[str, DesiredResource],
        records: Mapping[str, ResourceRecord]
    ) -> List[str]:
        drifted = []
        for resource_id in sorted(records):
            if resource_id not in desired_resources:
                continue
            record = records[resource_id]
            provisioner = self.provisioners.get(record.kind)
            if provisioner is not None and not provisioner.exists(record):
                self.logger.warning(f"Resource {resource_id} ({record.physical_id}) no longer exists")
                drifted.append(resource_id)
        return drifted

    def _plan_resource(
        self,
        desired: DesiredResource,
        record: Optional[ResourceRecord],
        records: Mapping[str, ResourceRecord],
        replaced: Set[str],
        destroyed: Set[str]
    ) -> Operation:
        """Plan one resource.

        ``replaced`` holds resources that get a new physical id in this plan;
        ``destroyed`` the subset whose current instance is deleted first. A
        recorded resource depending on a destroyed one is replaced as well,
        since the old dependency cannot be deleted from under it.
        """
        operation = Operation(
            resource_id=desired.id,
            kind=desired.kind,
            action=Action.NO_OP,
            tier=desired.tier,
            desired=desired,
            record=record,
        )

        if record is None:
            operation.action = Action.CREATE
            operation.reason = "not yet provisioned"
            return operation

        changed = set(self._changed_keys(desired, record, records))
        replaced_dependencies = sorted(set(desired.dependencies) & replaced)
        destroyed_dependencies = sorted(set(desired.dependencies) & destroyed)
        for key, value in desired.properties.items():
            if set(find_references(value)) & replaced:
                changed.add(key)

        if record.config_hash == desired.config_hash and not changed and not destroyed_dependencies:
            if replaced_dependencies:
                operation.action = Action.UPDATE
                operation.reason = f"dependency replaced: {', '.join(replaced_dependencies)}"
            return operation

        operation.changed = sorted(changed)
        provisioner = self.provisioners.get(desired.kind)
        replace_on = provisioner.replace_on if provisioner is not None else frozenset()

        if changed & replace_on:
            operation.action = Action.REPLACE
            operation.reason = f"replace-only properties changed: {', '.join(sorted(changed & replace_on))}"
        elif destroyed_dependencies:
            operation.action = Action.REPLACE
            operation.reason = f"depends on replaced resources: {', '.join(destroyed_dependencies)}"
        else:
            operation.action = Action.UPDATE
            if changed:
                operation.reason = f"properties changed: {', '.join(sorted(changed))}"
            elif replaced_dependencies:
                operation.reason = f"dependency replaced: {', '.join(replaced_dependencies)}"
            else:
                operation.reason = "configuration hash changed"
        return operation

    @staticmethod
    def _changed_keys(
        desired: DesiredResource,
        record: ResourceRecord,
        records: Mapping[str, ResourceRecord]
    ) -> List[str]:
        """Keys whose resolved value differs from the last applied value."""
        if record.config_hash == desired.config_hash:
            return []
        try:
            resolved = resolve_references(desired.properties, records)
        except DependencyError:
            resolved = desired.properties
        keys = set(resolved) | set(record.properties)
        changed = [key for key in keys if resolved.get(key) != record.properties.get(key)]
        if not changed and record.tags != desired.tags:
            changed.append('Tags')
        return sorted(changed)

    def create_destruction_plan(
        self, environment: str, records: Mapping[str, ResourceRecord]
    ) -> Plan:
        """Create a plan deleting every recorded resource, dependents first."""
        graph = record_graph(records.values())
        plan = Plan(environment=environment, destruction=True)
        for wave_number, resource_id in enumerate(graph.get_destruction_order()):
            record = records[resource_id]
            plan.operations.append(Operation(
                resource_id=resource_id,
                kind=record.kind,
                action=Action.DELETE,
                tier=Tier(record.tier),
                wave=wave_number,
                record=record,
                reason="explicit destroy",
            ))
        return plan


@dataclass(frozen=True)
class _RecordNode:
    id: str
    tier: int
    dependencies: Tuple[str, ...]


def record_graph(records: Iterable[ResourceRecord]) -> DependencyGraph:
    """Dependency graph over recorded resources.

    Dependencies on resources outside ``records`` are dropped.
    """
    records = list(records)
    present = {record.id for record in records}
    return DependencyGraph(
        _RecordNode(
            id=record.id,
            tier=record.tier,
            dependencies=tuple(d for d in record.dependencies if d in present),
        )
        for record in records
    )

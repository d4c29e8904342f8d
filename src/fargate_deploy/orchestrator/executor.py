"""Apply engine: executes plans tier by tier with parallel waves."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

from fargate_deploy.orchestrator.planner import Action, Operation, Plan, record_graph
from fargate_deploy.orchestrator.resources import resolve_references
from fargate_deploy.provisioners.base import BaseProvisioner, ProvisionResult
from fargate_deploy.state.manager import StateManager
from fargate_deploy.state.models import ResourceRecord
from fargate_deploy.utils.errors import (
    ApplyAbortedError,
    DependencyError,
    DeploymentError,
    DriftError,
    ErrorCategory,
    ErrorContext,
    OperatorAbortError,
    error_handler,
    exit_code_for,
)
from fargate_deploy.utils.logging import LogContext, get_logger
from fargate_deploy.utils.retry import RetryStrategy


class OperationStatus(Enum):
    """Status of a single operation."""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class OperationResult:
    """Result of executing a single operation."""

    operation: Operation
    status: OperationStatus
    record: Optional[ResourceRecord] = None
    error: Optional[DeploymentError] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    def is_failed(self) -> bool:
        return self.status == OperationStatus.FAILED


@dataclass
class ApplyResult:
    """Complete apply (or destroy) execution result."""

    results: List[OperationResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    error: Optional[DeploymentError] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.error)

    @property
    def completed(self) -> List[str]:
        """Labels of operations that finished, in completion order."""
        return [r.operation.label for r in self.results if r.is_success()]

    def get_failed_resource_ids(self) -> List[str]:
        return [r.operation.resource_id for r in self.results if r.is_failed()]

    def to_dict(self) -> Dict:
        return {
            'success': self.is_success(),
            'completed': self.completed,
            'failed': self.get_failed_resource_ids(),
            'skipped': self.skipped,
            'duration': round(self.duration, 3),
            'error': self.error.to_dict() if self.error else None,
        }


# Type alias for progress callback
ProgressCallback = Callable[[Operation, OperationStatus, Optional[str]], None]


class ApplyEngine:
    """Executes plans produced by the ResourcePlanner.

    Tiers run strictly in order and a tier starts only after every operation
    of the previous tier has succeeded. Within a tier, waves run in order and
    the operations of one wave run concurrently. After each successful
    operation the resource record is persisted before anything else starts,
    so an interrupted apply resumes from recorded state.
    """

    def __init__(
        self,
        provisioners: Mapping[str, BaseProvisioner],
        state_manager: StateManager,
        retry_strategy: Optional[RetryStrategy] = None,
        max_workers: int = 10,
        ready_timeout: int = 900,
        cancel_event: Optional[threading.Event] = None
    ):
        """Initialize apply engine.

        Args:
            provisioners: Provisioners keyed by resource kind
            state_manager: State manager records are written through
            retry_strategy: Retry policy for provider calls
            max_workers: Maximum concurrent operations within a wave
            ready_timeout: Seconds to wait for a resource to become usable
            cancel_event: Set by the caller to stop before the next operation
        """
        self.provisioners = provisioners
        self.state_manager = state_manager
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.max_workers = max_workers
        self.ready_timeout = ready_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.logger = get_logger(__name__)

    def execute(
        self,
        plan: Plan,
        parallel: bool = True,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Execute a deployment plan.

        Args:
            plan: Plan to execute
            parallel: Run the operations of a wave concurrently
            progress_callback: Optional callback for progress updates

        Returns:
            ApplyResult; ``error`` is set when the apply stopped early or
            left drifted resources unresolved
        """
        start = time.monotonic()
        result = ApplyResult(skipped=[d.resource_id for d in plan.drifted] + list(plan.blocked))
        self.logger.info(f"Applying {len(plan.operations)} operations (parallel={parallel})")

        error = self._destroy_replaced(plan, result)
        if error is not None:
            result.error = error
            result.duration = time.monotonic() - start
            self.logger.error(f"Apply stopped: {error.message}")
            return result

        for tier, waves in plan.tiers():
            self.logger.info(f"Tier {tier.label}: {sum(len(w) for w in waves)} operations")
            for wave in waves:
                error = self._run_wave(wave, parallel, result, progress_callback)
                if error is not None:
                    result.error = error
                    result.duration = time.monotonic() - start
                    self.logger.error(f"Apply stopped: {error.message}")
                    return result

        if plan.drifted:
            drifted = [d.resource_id for d in plan.drifted]
            result.error = DriftError(
                f"Skipped drifted resources and their dependents: {', '.join(result.skipped)}",
                resource_ids=drifted,
                context=ErrorContext(resource_id=drifted[0], operation='apply'),
            )
            self.logger.warning(result.error.message)
        else:
            self.logger.info(f"Apply completed: {len(result.completed)} operations")

        result.duration = time.monotonic() - start
        return result

    def _run_wave(
        self,
        wave: List[Operation],
        parallel: bool,
        result: ApplyResult,
        progress_callback: Optional[ProgressCallback]
    ) -> Optional[DeploymentError]:
        """Run one wave. Returns the error that stops the apply, if any."""
        if self.cancel_event.is_set():
            return self._aborted(result)

        if parallel and len(wave) > 1:
            outcomes = []
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [
                    executor.submit(self._execute_operation, operation, progress_callback)
                    for operation in wave
                ]
                # In-flight siblings always run to completion
                for future in as_completed(futures):
                    outcomes.append(future.result())
            outcomes.sort(key=lambda r: r.operation.sort_key)
            result.results.extend(outcomes)
            failed = [r for r in outcomes if r.is_failed()]
        else:
            failed = []
            for operation in wave:
                if self.cancel_event.is_set():
                    return self._aborted(result)
                outcome = self._execute_operation(operation, progress_callback)
                result.results.append(outcome)
                if outcome.is_failed():
                    failed.append(outcome)
                    break

        if failed:
            first = failed[0]
            completed = result.completed
            return ApplyAbortedError(
                f"Apply stopped at {first.operation.label}: {first.error.message}",
                context=ErrorContext(
                    resource_id=first.operation.resource_id,
                    resource_type=first.operation.kind,
                    operation=first.operation.label,
                    last_completed_step=completed[-1] if completed else None,
                ),
                cause=first.error,
                suggestions=first.error.suggestions + [
                    'Re-run apply to resume from the last recorded resource'
                ],
            )
        return None

    def _destroy_replaced(self, plan: Plan, result: ApplyResult) -> Optional[DeploymentError]:
        """Destroy the current instances of replaced resources, dependents first.

        Runs before any create or update. Each record is removed as soon as
        its resource is gone, so a failed create later on resumes as a plain
        create instead of reporting drift.
        """
        replacing = {
            operation.resource_id: operation
            for operation in plan.operations
            if operation.action == Action.REPLACE and operation.record is not None
        }
        if not replacing:
            return None

        records = self.state_manager.snapshot().resources
        drifted = {report.resource_id for report in plan.drifted}
        for record in sorted(records.values(), key=lambda r: r.id):
            if record.id in replacing or record.id in drifted:
                continue
            held = sorted(set(record.dependencies) & set(replacing))
            if held:
                return DependencyError(
                    f"Cannot replace {held[0]}: {record.id} depends on it and is not being replaced",
                    context=ErrorContext(
                        resource_id=held[0],
                        operation=replacing[held[0]].label,
                        additional_info={'dependent': record.id},
                    ),
                    suggestions=[f"Resolve {record.id} first, then re-run apply"],
                )

        current = [records.get(resource_id, op.record) for resource_id, op in replacing.items()]
        order = record_graph(current).get_destruction_order()
        self.logger.info(f"Destroying {len(order)} replaced resources: {', '.join(order)}")

        for resource_id in order:
            if self.cancel_event.is_set():
                return self._aborted(result)

            operation = replacing[resource_id]
            record = records.get(resource_id, operation.record)
            context = ErrorContext(
                resource_id=resource_id,
                resource_type=operation.kind,
                operation=operation.label,
            )
            start = time.monotonic()
            try:
                provisioner = self._provisioner(operation.kind)
                self.retry_strategy.execute_with_retry(provisioner.destroy, record, context=context)
            except Exception as e:
                error = error_handler.classify(e, context)
                self.logger.error(f"Destroying {resource_id} ({record.physical_id}) failed: {error.message}")
                result.results.append(OperationResult(
                    operation, OperationStatus.FAILED, error=error, duration=time.monotonic() - start
                ))
                return ApplyAbortedError(
                    f"Apply stopped at {operation.label}: {error.message}",
                    context=ErrorContext(
                        resource_id=resource_id,
                        resource_type=operation.kind,
                        operation=operation.label,
                    ),
                    cause=error,
                    suggestions=error.suggestions + ['Re-run apply to resume from the last recorded resource'],
                )
            self.state_manager.remove_resource(resource_id)
            self.logger.info(f"Destroyed {resource_id} ({record.physical_id}) for replacement")
        return None

    def _aborted(self, result: ApplyResult) -> OperatorAbortError:
        completed = result.completed
        return OperatorAbortError(
            'Apply aborted by operator',
            context=ErrorContext(
                operation='apply',
                last_completed_step=completed[-1] if completed else None,
            ),
        )

    def _execute_operation(
        self,
        operation: Operation,
        progress_callback: Optional[ProgressCallback]
    ) -> OperationResult:
        log = LogContext(
            self.logger,
            resource_id=operation.resource_id,
            resource_type=operation.kind,
            operation=operation.action.value,
        )
        context = ErrorContext(
            resource_id=operation.resource_id,
            resource_type=operation.kind,
            operation=operation.label,
        )
        if progress_callback:
            progress_callback(operation, OperationStatus.IN_PROGRESS, None)

        start = time.monotonic()
        try:
            record = self._apply(operation, context, log)
        except Exception as e:
            error = error_handler.classify(e, context)
            duration = time.monotonic() - start
            log.error(f"{operation.label} failed: {error.message}", extra={'duration': duration})
            if progress_callback:
                progress_callback(operation, OperationStatus.FAILED, error.message)
            return OperationResult(operation, OperationStatus.FAILED, error=error, duration=duration)

        duration = time.monotonic() - start
        log.info(f"{operation.label} completed ({record.physical_id})", extra={'duration': duration})
        if progress_callback:
            progress_callback(operation, OperationStatus.SUCCESS, None)
        return OperationResult(operation, OperationStatus.SUCCESS, record=record, duration=duration)

    def _provisioner(self, kind: str) -> BaseProvisioner:
        provisioner = self.provisioners.get(kind)
        if provisioner is None:
            raise DeploymentError(
                f"No provisioner registered for {kind}",
                category=ErrorCategory.PROVISIONING,
            )
        return provisioner

    def _apply(self, operation: Operation, context: ErrorContext, log: LogContext) -> ResourceRecord:
        desired = operation.desired
        provisioner = self._provisioner(operation.kind)
        records = self.state_manager.snapshot().resources
        properties = resolve_references(desired.properties, records)
        retry = self.retry_strategy.execute_with_retry

        result: ProvisionResult
        if operation.action == Action.UPDATE:
            log.info(f"Updating {operation.resource_id}")
            current = records.get(operation.resource_id, operation.record)
            result = retry(provisioner.update, current, properties, desired.tags, context=context)
        else:
            # Replaced resources were already destroyed by _destroy_replaced
            log.info(f"{'Replacing' if operation.action == Action.REPLACE else 'Creating'} {operation.resource_id}")
            result = retry(provisioner.create, desired.id, properties, desired.tags, context=context)

        retry(provisioner.wait_until_ready, result, self.ready_timeout, context=context)

        record = ResourceRecord(
            id=desired.id,
            kind=desired.kind,
            tier=int(desired.tier),
            physical_id=result.physical_id,
            properties=properties,
            config_hash=desired.config_hash,
            outputs=result.outputs,
            dependencies=list(desired.dependencies),
            tags=dict(desired.tags),
        )
        return self.state_manager.record_resource(record)

    def execute_destruction(
        self,
        plan: Plan,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Execute a destruction plan, dependents first.

        Records are removed only after the resource is gone. Destruction
        stops at the first failure so nothing is deleted from under a
        resource that still exists.
        """
        start = time.monotonic()
        result = ApplyResult()
        self.logger.info(f"Destroying {len(plan.operations)} resources")

        for operation in plan.operations:
            if self.cancel_event.is_set():
                result.error = self._aborted(result)
                break

            log = LogContext(self.logger, resource_id=operation.resource_id, operation='delete')
            context = ErrorContext(
                resource_id=operation.resource_id,
                resource_type=operation.kind,
                operation=operation.label,
            )
            if progress_callback:
                progress_callback(operation, OperationStatus.IN_PROGRESS, None)

            op_start = time.monotonic()
            try:
                provisioner = self._provisioner(operation.kind)
                self.retry_strategy.execute_with_retry(provisioner.destroy, operation.record, context=context)
                self.state_manager.remove_resource(operation.resource_id)
            except Exception as e:
                error = error_handler.classify(e, context)
                log.error(f"{operation.label} failed: {error.message}")
                if progress_callback:
                    progress_callback(operation, OperationStatus.FAILED, error.message)
                result.results.append(OperationResult(
                    operation, OperationStatus.FAILED, error=error, duration=time.monotonic() - op_start
                ))
                completed = result.completed
                result.error = ApplyAbortedError(
                    f"Destroy stopped at {operation.label}: {error.message}",
                    context=ErrorContext(
                        resource_id=operation.resource_id,
                        resource_type=operation.kind,
                        operation=operation.label,
                        last_completed_step=completed[-1] if completed else None,
                    ),
                    cause=error,
                )
                break

            log.info(f"{operation.label} completed")
            if progress_callback:
                progress_callback(operation, OperationStatus.SUCCESS, None)
            result.results.append(OperationResult(
                operation, OperationStatus.SUCCESS, record=operation.record,
                duration=time.monotonic() - op_start
            ))

        result.duration = time.monotonic() - start
        return result

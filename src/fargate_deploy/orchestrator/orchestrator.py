"""Main orchestrator that composes planning, apply and release coordination."""

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from fargate_deploy.config.models import DesiredState
from fargate_deploy.orchestrator.dependency_graph import DependencyGraph
from fargate_deploy.orchestrator.executor import ApplyEngine, ApplyResult, ProgressCallback
from fargate_deploy.orchestrator.planner import Plan, ResourcePlanner
from fargate_deploy.orchestrator.resources import DesiredResource, Tier, build_desired_resources
from fargate_deploy.provisioners.base import BaseProvisioner
from fargate_deploy.release.coordinator import ReleaseCoordinator, ReleaseResult
from fargate_deploy.release.health import (
    EcsServiceHealthCheck,
    HealthCheck,
    HealthMonitor,
    HttpHealthCheck,
)
from fargate_deploy.release.platform import ServicePlatform
from fargate_deploy.state.manager import StateManager
from fargate_deploy.utils.errors import ConfigurationError, error_handler
from fargate_deploy.utils.logging import get_logger
from fargate_deploy.utils.retry import RetryStrategy


class DeploymentOrchestrator:
    """Coordinates plan, apply, release, rollback, status and destroy.

    All collaborators are passed in explicitly; the orchestrator keeps no
    module-level state.
    """

    def __init__(
        self,
        desired: DesiredState,
        state_manager: StateManager,
        provisioners: Mapping[str, BaseProvisioner],
        platform: Optional[ServicePlatform] = None,
        health_checks: Optional[List[HealthCheck]] = None,
        cancel_event: Optional[threading.Event] = None,
        max_workers: int = 10,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize deployment orchestrator.

        Args:
            desired: Desired state of the environment, placeholders resolved
            state_manager: State manager for the environment
            provisioners: Provisioners keyed by resource kind
            platform: Service platform used by releases
            health_checks: Health signals for releases; derived from the
                platform and the load balancer record when omitted
            cancel_event: Set to abort the running apply or release
            max_workers: Maximum concurrent operations within a wave
            sleep: Wait function for retries and health polling; health
                polling waits on the cancel event when omitted
            clock: Monotonic clock for health polling
        """
        self.desired = desired
        self.state_manager = state_manager
        self.provisioners = provisioners
        self.platform = platform
        self.health_checks = health_checks
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep
        self.clock = clock

        self.retry_strategy = RetryStrategy(
            max_attempts=desired.retry.max_attempts,
            base_delay=desired.retry.base_delay,
            max_delay=desired.retry.max_delay,
            sleep=sleep or time.sleep
        )
        self.planner = ResourcePlanner(provisioners)
        self.engine = ApplyEngine(
            provisioners=provisioners,
            state_manager=state_manager,
            retry_strategy=self.retry_strategy,
            max_workers=max_workers,
            ready_timeout=desired.release.rollout_timeout,
            cancel_event=self.cancel_event
        )
        self.logger = get_logger(__name__)

    @property
    def service(self) -> str:
        return self.desired.service_id

    def desired_resources(self) -> Dict[str, DesiredResource]:
        """Build and validate the desired resource set."""
        resources = build_desired_resources(self.desired)
        DependencyGraph(resources.values()).validate()
        return resources

    # Infrastructure

    def plan(self, refresh: bool = False, confirmed_drift: Iterable[str] = ()) -> Plan:
        """Create a plan converging recorded state to the desired state.

        Args:
            refresh: Check recorded resources still exist in AWS
            confirmed_drift: Drifted resource ids to recreate

        Returns:
            Plan
        """
        self.logger.info(f"Planning {self.desired.environment} ({self.desired.region})")
        records = self.state_manager.snapshot().resources
        return self.planner.plan(
            environment=self.desired.environment,
            desired_resources=self.desired_resources(),
            records=records,
            refresh=refresh,
            confirmed_drift=confirmed_drift,
        )

    def apply(
        self,
        plan: Optional[Plan] = None,
        parallel: bool = True,
        confirmed_drift: Iterable[str] = (),
        refresh: bool = True,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyResult:
        """Apply a plan, planning first when none is given."""
        if plan is None:
            plan = self.plan(refresh=refresh, confirmed_drift=confirmed_drift)
        if not plan.has_changes() and not plan.drifted:
            self.logger.info("No changes to apply")
        return self.engine.execute(plan, parallel=parallel, progress_callback=progress_callback)

    def plan_destruction(self) -> Plan:
        return self.planner.create_destruction_plan(
            self.desired.environment, self.state_manager.snapshot().resources
        )

    def destroy(self, progress_callback: Optional[ProgressCallback] = None) -> ApplyResult:
        """Delete every recorded resource, dependents first."""
        return self.engine.execute_destruction(self.plan_destruction(), progress_callback=progress_callback)

    def outputs(self) -> Dict[str, Optional[str]]:
        """Endpoints and names of the applied environment."""
        records = self.state_manager.snapshot().resources
        load_balancer = records.get('load-balancer')
        cluster = records.get('cluster')
        service = records.get('service')
        dns_name = load_balancer.outputs.get('DNSName') if load_balancer else None
        return {
            'load_balancer_dns': dns_name,
            'url': f"http://{dns_name}" if dns_name else None,
            'cluster': cluster.outputs.get('ClusterName') if cluster else None,
            'service': service.outputs.get('ServiceName') if service else None,
            'repository': self.desired.registry_uri(),
            'log_group': self.desired.log_group_name,
        }

    # Releases

    def _coordinator(self) -> ReleaseCoordinator:
        if self.platform is None:
            raise ConfigurationError("No service platform configured for releases")
        if self.state_manager.get_resource('service') is None:
            raise ConfigurationError(
                f"Service {self.service} has not been provisioned",
                suggestions=['Run apply before releasing']
            )
        monitor = HealthMonitor(
            self._health_checks(),
            self.desired.health_check,
            clock=self.clock,
            sleep=self.sleep,
        )
        return ReleaseCoordinator(
            state_manager=self.state_manager,
            platform=self.platform,
            monitor=monitor,
            settings=self.desired.release,
            retry_strategy=self.retry_strategy,
            cancel_event=self.cancel_event,
        )

    def _health_checks(self) -> List[HealthCheck]:
        if self.health_checks is not None:
            return self.health_checks
        checks: List[HealthCheck] = [EcsServiceHealthCheck(self.platform)]
        load_balancer = self.state_manager.get_resource('load-balancer')
        if load_balancer is not None and load_balancer.outputs.get('DNSName'):
            checks.append(HttpHealthCheck(f"http://{load_balancer.outputs['DNSName']}", self.desired.health_check))
        return checks

    def release(self, image_ref: str) -> ReleaseResult:
        """Roll a new image onto the service."""
        return self._coordinator().release(image_ref)

    def rollback(self) -> ReleaseResult:
        """Revert the service to its previous healthy revision."""
        return self._coordinator().rollback()

    # Status

    def status(self) -> Dict[str, Any]:
        """Recorded resources, convergence, release attempts and live service status."""
        state = self.state_manager.snapshot()
        plan = self.plan(refresh=False)

        resources = [
            {
                'id': record.id,
                'kind': record.kind,
                'tier': Tier(record.tier).label,
                'physical_id': record.physical_id,
                'updated_at': record.updated_at.isoformat(),
            }
            for record in sorted(state.resources.values(), key=lambda r: (r.tier, r.id))
        ]
        attempts = state.attempts_for(self.service)
        active = [a for a in attempts if a.is_active]
        latest = attempts[-1] if attempts else None

        report: Dict[str, Any] = {
            'environment': self.desired.environment,
            'region': self.desired.region,
            'service': self.service,
            'converged': not plan.has_changes(),
            'pending_operations': [op.label for op in plan.operations],
            'resources': resources,
            'active_attempt': _attempt_summary(active[-1]) if active else None,
            'latest_attempt': _attempt_summary(latest) if latest else None,
            'outputs': self.outputs() if state.resources else {},
            'live': None,
        }

        if self.platform is not None and 'service' in state.resources:
            try:
                report['live'] = self.platform.describe().to_dict()
            except Exception as e:
                error = error_handler.classify(e)
                self.logger.warning(f"Could not describe service {self.service}: {error.message}")
                report['live'] = {'error': error.message}
        return report


def _attempt_summary(attempt) -> Dict[str, Any]:
    return {
        'attempt_id': attempt.attempt_id,
        'kind': attempt.kind,
        'image_ref': attempt.image_ref,
        'stage': attempt.stage.value,
        'outcome': attempt.outcome,
        'task_revision': attempt.task_revision,
        'previous_revision': attempt.previous_revision,
        'started_at': attempt.started_at.isoformat(),
        'finished_at': attempt.finished_at.isoformat() if attempt.finished_at else None,
        'reason': attempt.reason,
    }

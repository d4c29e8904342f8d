"""Health signals and the blocking health monitor used during rollouts."""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

import requests

from fargate_deploy.config.models import HealthCheckPolicy
from fargate_deploy.release.platform import ServicePlatform
from fargate_deploy.utils.errors import (
    ErrorContext,
    HealthCheckTimeout,
    OperatorAbortError,
    error_handler,
)
from fargate_deploy.utils.logging import LogContext, get_logger


class HealthState(Enum):
    """Result of a single health probe."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    PENDING = "pending"


@dataclass
class HealthSample:
    state: HealthState
    detail: str = ''


@dataclass
class HealthVerdict:
    """Outcome of waiting for a revision."""
    healthy: bool
    reason: str
    checks: int = 0


def matches_status(status_code: int, matcher: str) -> bool:
    """Check a status code against a target group matcher such as ``200-399``."""
    for part in matcher.split(','):
        if '-' in part:
            low, high = part.split('-', 1)
            if int(low) <= status_code <= int(high):
                return True
        elif status_code == int(part):
            return True
    return False


class HealthCheck(ABC):
    """A health signal for one revision."""

    name: str = 'health'

    @abstractmethod
    def check(self, revision: str) -> HealthSample:
        """Probe once and report HEALTHY, UNHEALTHY or PENDING."""


class EcsServiceHealthCheck(HealthCheck):
    """Healthy when the revision's deployment runs every task and all targets pass.

    Tasks still starting and targets in ``initial`` are PENDING; a failed
    rollout, failed tasks or an ``unhealthy`` target are UNHEALTHY.
    """

    name = 'ecs'

    def __init__(self, platform: ServicePlatform):
        self.platform = platform

    def check(self, revision: str) -> HealthSample:
        status = self.platform.describe()
        deployment = status.deployment_for(revision)
        if deployment is None:
            return HealthSample(HealthState.UNHEALTHY, f"no deployment of {revision}")
        if deployment.rollout_state == 'FAILED':
            return HealthSample(HealthState.UNHEALTHY, deployment.rollout_state_reason or 'rollout failed')
        if deployment.failed_tasks:
            return HealthSample(HealthState.UNHEALTHY, f"{deployment.failed_tasks} tasks failed to start")
        if deployment.running_count < deployment.desired_count:
            return HealthSample(
                HealthState.PENDING,
                f"{deployment.running_count}/{deployment.desired_count} tasks running"
            )

        targets = self.platform.target_health()
        serving = {target: state for target, state in targets.items() if state != 'draining'}
        unhealthy = sorted(t for t, state in serving.items() if state == 'unhealthy')
        if unhealthy:
            return HealthSample(HealthState.UNHEALTHY, f"unhealthy targets: {', '.join(unhealthy)}")
        if any(state != 'healthy' for state in serving.values()):
            return HealthSample(HealthState.PENDING, 'targets still registering')
        return HealthSample(
            HealthState.HEALTHY,
            f"{deployment.running_count} tasks running, {len(serving)} healthy targets"
        )


class HttpHealthCheck(HealthCheck):
    """GET the health check path through the load balancer."""

    name = 'http'

    def __init__(self, base_url: str, policy: HealthCheckPolicy, session: Optional[requests.Session] = None):
        """Initialize HTTP health check.

        Args:
            base_url: Load balancer URL, e.g. ``http://my-alb-123.elb.amazonaws.com``
            policy: Supplies the path, per-request timeout and status matcher
            session: Optional requests session
        """
        self.url = base_url.rstrip('/') + policy.path
        self.timeout = policy.timeout
        self.matcher = policy.matcher
        self.session = session or requests.Session()

    def check(self, revision: str) -> HealthSample:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
        except requests.RequestException as e:
            return HealthSample(HealthState.UNHEALTHY, f"GET {self.url} failed: {e}")
        if matches_status(response.status_code, self.matcher):
            return HealthSample(HealthState.HEALTHY, f"GET {self.url} -> {response.status_code}")
        return HealthSample(HealthState.UNHEALTHY, f"GET {self.url} -> {response.status_code}")


class HealthMonitor:
    """Polls health checks until a revision passes, fails or runs out of time.

    A revision is healthy after ``healthy_threshold`` consecutive passing
    polls and failed after ``unhealthy_threshold`` consecutive failing
    polls. Failures inside the grace period count as pending.
    """

    def __init__(
        self,
        checks: Sequence[HealthCheck],
        policy: HealthCheckPolicy,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize health monitor.

        Args:
            checks: Signals that must all pass
            policy: Interval, thresholds and grace period
            clock: Monotonic clock
            sleep: Wait function; by default the wait is the cancel event
        """
        self.checks = list(checks)
        self.policy = policy
        self.clock = clock
        self.sleep = sleep
        self.logger = get_logger(__name__)

    def probe(self, revision: str) -> HealthSample:
        """Combine every check into one sample."""
        samples: List[HealthSample] = []
        for check in self.checks:
            try:
                samples.append(check.check(revision))
            except Exception as e:
                error = error_handler.classify(e)
                state = HealthState.PENDING if error.retryable else HealthState.UNHEALTHY
                samples.append(HealthSample(state, f"{check.name}: {error.message}"))

        for state in (HealthState.UNHEALTHY, HealthState.PENDING):
            failing = [s.detail for s in samples if s.state == state]
            if failing:
                return HealthSample(state, '; '.join(failing))
        return HealthSample(HealthState.HEALTHY, '; '.join(s.detail for s in samples))

    def _wait(self, seconds: float, cancel_event: threading.Event) -> None:
        if self.sleep is not None:
            self.sleep(seconds)
        else:
            cancel_event.wait(seconds)

    def wait_for(
        self,
        revision: str,
        timeout: int,
        cancel_event: Optional[threading.Event] = None,
        attempt_id: Optional[str] = None
    ) -> HealthVerdict:
        """Block until ``revision`` is healthy or has failed.

        Returns:
            HealthVerdict; ``healthy`` is False when the unhealthy threshold
            was reached

        Raises:
            HealthCheckTimeout: If no verdict was reached within ``timeout``
            OperatorAbortError: If ``cancel_event`` was set
        """
        cancel_event = cancel_event or threading.Event()
        log = LogContext(self.logger, attempt_id=attempt_id, stage='health')
        start = self.clock()
        deadline = start + timeout
        grace_end = start + self.policy.grace_period
        passes = failures = checks = 0

        while True:
            if cancel_event.is_set():
                raise OperatorAbortError(
                    'Health wait aborted by operator',
                    context=ErrorContext(attempt_id=attempt_id, operation='health-check')
                )

            sample = self.probe(revision)
            checks += 1
            now = self.clock()
            if sample.state == HealthState.UNHEALTHY and now < grace_end:
                sample = HealthSample(HealthState.PENDING, f"in grace period: {sample.detail}")

            if sample.state == HealthState.HEALTHY:
                passes += 1
                failures = 0
            elif sample.state == HealthState.UNHEALTHY:
                failures += 1
                passes = 0
            else:
                passes = failures = 0
            log.debug(f"Health of {revision}: {sample.state.value} ({sample.detail})")

            if passes >= self.policy.healthy_threshold:
                log.info(f"{revision} healthy after {checks} checks")
                return HealthVerdict(True, sample.detail, checks)
            if failures >= self.policy.unhealthy_threshold:
                log.warning(f"{revision} unhealthy after {failures} consecutive failures: {sample.detail}")
                return HealthVerdict(False, sample.detail, checks)

            if now >= deadline:
                raise HealthCheckTimeout(
                    f"{revision} not healthy within {timeout}s (last check: {sample.detail})",
                    context=ErrorContext(attempt_id=attempt_id, operation='health-check')
                )
            self._wait(min(self.policy.interval, max(deadline - now, 0)), cancel_event)

"""Unit tests for health checks and the health monitor."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from fargate_deploy.config.models import HealthCheckPolicy
from fargate_deploy.release.health import (
    EcsServiceHealthCheck,
    HealthMonitor,
    HealthSample,
    HealthState,
    HttpHealthCheck,
    matches_status,
)
from fargate_deploy.release.platform import DeploymentStatus, ServiceStatus
from fargate_deploy.utils.errors import HealthCheckTimeout, OperatorAbortError

REVISION = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop-staging:2"


def _policy(**overrides) -> HealthCheckPolicy:
    values = {
        "path": "/health",
        "interval": 5,
        "timeout": 2,
        "healthy_threshold": 2,
        "unhealthy_threshold": 3,
        "grace_period": 0,
    }
    values.update(overrides)
    return HealthCheckPolicy(**values)


def _check(*states: HealthState, name: str = "scripted") -> MagicMock:
    check = MagicMock()
    check.name = name
    check.check.side_effect = [HealthSample(state, state.value) for state in states]
    return check


def _status(deployment: DeploymentStatus) -> ServiceStatus:
    return ServiceStatus(
        service_name="shop-staging",
        task_definition=deployment.task_definition,
        desired_count=deployment.desired_count,
        running_count=deployment.running_count,
        deployments=[deployment],
    )


class TestMatchesStatus:
    """Tests for target group status matchers."""

    def test_range(self) -> None:
        assert matches_status(200, "200-399")
        assert matches_status(399, "200-399")
        assert not matches_status(404, "200-399")

    def test_list(self) -> None:
        assert matches_status(204, "200,204")
        assert not matches_status(201, "200,204")


class TestHealthMonitor:
    """Tests for HealthMonitor.wait_for."""

    def test_healthy_after_consecutive_passes(self, clock) -> None:
        check = _check(HealthState.HEALTHY, HealthState.PENDING, HealthState.HEALTHY, HealthState.HEALTHY)
        monitor = HealthMonitor([check], _policy(), clock=clock, sleep=clock.sleep)

        verdict = monitor.wait_for(REVISION, timeout=60)

        assert verdict.healthy
        assert verdict.checks == 4
        assert clock.sleeps == [5, 5, 5]

    def test_unhealthy_after_consecutive_failures(self, clock) -> None:
        check = _check(
            HealthState.UNHEALTHY, HealthState.HEALTHY,
            HealthState.UNHEALTHY, HealthState.UNHEALTHY, HealthState.UNHEALTHY,
        )
        monitor = HealthMonitor([check], _policy(), clock=clock, sleep=clock.sleep)

        verdict = monitor.wait_for(REVISION, timeout=60)

        assert not verdict.healthy
        assert verdict.checks == 5
        assert verdict.reason == "unhealthy"

    def test_failures_in_grace_period_are_pending(self, clock) -> None:
        check = _check(*[HealthState.UNHEALTHY] * 4)
        monitor = HealthMonitor([check], _policy(grace_period=10, unhealthy_threshold=2), clock=clock,
                                sleep=clock.sleep)

        verdict = monitor.wait_for(REVISION, timeout=60)

        assert not verdict.healthy
        assert verdict.checks == 4

    def test_timeout(self, clock) -> None:
        check = _check(*[HealthState.PENDING] * 10)
        monitor = HealthMonitor([check], _policy(), clock=clock, sleep=clock.sleep)

        with pytest.raises(HealthCheckTimeout, match="not healthy within 20s") as excinfo:
            monitor.wait_for(REVISION, timeout=20, attempt_id="a-1")

        assert excinfo.value.context.attempt_id == "a-1"
        assert check.check.call_count == 5

    def test_cancel(self, clock) -> None:
        check = _check(HealthState.HEALTHY)
        monitor = HealthMonitor([check], _policy(), clock=clock, sleep=clock.sleep)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperatorAbortError):
            monitor.wait_for(REVISION, timeout=60, cancel_event=cancel)

        check.check.assert_not_called()


class TestProbe:
    """Tests for combining health checks."""

    def test_any_unhealthy_check_wins(self, clock) -> None:
        monitor = HealthMonitor(
            [_check(HealthState.HEALTHY, name="ecs"), _check(HealthState.UNHEALTHY, name="http")],
            _policy(), clock=clock,
        )

        assert monitor.probe(REVISION).state == HealthState.UNHEALTHY

    def test_all_healthy(self, clock) -> None:
        monitor = HealthMonitor(
            [_check(HealthState.HEALTHY, name="ecs"), _check(HealthState.HEALTHY, name="http")],
            _policy(), clock=clock,
        )

        assert monitor.probe(REVISION).state == HealthState.HEALTHY

    def test_transient_error_is_pending(self, clock, client_error) -> None:
        check = MagicMock()
        check.name = "ecs"
        check.check.side_effect = client_error("ThrottlingException", "slow down")
        monitor = HealthMonitor([check], _policy(), clock=clock)

        sample = monitor.probe(REVISION)

        assert sample.state == HealthState.PENDING
        assert sample.detail.startswith("ecs:")

    def test_permanent_error_is_unhealthy(self, clock, client_error) -> None:
        check = MagicMock()
        check.name = "ecs"
        check.check.side_effect = client_error("AccessDeniedException", "no")
        monitor = HealthMonitor([check], _policy(), clock=clock)

        assert monitor.probe(REVISION).state == HealthState.UNHEALTHY


class TestEcsServiceHealthCheck:
    """Tests for the ECS deployment and target health signal."""

    def _check(self, deployment: DeploymentStatus, targets=None) -> HealthSample:
        platform = MagicMock()
        platform.describe.return_value = _status(deployment)
        platform.target_health.return_value = targets or {}
        return EcsServiceHealthCheck(platform).check(REVISION)

    def test_missing_deployment(self) -> None:
        other = DeploymentStatus(id="d-1", task_definition="other:1", status="PRIMARY")

        assert self._check(other).state == HealthState.UNHEALTHY

    def test_failed_rollout(self) -> None:
        deployment = DeploymentStatus(
            id="d-1", task_definition=REVISION, status="PRIMARY",
            rollout_state="FAILED", rollout_state_reason="tasks failed to start",
        )

        sample = self._check(deployment)

        assert sample.state == HealthState.UNHEALTHY
        assert sample.detail == "tasks failed to start"

    def test_failed_tasks(self) -> None:
        deployment = DeploymentStatus(id="d-1", task_definition=REVISION, status="PRIMARY",
                                      desired_count=2, failed_tasks=1)

        assert self._check(deployment).state == HealthState.UNHEALTHY

    def test_tasks_starting(self) -> None:
        deployment = DeploymentStatus(id="d-1", task_definition=REVISION, status="PRIMARY",
                                      desired_count=2, running_count=1)

        sample = self._check(deployment)

        assert sample.state == HealthState.PENDING
        assert sample.detail == "1/2 tasks running"

    def test_targets(self) -> None:
        deployment = DeploymentStatus(id="d-1", task_definition=REVISION, status="PRIMARY",
                                      desired_count=2, running_count=2)

        assert self._check(deployment, {"a:80": "healthy", "b:80": "initial"}).state == HealthState.PENDING
        assert self._check(deployment, {"a:80": "unhealthy"}).state == HealthState.UNHEALTHY
        assert self._check(deployment, {"a:80": "healthy", "b:80": "draining"}).state == HealthState.HEALTHY


class TestHttpHealthCheck:
    """Tests for the HTTP health signal."""

    def test_passing_status(self) -> None:
        session = MagicMock()
        session.get.return_value.status_code = 200
        check = HttpHealthCheck("http://shop.elb.example.com/", _policy(), session=session)

        sample = check.check(REVISION)

        assert sample.state == HealthState.HEALTHY
        session.get.assert_called_once_with("http://shop.elb.example.com/health", timeout=2)

    def test_failing_status(self) -> None:
        session = MagicMock()
        session.get.return_value.status_code = 503
        check = HttpHealthCheck("http://shop.elb.example.com", _policy(), session=session)

        assert check.check(REVISION).state == HealthState.UNHEALTHY

    def test_connection_error(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        check = HttpHealthCheck("http://shop.elb.example.com", _policy(), session=session)

        sample = check.check(REVISION)

        assert sample.state == HealthState.UNHEALTHY
        assert "refused" in sample.detail

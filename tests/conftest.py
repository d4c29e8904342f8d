"""Pytest configuration and shared fixtures for fargate-deploy tests."""

import itertools
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from fargate_deploy.config.models import DesiredState
from fargate_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from fargate_deploy.provisioners import PROVISIONER_CLASSES
from fargate_deploy.provisioners.base import BaseProvisioner, ProvisionResult
from fargate_deploy.release.health import HealthCheck, HealthSample, HealthState
from fargate_deploy.release.platform import (
    DeploymentStatus,
    ImageRef,
    ServicePlatform,
    ServiceStatus,
)
from fargate_deploy.state.manager import StateManager
from fargate_deploy.state.models import ResourceRecord

ACCOUNT_ID = "123456789012"


def make_client_error(code: str, message: str = "error", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _mentions(value: Any, physical_id: str) -> bool:
    if isinstance(value, dict):
        return any(_mentions(v, physical_id) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_mentions(v, physical_id) for v in value)
    return isinstance(value, str) and (
        value == physical_id or value.startswith(f"{physical_id}-") or value.endswith(f":{physical_id}")
    )


class FakeCloud:
    """In-memory stand-in for the AWS resources the provisioners manage."""

    def __init__(self):
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, List[BaseException]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def fail(self, action: str, resource_id: str, *errors: BaseException) -> None:
        """Raise ``errors`` on the next calls of ``action`` for ``resource_id``."""
        self.failures[(action, resource_id)].extend(errors)

    def record_call(self, action: str, resource_id: str) -> None:
        with self._lock:
            self.calls.append((action, resource_id))
            pending = self.failures.get((action, resource_id))
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def next_id(self, resource_id: str) -> str:
        with self._lock:
            return f"{resource_id}-{next(self._ids)}"

    def actions(self, action: str) -> List[str]:
        return [resource_id for name, resource_id in self.calls if name == action]

    def dependents_of(self, physical_id: str) -> List[str]:
        """Resource ids of live entries whose properties point at ``physical_id``."""
        with self._lock:
            return sorted(
                entry["resource_id"]
                for other_id, entry in self.resources.items()
                if other_id != physical_id and _mentions(entry["properties"], physical_id)
            )

    def remove(self, physical_id: str) -> None:
        with self._lock:
            self.resources.pop(physical_id, None)


class FakeProvisioner(BaseProvisioner):
    """Provisioner that creates entries in a FakeCloud."""

    def __init__(self, cloud: FakeCloud, kind: str, replace_on=frozenset()):
        super().__init__(clients=None)
        self.cloud = cloud
        self.kind = kind
        self.replace_on = frozenset(replace_on)

    def _outputs(self, physical_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {"Arn": f"arn:aws:fake:::{physical_id}"}
        if self.kind == "AWS::EC2::Subnet":
            outputs["SubnetIds"] = [f"{physical_id}-a", f"{physical_id}-b"]
        if self.kind == "AWS::ElasticLoadBalancingV2::LoadBalancer":
            outputs["DNSName"] = f"{physical_id}.elb.example.com"
        if "ClusterName" in properties:
            outputs["ClusterName"] = properties["ClusterName"]
        if "ServiceName" in properties:
            outputs["ServiceName"] = properties["ServiceName"]
        return outputs

    def create(self, resource_id, properties, tags):
        self.cloud.record_call("create", resource_id)
        with self.cloud._lock:
            for physical_id, entry in self.cloud.resources.items():
                if entry["resource_id"] == resource_id:
                    return ProvisionResult(physical_id, self._outputs(physical_id, properties))
            physical_id = self.cloud.next_id(resource_id)
            self.cloud.resources[physical_id] = {
                "resource_id": resource_id,
                "properties": properties,
                "tags": tags,
            }
        return ProvisionResult(physical_id, self._outputs(physical_id, properties))

    def update(self, record, properties, tags):
        self.cloud.record_call("update", record.id)
        self.cloud.resources[record.physical_id]["properties"] = properties
        return ProvisionResult(record.physical_id, dict(record.outputs))

    def wait_until_ready(self, result, timeout):
        entry = self.cloud.resources.get(result.physical_id)
        self.cloud.record_call("wait", entry["resource_id"] if entry else result.physical_id)

    def exists(self, record: ResourceRecord) -> bool:
        return record.physical_id in self.cloud.resources

    def destroy(self, record: ResourceRecord) -> None:
        self.cloud.record_call("destroy", record.id)
        dependents = self.cloud.dependents_of(record.physical_id)
        if dependents:
            raise make_client_error(
                "DependencyViolation", f"{record.physical_id} is in use by {', '.join(dependents)}", "Delete"
            )
        self.cloud.remove(record.physical_id)


class FakeServicePlatform(ServicePlatform):
    """In-memory service with numbered task definition revisions."""

    def __init__(self, service_name: str = "shop-staging", image: str = "repo@sha256:" + "0" * 64):
        self.service_name = service_name
        self.revisions: Dict[str, str] = {}
        self.discarded: List[str] = []
        self.rollouts: List[str] = []
        self.decommissioned: List[str] = []
        self.images: Dict[str, str] = {}
        self.failures: Dict[str, List[BaseException]] = defaultdict(list)
        self._counter = itertools.count(1)
        self.serving = self._new_revision(image)

    def _new_revision(self, image: str) -> str:
        arn = f"arn:aws:ecs:us-east-1:{ACCOUNT_ID}:task-definition/{self.service_name}:{next(self._counter)}"
        self.revisions[arn] = image
        return arn

    def _maybe_fail(self, method: str) -> None:
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def publish(self, tag: str, digest: str) -> None:
        self.images[tag] = digest

    def resolve_image(self, image: ImageRef) -> str:
        self._maybe_fail("resolve_image")
        digest = image.digest or self.images.get(image.tag)
        if digest is None:
            raise make_client_error("ImageNotFoundException", f"tag {image.tag} not found", "DescribeImages")
        return f"{ACCOUNT_ID}.dkr.ecr.us-east-1.amazonaws.com/shop@{digest}"

    def current_revision(self) -> str:
        return self.serving

    def revision_image(self, revision: str) -> Optional[str]:
        return self.revisions.get(revision)

    def register_revision(self, base_revision: str, image_uri: str) -> str:
        self._maybe_fail("register_revision")
        return self._new_revision(image_uri)

    def start_rollout(self, revision: str) -> None:
        self._maybe_fail("start_rollout")
        self.rollouts.append(revision)
        self.serving = revision

    def describe(self) -> ServiceStatus:
        self._maybe_fail("describe")
        return ServiceStatus(
            service_name=self.service_name,
            task_definition=self.serving,
            desired_count=1,
            running_count=1,
            deployments=[DeploymentStatus(id="ecs-svc/1", task_definition=self.serving, status="PRIMARY",
                                          desired_count=1, running_count=1)],
        )

    def target_health(self) -> Dict[str, str]:
        return {"10.0.0.5:80": "healthy"}

    def decommission(self, revision: str, timeout: int) -> None:
        self._maybe_fail("decommission")
        self.decommissioned.append(revision)

    def discard_revision(self, revision: str) -> None:
        self._maybe_fail("discard_revision")
        self.discarded.append(revision)


class ScriptedHealthCheck(HealthCheck):
    """Reports a fixed state per revision, or a scripted sequence of states."""

    name = "scripted"

    def __init__(self, default: HealthState = HealthState.HEALTHY):
        self.default = default
        self.states: Dict[str, HealthState] = {}
        self.sequence: List[HealthState] = []
        self.on_check: Optional[Callable[[str], None]] = None
        self.checked: List[str] = []

    def check(self, revision: str) -> HealthSample:
        self.checked.append(revision)
        if self.on_check is not None:
            self.on_check(revision)
        if self.sequence:
            state = self.sequence.pop(0)
        else:
            state = self.states.get(revision, self.default)
        return HealthSample(state, f"{revision} {state.value}")


@pytest.fixture
def client_error() -> Callable[..., ClientError]:
    """Factory for botocore ClientErrors."""
    return make_client_error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def desired_state() -> DesiredState:
    """Desired state with fast health checks and retries."""
    return DesiredState(
        app_name="shop",
        environment="staging",
        region="us-east-1",
        account_id=ACCOUNT_ID,
        desired_count=2,
        tags={"team": "platform"},
        health_check={
            "path": "/health",
            "interval": 5,
            "timeout": 2,
            "healthy_threshold": 2,
            "unhealthy_threshold": 2,
            "grace_period": 0,
        },
        retry={"max_attempts": 3, "base_delay": 0.5, "max_delay": 2.0},
        release={"rollout_timeout": 60, "rollback_timeout": 60},
    )


@pytest.fixture
def state_manager(tmp_path: Path) -> StateManager:
    return StateManager(
        str(tmp_path / "state" / "shop-staging.json"),
        environment="staging",
        region="us-east-1",
        app_name="shop",
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def provisioners(cloud: FakeCloud) -> Dict[str, BaseProvisioner]:
    """Fake provisioners for every resource kind, with the real replace-only properties."""
    return {cls.kind: FakeProvisioner(cloud, cls.kind, cls.replace_on) for cls in PROVISIONER_CLASSES}


@pytest.fixture
def platform() -> FakeServicePlatform:
    fake = FakeServicePlatform()
    fake.publish("v2", "sha256:" + "2" * 64)
    fake.publish("v3", "sha256:" + "3" * 64)
    return fake


@pytest.fixture
def health_check() -> ScriptedHealthCheck:
    return ScriptedHealthCheck()


@pytest.fixture
def cancel_event() -> threading.Event:
    return threading.Event()


@pytest.fixture
def orchestrator(desired_state, state_manager, provisioners, platform, health_check, cancel_event, clock):
    """Orchestrator wired to the fake cloud, platform, health check and clock."""
    return DeploymentOrchestrator(
        desired=desired_state,
        state_manager=state_manager,
        provisioners=provisioners,
        platform=platform,
        health_checks=[health_check],
        cancel_event=cancel_event,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def aws():
    """Client manager whose ``get_client`` hands out one MagicMock per service."""
    clients = defaultdict(MagicMock)
    manager = MagicMock()
    manager.get_client.side_effect = clients.__getitem__
    manager.clients = clients
    return manager

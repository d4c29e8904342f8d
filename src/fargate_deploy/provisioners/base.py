"""Base provisioner interface and abstract classes."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List

from botocore.exceptions import ClientError, WaiterError

from fargate_deploy.state.models import ResourceRecord
from fargate_deploy.utils.logging import get_logger

# Tag that ties an AWS resource to its logical id
RESOURCE_ID_TAG = 'fargate:resource-id'


@dataclass
class ProvisionResult:
    """Outcome of a create or update call."""
    physical_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def to_aws_tags(tags: Dict[str, str], key: str = 'Key', value: str = 'Value') -> List[Dict[str, str]]:
    """Convert a tag dict to the AWS list form, sorted by key."""
    return [{key: k, value: v} for k, v in sorted(tags.items())]


def ownership_filters(tags: Dict[str, str]) -> List[Dict[str, Any]]:
    """EC2 describe filters matching the ``fargate:`` ownership tags."""
    return [
        {'Name': f'tag:{key}', 'Values': [value]}
        for key, value in sorted(tags.items())
        if key.startswith('fargate:')
    ]


class BaseProvisioner(ABC):
    """Base class for all resource provisioners.

    ``create`` must be idempotent: before creating, a provisioner looks for
    an existing resource by name or by the ``fargate:resource-id`` tag and
    adopts it, so a retried or resumed create never duplicates a resource.
    """

    # AWS resource type handled by this provisioner
    kind: str = ''

    # Properties that cannot change in place; a change means replacement
    replace_on: FrozenSet[str] = frozenset()

    # Seconds between readiness polls
    poll_delay: int = 5

    # botocore ClientError codes that mean the resource is gone
    not_found_codes: FrozenSet[str] = frozenset()

    def __init__(self, clients):
        """Initialize provisioner with an AWS client manager.

        Args:
            clients: AWSClientManager (or any object with ``get_client``)
        """
        self.clients = clients
        self.logger = get_logger(self.__class__.__module__)

    def client(self, service_name: str):
        return self.clients.get_client(service_name)

    @abstractmethod
    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        """Create the resource, or adopt it if it already exists.

        Args:
            resource_id: Logical resource id
            properties: Desired properties with references resolved
            tags: Tags to apply

        Returns:
            ProvisionResult with the physical id and provider outputs
        """

    def update(
        self,
        record: ResourceRecord,
        properties: Dict[str, Any],
        tags: Dict[str, str]
    ) -> ProvisionResult:
        """Update the resource in place.

        The default implementation has nothing mutable to change and keeps
        the recorded physical id and outputs.
        """
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    @abstractmethod
    def destroy(self, record: ResourceRecord) -> None:
        """Destroy the resource. Missing resources are ignored."""

    @abstractmethod
    def exists(self, record: ResourceRecord) -> bool:
        """Return True if the recorded physical id still resolves in AWS."""

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        """Block until the resource is usable by its dependents.

        Args:
            result: Result of the create/update call
            timeout: Maximum seconds to wait
        """

    def requires_replacement(self, old: Dict[str, Any], new: Dict[str, Any]) -> bool:
        """Return True if any changed property is replace-only."""
        changed = {key for key in set(old) | set(new) if old.get(key) != new.get(key)}
        return bool(changed & self.replace_on)

    def _waiter_config(self, timeout: int) -> Dict[str, int]:
        return {
            'Delay': self.poll_delay,
            'MaxAttempts': max(1, int(timeout // self.poll_delay)),
        }

    def _poll(self, check: Callable[[], bool], timeout: int, name: str) -> None:
        """Poll ``check`` until it returns True, for APIs without a waiter.

        Raises:
            WaiterError: If ``check`` is still False after ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout
        while not check():
            if time.monotonic() >= deadline:
                raise WaiterError(name=name, reason=f'timed out after {timeout}s', last_response={})
            time.sleep(self.poll_delay)

    def _ignore_not_found(self, error: ClientError) -> None:
        """Re-raise ``error`` unless it reports a missing resource."""
        if error_code(error) not in self.not_found_codes:
            raise error

"""Service platform: the container-service operations a release needs."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fargate_deploy.provisioners.compute import container_image, copy_task_definition, ecs_tags
from fargate_deploy.utils.errors import ConfigurationError, ErrorContext, ProviderError
from fargate_deploy.utils.logging import get_logger

DIGEST_PATTERN = re.compile(r'^sha256:[a-f0-9]{64}$')
TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')


@dataclass(frozen=True)
class ImageRef:
    """A parsed image reference.

    Exactly one of ``tag`` and ``digest`` is set. ``repository`` and
    ``registry`` are None when the reference did not name them.
    """
    tag: Optional[str] = None
    digest: Optional[str] = None
    repository: Optional[str] = None
    registry: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.digest or self.tag


def parse_image_ref(image_ref: str) -> ImageRef:
    """Parse ``tag``, ``repo:tag``, ``repo@sha256:...`` or a full registry URI.

    Raises:
        ConfigurationError: If the reference is malformed
    """
    value = (image_ref or '').strip()
    if not value:
        raise ConfigurationError("Image reference must not be empty")

    def invalid(reason: str) -> ConfigurationError:
        return ConfigurationError(
            f"Invalid image reference '{image_ref}': {reason}",
            suggestions=['Use tag, repo:tag, repo@sha256:<digest> or <registry>/<repo>:<tag>']
        )

    digest = tag = None
    name = value
    if '@' in value:
        name, digest = value.split('@', 1)
        if not DIGEST_PATTERN.match(digest):
            raise invalid("digest must be sha256:<64 hex characters>")
    else:
        last = value.rsplit('/', 1)[-1]
        if ':' in last:
            name, tag = value.rsplit(':', 1)
        elif '/' not in value:
            name, tag = '', value
        else:
            raise invalid("a tag or digest is required")
        if not TAG_PATTERN.match(tag):
            raise invalid(f"'{tag}' is not a valid tag")

    registry = None
    if '/' in name:
        first, rest = name.split('/', 1)
        if '.' in first or ':' in first or first == 'localhost':
            registry, name = first, rest
    if name and not re.match(r'^[a-z0-9]+(?:[._/-][a-z0-9]+)*$', name):
        raise invalid(f"'{name}' is not a valid repository name")

    return ImageRef(tag=tag, digest=digest, repository=name or None, registry=registry)


@dataclass
class DeploymentStatus:
    """One ECS deployment of the service."""
    id: str
    task_definition: str
    status: str
    desired_count: int = 0
    running_count: int = 0
    pending_count: int = 0
    failed_tasks: int = 0
    rollout_state: Optional[str] = None
    rollout_state_reason: Optional[str] = None


@dataclass
class ServiceStatus:
    """Snapshot of the service as the platform reports it."""
    service_name: str
    task_definition: str
    desired_count: int
    running_count: int
    deployments: List[DeploymentStatus] = field(default_factory=list)
    target_group_arn: Optional[str] = None

    def deployment_for(self, revision: str) -> Optional[DeploymentStatus]:
        for deployment in self.deployments:
            if deployment.task_definition == revision:
                return deployment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'service_name': self.service_name,
            'task_definition': self.task_definition,
            'desired_count': self.desired_count,
            'running_count': self.running_count,
            'deployments': [
                {
                    'task_definition': d.task_definition,
                    'status': d.status,
                    'running': d.running_count,
                    'desired': d.desired_count,
                    'rollout_state': d.rollout_state,
                }
                for d in self.deployments
            ],
        }


class ServicePlatform(ABC):
    """Operations the release coordinator drives on a running service."""

    service_name: str = ''

    @abstractmethod
    def resolve_image(self, image: ImageRef) -> str:
        """Return the digest-qualified URI of a published image."""

    @abstractmethod
    def current_revision(self) -> str:
        """Task definition revision the service is serving."""

    @abstractmethod
    def revision_image(self, revision: str) -> Optional[str]:
        """Image the service container runs in ``revision``."""

    @abstractmethod
    def register_revision(self, base_revision: str, image_uri: str) -> str:
        """Register a copy of ``base_revision`` running ``image_uri``."""

    @abstractmethod
    def start_rollout(self, revision: str) -> None:
        """Point the service at ``revision``; new tasks launch beside the old."""

    @abstractmethod
    def describe(self) -> ServiceStatus:
        """Current service and deployment status."""

    @abstractmethod
    def target_health(self) -> Dict[str, str]:
        """Load balancer target states keyed by target id."""

    @abstractmethod
    def decommission(self, revision: str, timeout: int) -> None:
        """Wait for tasks of a superseded revision to drain."""

    @abstractmethod
    def discard_revision(self, revision: str) -> None:
        """Deregister a revision that never became the serving revision."""


class EcsServicePlatform(ServicePlatform):
    """ServicePlatform backed by ECS, ECR and Elastic Load Balancing."""

    def __init__(
        self,
        clients,
        cluster: str,
        service_name: str,
        container_name: str,
        repository_uri: str
    ):
        """Initialize ECS service platform.

        Args:
            clients: AWSClientManager
            cluster: Cluster name or ARN
            service_name: ECS service name
            container_name: Container whose image a release replaces
            repository_uri: Default ECR repository URI for bare tags
        """
        self.clients = clients
        self.cluster = cluster
        self.service_name = service_name
        self.container_name = container_name
        self.registry, self.repository = repository_uri.split('/', 1)
        self.logger = get_logger(__name__)

    @property
    def ecs(self):
        return self.clients.get_client('ecs')

    def resolve_image(self, image: ImageRef) -> str:
        repository = image.repository or self.repository
        registry = image.registry or self.registry
        image_id = {'imageDigest': image.digest} if image.digest else {'imageTag': image.tag}

        details = self.clients.get_client('ecr').describe_images(
            repositoryName=repository, imageIds=[image_id]
        )['imageDetails']
        if not details:
            raise ProviderError(
                f"Image {repository}:{image.identifier} is not published",
                context=ErrorContext(aws_service='ecr', aws_operation='DescribeImages')
            )
        digest = details[0]['imageDigest']
        self.logger.info(f"Resolved {repository}:{image.identifier} to {digest}")
        return f"{registry}/{repository}@{digest}"

    def _service(self) -> Dict[str, Any]:
        services = self.ecs.describe_services(cluster=self.cluster, services=[self.service_name])['services']
        active = [s for s in services if s.get('status') == 'ACTIVE']
        if not active:
            raise ProviderError(
                f"Service {self.service_name} not found in cluster {self.cluster}",
                suggestions=['Run apply to create the service before releasing']
            )
        return active[0]

    def current_revision(self) -> str:
        return self._service()['taskDefinition']

    def _task_definition(self, revision: str) -> Dict[str, Any]:
        return self.ecs.describe_task_definition(taskDefinition=revision)['taskDefinition']

    def revision_image(self, revision: str) -> Optional[str]:
        return container_image(self._task_definition(revision), self.container_name)

    def register_revision(self, base_revision: str, image_uri: str) -> str:
        response = self.ecs.describe_task_definition(taskDefinition=base_revision, include=['TAGS'])
        registration = copy_task_definition(response['taskDefinition'], self.container_name, image_uri)
        tags = {tag['key']: tag['value'] for tag in response.get('tags', [])}
        if tags:
            registration['tags'] = ecs_tags(tags)
        arn = self.ecs.register_task_definition(**registration)['taskDefinition']['taskDefinitionArn']
        self.logger.info(f"Registered task definition {arn}")
        return arn

    def start_rollout(self, revision: str) -> None:
        self.ecs.update_service(
            cluster=self.cluster,
            service=self.service_name,
            taskDefinition=revision,
            deploymentConfiguration={
                'minimumHealthyPercent': 100,
                'maximumPercent': 200,
                'deploymentCircuitBreaker': {'enable': False, 'rollback': False},
            },
            forceNewDeployment=True
        )
        self.logger.info(f"Service {self.service_name} rolling out {revision}")

    def describe(self) -> ServiceStatus:
        service = self._service()
        balancers = service.get('loadBalancers') or []
        return ServiceStatus(
            service_name=service['serviceName'],
            task_definition=service['taskDefinition'],
            desired_count=service.get('desiredCount', 0),
            running_count=service.get('runningCount', 0),
            target_group_arn=balancers[0].get('targetGroupArn') if balancers else None,
            deployments=[
                DeploymentStatus(
                    id=d['id'],
                    task_definition=d['taskDefinition'],
                    status=d['status'],
                    desired_count=d.get('desiredCount', 0),
                    running_count=d.get('runningCount', 0),
                    pending_count=d.get('pendingCount', 0),
                    failed_tasks=d.get('failedTasks', 0),
                    rollout_state=d.get('rolloutState'),
                    rollout_state_reason=d.get('rolloutStateReason'),
                )
                for d in service.get('deployments', [])
            ],
        )

    def target_health(self) -> Dict[str, str]:
        target_group = self.describe().target_group_arn
        if target_group is None:
            return {}
        descriptions = self.clients.get_client('elbv2').describe_target_health(
            TargetGroupArn=target_group
        )['TargetHealthDescriptions']
        return {
            f"{d['Target']['Id']}:{d['Target'].get('Port', '')}": d['TargetHealth']['State']
            for d in descriptions
        }

    def decommission(self, revision: str, timeout: int) -> None:
        # services_stable also requires a single remaining deployment
        self.ecs.get_waiter('services_stable').wait(
            cluster=self.cluster,
            services=[self.service_name],
            WaiterConfig={'Delay': 15, 'MaxAttempts': max(1, timeout // 15)}
        )
        self.logger.info(f"Tasks of {revision} drained")

    def discard_revision(self, revision: str) -> None:
        self.ecs.deregister_task_definition(taskDefinition=revision)
        self.logger.info(f"Deregistered task definition {revision}")

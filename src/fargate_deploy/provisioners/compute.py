"""ECS cluster and Fargate service provisioners."""

import copy
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from fargate_deploy.provisioners.base import (
    BaseProvisioner,
    ProvisionResult,
    error_code,
)
from fargate_deploy.state.models import ResourceRecord

# Fields returned by describe_task_definition that register_task_definition rejects
READ_ONLY_TASK_DEFINITION_KEYS = (
    'taskDefinitionArn',
    'revision',
    'status',
    'requiresAttributes',
    'compatibilities',
    'registeredAt',
    'registeredBy',
    'deregisteredAt',
)

# Service properties that live in the task definition
TASK_DEFINITION_PROPERTIES = frozenset({
    'Family', 'Cpu', 'Memory', 'ContainerName', 'ContainerPort',
    'Image', 'ExecutionRoleArn', 'LogGroupName', 'Region', 'Environment',
})


def ecs_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{'key': k, 'value': v} for k, v in sorted(tags.items())]


def build_task_definition(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Build register_task_definition arguments for a single-container task."""
    return {
        'family': properties['Family'],
        'networkMode': 'awsvpc',
        'requiresCompatibilities': ['FARGATE'],
        'cpu': str(properties['Cpu']),
        'memory': str(properties['Memory']),
        'executionRoleArn': properties['ExecutionRoleArn'],
        'containerDefinitions': [{
            'name': properties['ContainerName'],
            'image': properties['Image'],
            'essential': True,
            'portMappings': [{'containerPort': properties['ContainerPort'], 'protocol': 'tcp'}],
            'environment': [
                {'name': key, 'value': value}
                for key, value in sorted(properties.get('Environment', {}).items())
            ],
            'logConfiguration': {
                'logDriver': 'awslogs',
                'options': {
                    'awslogs-group': properties['LogGroupName'],
                    'awslogs-region': properties['Region'],
                    'awslogs-stream-prefix': 'ecs',
                },
            },
        }],
    }


def copy_task_definition(
    task_definition: Dict[str, Any],
    container_name: str,
    image: Optional[str] = None
) -> Dict[str, Any]:
    """Turn a described task definition into register arguments.

    Args:
        task_definition: ``taskDefinition`` from describe_task_definition
        container_name: Container whose image is replaced
        image: New image URI; the current image is kept when None

    Returns:
        Arguments for register_task_definition
    """
    registration = {
        key: value
        for key, value in copy.deepcopy(task_definition).items()
        if key not in READ_ONLY_TASK_DEFINITION_KEYS
    }
    if image is not None:
        containers = registration.get('containerDefinitions', [])
        matched = [c for c in containers if c['name'] == container_name]
        if not matched:
            raise ValueError(f"Task definition has no container named {container_name}")
        matched[0]['image'] = image
    return registration


def container_image(task_definition: Dict[str, Any], container_name: str) -> Optional[str]:
    for container in task_definition.get('containerDefinitions', []):
        if container['name'] == container_name:
            return container['image']
    return None


class ClusterProvisioner(BaseProvisioner):
    """Provisioner for the ECS cluster (Fargate capacity only)."""

    kind = 'AWS::ECS::Cluster'
    replace_on = frozenset({'ClusterName'})
    not_found_codes = frozenset({'ClusterNotFoundException'})
    poll_delay = 2

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        ecs = self.client('ecs')
        name = properties['ClusterName']
        cluster = self._describe(name)
        if cluster is not None and cluster['status'] == 'ACTIVE':
            self.logger.info(f"Adopting existing ECS cluster {name}")
            self._apply_settings(name, properties)
        else:
            cluster = ecs.create_cluster(
                clusterName=name,
                capacityProviders=['FARGATE'],
                defaultCapacityProviderStrategy=[{'capacityProvider': 'FARGATE', 'weight': 1}],
                settings=[{'name': 'containerInsights', 'value': properties.get('ContainerInsights', 'enabled')}],
                tags=ecs_tags(tags)
            )['cluster']
            self.logger.info(f"Created ECS cluster {name}")

        return ProvisionResult(
            physical_id=cluster['clusterArn'],
            outputs={'Arn': cluster['clusterArn'], 'ClusterName': name}
        )

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self._apply_settings(record.physical_id, properties)
        self.client('ecs').tag_resource(resourceArn=record.physical_id, tags=ecs_tags(tags))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _apply_settings(self, cluster: str, properties: Dict[str, Any]) -> None:
        self.client('ecs').update_cluster_settings(
            cluster=cluster,
            settings=[{'name': 'containerInsights', 'value': properties.get('ContainerInsights', 'enabled')}]
        )

    def _describe(self, cluster: str) -> Optional[Dict[str, Any]]:
        clusters = self.client('ecs').describe_clusters(clusters=[cluster])['clusters']
        return clusters[0] if clusters else None

    def _is_active(self, cluster: str) -> bool:
        described = self._describe(cluster)
        return described is not None and described['status'] == 'ACTIVE'

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self._poll(lambda: self._is_active(result.physical_id), timeout, 'ClusterActive')

    def exists(self, record: ResourceRecord) -> bool:
        return self._is_active(record.physical_id)

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('ecs').delete_cluster(cluster=record.physical_id)
            self.logger.info(f"Deleted ECS cluster {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)


class ServiceProvisioner(BaseProvisioner):
    """Provisioner for the Fargate service and its initial task definition.

    Once the service exists, the running image belongs to the release
    coordinator: an in-place update that changes task settings (CPU, memory,
    environment) copies the currently running task definition and only
    replaces the image when the ``Image`` property itself changed.
    """

    kind = 'AWS::ECS::Service'
    replace_on = frozenset({'ServiceName', 'Cluster', 'TargetGroupArn', 'ContainerName', 'ContainerPort'})
    not_found_codes = frozenset({'ServiceNotFoundException', 'ClusterNotFoundException'})
    poll_delay = 15

    @staticmethod
    def _network(properties: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'awsvpcConfiguration': {
                'subnets': properties['Subnets'],
                'securityGroups': properties['SecurityGroups'],
                'assignPublicIp': properties.get('AssignPublicIp', 'ENABLED'),
            }
        }

    @staticmethod
    def _deployment_configuration(properties: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'minimumHealthyPercent': properties.get('MinimumHealthyPercent', 100),
            'maximumPercent': properties.get('MaximumPercent', 200),
            # Rollback is decided by the release coordinator
            'deploymentCircuitBreaker': {'enable': False, 'rollback': False},
        }

    def _describe(self, cluster: str, service: str) -> Optional[Dict[str, Any]]:
        try:
            services = self.client('ecs').describe_services(cluster=cluster, services=[service])['services']
        except ClientError as e:
            self._ignore_not_found(e)
            return None
        active = [s for s in services if s.get('status') != 'INACTIVE']
        return active[0] if active else None

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        ecs = self.client('ecs')
        service = self._describe(properties['Cluster'], properties['ServiceName'])
        if service is not None:
            self.logger.info(f"Adopting existing ECS service {properties['ServiceName']}")
            service = ecs.update_service(
                cluster=properties['Cluster'],
                service=properties['ServiceName'],
                desiredCount=properties['DesiredCount'],
                networkConfiguration=self._network(properties),
                deploymentConfiguration=self._deployment_configuration(properties),
                healthCheckGracePeriodSeconds=properties['HealthCheckGracePeriod']
            )['service']
        else:
            task_definition_arn = ecs.register_task_definition(
                tags=ecs_tags(tags), **build_task_definition(properties)
            )['taskDefinition']['taskDefinitionArn']
            self.logger.info(f"Registered task definition {task_definition_arn}")

            service = ecs.create_service(
                cluster=properties['Cluster'],
                serviceName=properties['ServiceName'],
                taskDefinition=task_definition_arn,
                desiredCount=properties['DesiredCount'],
                launchType='FARGATE',
                networkConfiguration=self._network(properties),
                loadBalancers=[{
                    'targetGroupArn': properties['TargetGroupArn'],
                    'containerName': properties['ContainerName'],
                    'containerPort': properties['ContainerPort'],
                }],
                healthCheckGracePeriodSeconds=properties['HealthCheckGracePeriod'],
                deploymentConfiguration=self._deployment_configuration(properties),
                propagateTags='SERVICE',
                tags=ecs_tags(tags)
            )['service']
            self.logger.info(f"Created ECS service {properties['ServiceName']}")

        return self._result(service, properties)

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        ecs = self.client('ecs')
        previous = record.properties
        changed = {key for key in set(previous) | set(properties) if previous.get(key) != properties.get(key)}

        kwargs: Dict[str, Any] = {
            'cluster': properties['Cluster'],
            'service': properties['ServiceName'],
            'desiredCount': properties['DesiredCount'],
            'networkConfiguration': self._network(properties),
            'deploymentConfiguration': self._deployment_configuration(properties),
            'healthCheckGracePeriodSeconds': properties['HealthCheckGracePeriod'],
        }

        if changed & TASK_DEFINITION_PROPERTIES:
            kwargs['taskDefinition'] = self._register_updated_revision(record, properties, changed, tags)

        service = ecs.update_service(**kwargs)['service']
        self.logger.info(f"Updated ECS service {properties['ServiceName']} ({', '.join(sorted(changed))})")
        return self._result(service, properties)

    def _register_updated_revision(
        self,
        record: ResourceRecord,
        properties: Dict[str, Any],
        changed: set,
        tags: Dict[str, str]
    ) -> str:
        """Register a revision with the new task settings and the serving image."""
        ecs = self.client('ecs')
        current = self._describe(properties['Cluster'], properties['ServiceName'])
        desired = build_task_definition(properties)
        if current is not None and 'Image' not in changed:
            running = ecs.describe_task_definition(
                taskDefinition=current['taskDefinition']
            )['taskDefinition']
            image = container_image(running, properties['ContainerName'])
            if image:
                desired['containerDefinitions'][0]['image'] = image

        arn = ecs.register_task_definition(tags=ecs_tags(tags), **desired)['taskDefinition']['taskDefinitionArn']
        self.logger.info(f"Registered task definition {arn}")
        return arn

    @staticmethod
    def _result(service: Dict[str, Any], properties: Dict[str, Any]) -> ProvisionResult:
        return ProvisionResult(
            physical_id=service['serviceArn'],
            outputs={
                'ServiceName': service['serviceName'],
                'ClusterArn': service.get('clusterArn', properties['Cluster']),
                'TaskDefinitionArn': service.get('taskDefinition'),
            }
        )

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self.client('ecs').get_waiter('services_stable').wait(
            cluster=result.outputs['ClusterArn'],
            services=[result.outputs['ServiceName']],
            WaiterConfig=self._waiter_config(timeout)
        )

    def exists(self, record: ResourceRecord) -> bool:
        return self._describe(record.outputs['ClusterArn'], record.outputs['ServiceName']) is not None

    def destroy(self, record: ResourceRecord) -> None:
        ecs = self.client('ecs')
        cluster = record.outputs['ClusterArn']
        service = record.outputs['ServiceName']
        try:
            ecs.update_service(cluster=cluster, service=service, desiredCount=0)
            ecs.delete_service(cluster=cluster, service=service, force=True)
        except ClientError as e:
            if error_code(e) == 'ServiceNotActiveException':
                return
            self._ignore_not_found(e)
            return
        ecs.get_waiter('services_inactive').wait(
            cluster=cluster, services=[service], WaiterConfig=self._waiter_config(600)
        )
        self.logger.info(f"Deleted ECS service {service}")

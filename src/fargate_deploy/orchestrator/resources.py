"""Desired resource set derived from a DesiredState."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from fargate_deploy.config.models import DesiredState
from fargate_deploy.provisioners.base import RESOURCE_ID_TAG
from fargate_deploy.provisioners.security import ECS_TASK_EXECUTION_POLICY
from fargate_deploy.state.models import ResourceRecord, compute_config_hash
from fargate_deploy.utils.errors import DependencyError, ErrorContext


class Tier(IntEnum):
    """Dependency tiers, applied strictly in this order."""
    NETWORK = 0
    SECURITY = 1
    REGISTRY = 2
    COMPUTE = 3
    LOAD_BALANCER = 4
    SERVICE = 5

    @property
    def label(self) -> str:
        return self.name.lower().replace('_', '-')


@dataclass(frozen=True)
class DesiredResource:
    """One resource the environment should have.

    ``properties`` may contain references (see ``ref``) that are resolved
    against recorded state at apply time, so the configuration hash is known
    before any physical id exists.
    """
    id: str
    kind: str
    tier: Tier
    properties: Dict[str, Any]
    dependencies: Tuple[str, ...] = ()
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def config_hash(self) -> str:
        return compute_config_hash({
            'kind': self.kind,
            'properties': self.properties,
            'tags': self.tags,
        })


def ref(resource_id: str, attr: Optional[str] = None) -> Dict[str, str]:
    """Reference another resource's physical id, or one of its outputs."""
    if attr is None:
        return {'Ref': resource_id}
    return {'Ref': resource_id, 'Attr': attr}


def _is_ref(value: Any) -> bool:
    return isinstance(value, dict) and 'Ref' in value and set(value) <= {'Ref', 'Attr'}


def find_references(value: Any) -> List[str]:
    """Return the resource ids referenced anywhere in ``value``, sorted."""
    found = set()

    def walk(item: Any) -> None:
        if _is_ref(item):
            found.add(item['Ref'])
        elif isinstance(item, dict):
            for child in item.values():
                walk(child)
        elif isinstance(item, (list, tuple)):
            for child in item:
                walk(child)

    walk(value)
    return sorted(found)


def resolve_references(value: Any, records: Mapping[str, ResourceRecord]) -> Any:
    """Replace references with recorded physical ids or outputs.

    Raises:
        DependencyError: If a referenced resource has not been recorded yet
    """
    if _is_ref(value):
        record = records.get(value['Ref'])
        if record is None:
            raise DependencyError(
                f"Referenced resource '{value['Ref']}' has not been applied",
                context=ErrorContext(resource_id=value['Ref'])
            )
        if 'Attr' in value:
            if value['Attr'] not in record.outputs:
                raise DependencyError(
                    f"Resource '{record.id}' has no output '{value['Attr']}'",
                    context=ErrorContext(resource_id=record.id)
                )
            return record.outputs[value['Attr']]
        return record.physical_id
    if isinstance(value, dict):
        return {key: resolve_references(child, records) for key, child in value.items()}
    if isinstance(value, list):
        return [resolve_references(child, records) for child in value]
    return value


def _elb_name(prefix: str, suffix: str) -> str:
    """Load balancer and target group names are limited to 32 characters."""
    return f"{prefix[:31 - len(suffix)].rstrip('-')}-{suffix}"


def resource_tags(desired: DesiredState, resource_id: str) -> Dict[str, str]:
    return {
        **desired.tags,
        'fargate:app': desired.app_name,
        'fargate:environment': desired.environment,
        RESOURCE_ID_TAG: resource_id,
    }


def build_desired_resources(desired: DesiredState) -> Dict[str, DesiredResource]:
    """Build the fixed resource set for an environment.

    Args:
        desired: Desired state with placeholders resolved

    Returns:
        Desired resources keyed by logical id
    """
    prefix = desired.name_prefix
    policy = desired.health_check

    definitions = [
        ('vpc', 'AWS::EC2::VPC', Tier.NETWORK, {
            'Name': f"{prefix}-vpc",
            'CidrBlock': desired.network.vpc_cidr,
            'EnableDnsSupport': True,
            'EnableDnsHostnames': True,
        }, ()),
        ('subnets', 'AWS::EC2::Subnet', Tier.NETWORK, {
            'Name': f"{prefix}-public",
            'VpcId': ref('vpc'),
            'CidrBlocks': desired.network.subnet_cidrs(),
        }, ()),
        ('security-group', 'AWS::EC2::SecurityGroup', Tier.SECURITY, {
            'GroupName': f"{prefix}-sg",
            'Description': f"{desired.app_name} {desired.environment} load balancer and tasks",
            'VpcId': ref('vpc'),
            'Ingress': [
                {'Port': 80, 'CidrIp': '0.0.0.0/0'},
                {'Port': desired.container_port, 'SourceSelf': True},
            ],
        }, ()),
        ('execution-role', 'AWS::IAM::Role', Tier.SECURITY, {
            'RoleName': f"{prefix}-execution-role",
            'AssumeRolePrincipal': 'ecs-tasks.amazonaws.com',
            'ManagedPolicyArns': [ECS_TASK_EXECUTION_POLICY],
            'Description': f"ECS task execution role for {prefix}",
        }, ()),
        ('ecr-repo', 'AWS::ECR::Repository', Tier.REGISTRY, {
            'RepositoryName': desired.repository_name,
            'ScanOnPush': True,
            'ImageTagMutability': 'MUTABLE',
        }, ()),
        ('log-group', 'AWS::Logs::LogGroup', Tier.REGISTRY, {
            'LogGroupName': desired.log_group_name,
            'RetentionInDays': desired.log_retention_days,
        }, ()),
        ('cluster', 'AWS::ECS::Cluster', Tier.COMPUTE, {
            'ClusterName': prefix,
            'ContainerInsights': 'enabled',
        }, ()),
        ('load-balancer', 'AWS::ElasticLoadBalancingV2::LoadBalancer', Tier.LOAD_BALANCER, {
            'Name': _elb_name(prefix, 'alb'),
            'Scheme': 'internet-facing',
            'Type': 'application',
            'Subnets': ref('subnets', 'SubnetIds'),
            'SecurityGroups': [ref('security-group')],
        }, ()),
        ('target-group', 'AWS::ElasticLoadBalancingV2::TargetGroup', Tier.LOAD_BALANCER, {
            'Name': _elb_name(prefix, 'tg'),
            'Port': desired.container_port,
            'Protocol': 'HTTP',
            'TargetType': 'ip',
            'VpcId': ref('vpc'),
            'HealthCheck': {
                'Path': policy.path,
                'IntervalSeconds': policy.interval,
                'TimeoutSeconds': policy.timeout,
                'HealthyThresholdCount': policy.healthy_threshold,
                'UnhealthyThresholdCount': policy.unhealthy_threshold,
                'Matcher': policy.matcher,
            },
        }, ()),
        ('listener', 'AWS::ElasticLoadBalancingV2::Listener', Tier.LOAD_BALANCER, {
            'LoadBalancerArn': ref('load-balancer'),
            'Port': 80,
            'Protocol': 'HTTP',
            'TargetGroupArn': ref('target-group'),
        }, ()),
        ('service', 'AWS::ECS::Service', Tier.SERVICE, {
            'ServiceName': prefix,
            'Cluster': ref('cluster'),
            'DesiredCount': desired.desired_count,
            'Family': prefix,
            'Cpu': desired.cpu,
            'Memory': desired.memory,
            'ContainerName': desired.container_name,
            'ContainerPort': desired.container_port,
            'Image': desired.image_uri(),
            'Environment': dict(desired.environment_variables),
            'ExecutionRoleArn': ref('execution-role', 'Arn'),
            'LogGroupName': ref('log-group'),
            'Region': desired.region,
            'Subnets': ref('subnets', 'SubnetIds'),
            'SecurityGroups': [ref('security-group')],
            'TargetGroupArn': ref('target-group'),
            'HealthCheckGracePeriod': policy.grace_period,
            'MinimumHealthyPercent': 100,
            'MaximumPercent': 200,
        }, ('ecr-repo', 'listener')),
    ]

    resources = {}
    for resource_id, kind, tier, properties, extra in definitions:
        dependencies = tuple(sorted(set(find_references(properties)) | set(extra)))
        resources[resource_id] = DesiredResource(
            id=resource_id,
            kind=kind,
            tier=tier,
            properties=properties,
            dependencies=dependencies,
            tags=resource_tags(desired, resource_id),
        )
    return resources

"""AWS resource provisioners."""

from typing import Dict

from fargate_deploy.provisioners.base import (
    RESOURCE_ID_TAG,
    BaseProvisioner,
    ProvisionResult,
)
from fargate_deploy.provisioners.compute import ClusterProvisioner, ServiceProvisioner
from fargate_deploy.provisioners.load_balancer import (
    ListenerProvisioner,
    LoadBalancerProvisioner,
    TargetGroupProvisioner,
)
from fargate_deploy.provisioners.network import SubnetProvisioner, VpcProvisioner
from fargate_deploy.provisioners.registry import EcrRepositoryProvisioner, LogGroupProvisioner
from fargate_deploy.provisioners.security import ExecutionRoleProvisioner, SecurityGroupProvisioner

PROVISIONER_CLASSES = (
    VpcProvisioner,
    SubnetProvisioner,
    SecurityGroupProvisioner,
    ExecutionRoleProvisioner,
    EcrRepositoryProvisioner,
    LogGroupProvisioner,
    ClusterProvisioner,
    LoadBalancerProvisioner,
    TargetGroupProvisioner,
    ListenerProvisioner,
    ServiceProvisioner,
)


def default_provisioners(clients) -> Dict[str, BaseProvisioner]:
    """Instantiate every provisioner, keyed by the resource kind it handles.

    Args:
        clients: AWSClientManager shared by all provisioners

    Returns:
        Mapping of AWS resource type to provisioner
    """
    return {cls.kind: cls(clients) for cls in PROVISIONER_CLASSES}


__all__ = [
    'RESOURCE_ID_TAG',
    'BaseProvisioner',
    'ProvisionResult',
    'PROVISIONER_CLASSES',
    'default_provisioners',
    'VpcProvisioner',
    'SubnetProvisioner',
    'SecurityGroupProvisioner',
    'ExecutionRoleProvisioner',
    'EcrRepositoryProvisioner',
    'LogGroupProvisioner',
    'ClusterProvisioner',
    'LoadBalancerProvisioner',
    'TargetGroupProvisioner',
    'ListenerProvisioner',
    'ServiceProvisioner',
]

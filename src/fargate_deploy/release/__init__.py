"""Release coordination: rolling image releases with health-gated rollback."""

from fargate_deploy.release.coordinator import ReleaseCoordinator, ReleaseResult
from fargate_deploy.release.health import (
    EcsServiceHealthCheck,
    HealthCheck,
    HealthMonitor,
    HealthSample,
    HealthState,
    HealthVerdict,
    HttpHealthCheck,
)
from fargate_deploy.release.platform import (
    DeploymentStatus,
    EcsServicePlatform,
    ImageRef,
    ServicePlatform,
    ServiceStatus,
    parse_image_ref,
)

__all__ = [
    # Coordinator
    'ReleaseCoordinator',
    'ReleaseResult',

    # Health
    'HealthCheck',
    'HealthMonitor',
    'HealthSample',
    'HealthState',
    'HealthVerdict',
    'EcsServiceHealthCheck',
    'HttpHealthCheck',

    # Platform
    'ServicePlatform',
    'EcsServicePlatform',
    'ServiceStatus',
    'DeploymentStatus',
    'ImageRef',
    'parse_image_ref',
]

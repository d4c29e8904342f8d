"""Configuration loading and the DesiredState model."""

from fargate_deploy.config.models import (
    DesiredState,
    HealthCheckPolicy,
    NetworkConfig,
    ReleaseSettings,
    RetrySettings,
    resolve_placeholders,
)
from fargate_deploy.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    'Config',
    'ConfigValidationError',
    'DEFAULT_CONFIG_FILE',
    'DesiredState',
    'HealthCheckPolicy',
    'NetworkConfig',
    'ReleaseSettings',
    'RetrySettings',
    'resolve_placeholders',
]

"""Utility modules for logging, AWS client management, and helpers."""

from fargate_deploy.utils.aws_client import AWSClientManager, AWSCredentials
from fargate_deploy.utils.retry import RetryStrategy
from fargate_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    CredentialError,
    ProviderError,
    TransientProviderError,
    StateError,
    DependencyError,
    DriftError,
    HealthCheckTimeout,
    ReleaseInProgressError,
    InvalidTransitionError,
    ReleaseFailedError,
    OperatorAbortError,
    ApplyAbortedError,
    ErrorHandler,
    error_handler,
    exit_code_for,
)
from fargate_deploy.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'CredentialError',
    'ProviderError',
    'TransientProviderError',
    'StateError',
    'DependencyError',
    'DriftError',
    'HealthCheckTimeout',
    'ReleaseInProgressError',
    'InvalidTransitionError',
    'ReleaseFailedError',
    'OperatorAbortError',
    'ApplyAbortedError',
    'ErrorHandler',
    'error_handler',
    'exit_code_for',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]

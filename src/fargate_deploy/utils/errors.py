"""Error handling framework for deployment operations."""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from dataclasses import dataclass, asdict
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
    WaiterError,
)
from fargate_deploy.utils.logging import get_logger

logger = get_logger(__name__)


# CLI exit codes
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_TRANSIENT = 2
EXIT_ABORTED = 3


class ErrorCategory(Enum):
    """Categories of errors that can occur during deployment."""
    CONFIGURATION = "configuration"
    AWS = "aws"
    NETWORK = "network"
    STATE = "state"
    DEPENDENCY = "dependency"
    PROVISIONING = "provisioning"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    VALIDATION = "validation"
    DRIFT = "drift"
    RELEASE = "release"
    HEALTH = "health"
    ABORT = "abort"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Deployment cannot continue
    ERROR = "error"  # Resource failed but deployment can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    last_completed_step: Optional[str] = None
    attempt_id: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    exit_code = EXIT_USER_ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.attempt_id:
            lines.append(f"   Attempt: {self.context.attempt_id}")
        if self.context.last_completed_step:
            lines.append(f"   Last completed step: {self.context.last_completed_step}")

        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'error': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'exit_code': self.exit_code,
            'context': asdict(self.context),
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProviderError(DeploymentError):
    """Non-transient error returned by AWS. Never retried."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.AWS, **kwargs):
        super().__init__(
            message,
            category=category,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class TransientProviderError(ProviderError):
    """Throttling, eventual-consistency lag or timeout. Safe to retry."""

    exit_code = EXIT_TRANSIENT
    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.NETWORK)
        super().__init__(message, **kwargs)


class StateError(DeploymentError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(DeploymentError):
    """Error related to resource dependencies."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class DriftError(DeploymentError):
    """Recorded resources no longer exist and need operator confirmation."""

    def __init__(self, message: str, resource_ids: Sequence[str] = (), **kwargs):
        kwargs.setdefault('suggestions', [
            'Inspect the resources in the AWS console to confirm they were removed',
            'Re-run apply with --confirm-drift <resource-id> to recreate them',
        ])
        super().__init__(
            message,
            category=ErrorCategory.DRIFT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )
        self.resource_ids = list(resource_ids)


class HealthCheckTimeout(DeploymentError):
    """New revision did not report healthy within the rollout timeout."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.HEALTH,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ReleaseInProgressError(DeploymentError):
    """Another release for the same service has not finished yet."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Wait for the running release to finish',
            'Run rollback to resolve an attempt left in progress by a crashed run',
        ])
        super().__init__(
            message,
            category=ErrorCategory.RELEASE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class InvalidTransitionError(DeploymentError):
    """A deployment attempt was asked to move to a stage it cannot reach."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RELEASE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ReleaseFailedError(DeploymentError):
    """A release did not become healthy and was rolled back, or could not be."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RELEASE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class OperatorAbortError(DeploymentError):
    """The operator interrupted the run."""

    exit_code = EXIT_ABORTED

    def __init__(self, message: str = 'Aborted by operator', **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ABORT,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class ApplyAbortedError(DeploymentError):
    """An apply stopped at a failing operation.

    The exit code follows the underlying cause, so an apply that ran out of
    retries on throttling exits with the transient code.
    """

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVISIONING,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )

    @property
    def exit_code(self) -> int:
        if isinstance(self.cause, DeploymentError):
            return self.cause.exit_code
        return EXIT_USER_ERROR


def exit_code_for(error: Optional[BaseException]) -> int:
    """Map an outcome to the CLI exit code.

    Args:
        error: The error that ended the command, or None on success

    Returns:
        0 success, 1 user/config error, 2 transient failure with exhausted
        retries, 3 aborted by operator
    """
    if error is None:
        return EXIT_SUCCESS
    if isinstance(error, KeyboardInterrupt):
        return EXIT_ABORTED
    if isinstance(error, DeploymentError):
        return error.exit_code
    return EXIT_USER_ERROR


class ErrorHandler:
    """Handles and categorizes errors from AWS and other sources."""

    # Throttling, server-side and timeout codes
    RETRYABLE_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'ServiceUnavailableException',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'InternalError',
        'InternalFailure',
        'ServerException',
        'ServiceException',
    }

    # Eventual-consistency lag right after a dependency was created or removed
    EVENTUAL_CONSISTENCY_CODES = {
        'InvalidVpcID.NotFound',
        'InvalidSubnetID.NotFound',
        'InvalidGroup.NotFound',
        'InvalidInternetGatewayID.NotFound',
        'InvalidRouteTableID.NotFound',
        'DependencyViolation',
        'ResourceInUse',
        'ResourceInUseException',
        'ClusterContainsServicesException',
        'UpdateInProgressException',
    }

    # Messages that mark an otherwise permanent code as eventual consistency
    EVENTUAL_CONSISTENCY_MESSAGES = (
        'unable to assume the role',
        'role defined for the function cannot be assumed',
        'does not have an associated load balancer',
        'currently in use',
    )

    # Mapping of AWS error codes to error categories and suggestions
    AWS_ERROR_MAPPING = {
        'InvalidClientTokenId': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS credentials are invalid or expired',
            'suggestions': [
                'Verify credentials using: aws sts get-caller-identity',
                'Update credentials if they have expired'
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Check if MFA token needs to be refreshed'
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'The deploy role needs ec2, ecs, ecr, elasticloadbalancing, iam and logs permissions'
            ]
        },
        'AccessDeniedException': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role'
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct AWS region'
            ]
        },
        'LimitExceeded': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'AWS service limit exceeded',
            'suggestions': [
                'Request a service limit increase through AWS Support',
                'Review and clean up unused resources'
            ]
        },
        'VpcLimitExceeded': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'VPC limit reached for this region',
            'suggestions': [
                'Delete unused VPCs or request a limit increase'
            ]
        },
        'RepositoryNotFoundException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'ECR repository not found',
            'suggestions': [
                'Run apply to create the repository before releasing'
            ]
        },
        'ImageNotFoundException': {
            'category': ErrorCategory.RELEASE,
            'message': 'Image not found in ECR',
            'suggestions': [
                'Push the image before releasing it',
                'Check the tag or digest in the image reference'
            ]
        },
        'ValidationException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter or configuration',
            'suggestions': [
                'Review the error message for specific validation failures'
            ]
        },
        'InvalidParameterException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check parameter format and constraints'
            ]
        },
        'ClientException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Request rejected by ECS',
            'suggestions': [
                'Check the task definition and service parameters'
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def is_transient(self, error: BaseException) -> bool:
        """Return True if the error is safe to retry.

        Args:
            error: The exception to inspect

        Returns:
            True for throttling, eventual-consistency and timeout errors
        """
        if isinstance(error, DeploymentError):
            return error.retryable
        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return True
        if isinstance(error, (ConnectionError, TimeoutError)):
            return True
        if isinstance(error, ClientError):
            code = error.response.get('Error', {}).get('Code', '')
            if code in self.RETRYABLE_ERROR_CODES or code in self.EVENTUAL_CONSISTENCY_CODES:
                return True
            message = error.response.get('Error', {}).get('Message', '').lower()
            return any(fragment in message for fragment in self.EVENTUAL_CONSISTENCY_MESSAGES)
        return False

    def classify(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Convert an exception to a categorized DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            TransientProviderError for retryable failures, otherwise a
            non-retryable DeploymentError subclass
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return self._handle_credential_error(error, context)

        if isinstance(error, WaiterError):
            return ProviderError(
                message=f"Resource did not become ready: {error}",
                category=ErrorCategory.PROVISIONING,
                context=context,
                cause=error,
                suggestions=['Check the resource in the AWS console for failure events']
            )

        if self.is_transient(error):
            return TransientProviderError(
                message=f"Network error: {error}",
                context=context,
                cause=error,
                suggestions=[
                    'Check your internet connection',
                    'Verify AWS endpoints are accessible',
                    'Retry the operation'
                ]
            )

        return DeploymentError(
            message=str(error) or type(error).__name__,
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs in .fargate/logs for more details']
        )

    # Alias kept for callers that handle arbitrary exceptions
    handle_exception = classify

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DeploymentError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized DeploymentError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or getattr(error, 'operation_name', None)

        if self.is_transient(error):
            return TransientProviderError(
                message=f"AWS transient error ({error_code}): {error_message}",
                context=context,
                cause=error,
                suggestions=['Retry the operation; the service may be throttling or still propagating a change']
            )

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            if error_info['category'] == ErrorCategory.CREDENTIAL:
                return CredentialError(
                    message=f"{error_info['message']}: {error_message}",
                    context=context,
                    cause=error,
                    suggestions=error_info['suggestions']
                )
            return ProviderError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return ProviderError(
            message=f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[
                'Check AWS documentation for this error code',
                f'AWS Request ID: {context.request_id}',
                'Review CloudTrail logs for more details'
            ]
        )

    def _handle_credential_error(
        self,
        error: Exception,
        context: ErrorContext
    ) -> CredentialError:
        """Handle credential-related errors."""
        if isinstance(error, NoCredentialsError):
            return CredentialError(
                message='No AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY environment variables',
                    'Specify a profile with --profile flag'
                ]
            )

        return CredentialError(
            message='Incomplete AWS credentials',
            context=context,
            cause=error,
            suggestions=[
                'Ensure both access key ID and secret access key are provided',
                'Check credential configuration in ~/.aws/credentials'
            ]
        )

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()

"""Unit tests for error classification and exit codes."""

from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from fargate_deploy.utils.errors import (
    EXIT_ABORTED,
    EXIT_SUCCESS,
    EXIT_TRANSIENT,
    EXIT_USER_ERROR,
    ApplyAbortedError,
    ConfigurationError,
    CredentialError,
    DeploymentError,
    ErrorCategory,
    ErrorContext,
    OperatorAbortError,
    ProviderError,
    TransientProviderError,
    error_handler,
    exit_code_for,
)


class TestClassify:
    """Tests for ErrorHandler.classify."""

    def test_throttling_is_transient(self, client_error) -> None:
        """Throttling errors become retryable TransientProviderErrors."""
        error = error_handler.classify(client_error("ThrottlingException", "Rate exceeded"))

        assert isinstance(error, TransientProviderError)
        assert error.retryable is True
        assert error.exit_code == EXIT_TRANSIENT

    def test_eventual_consistency_code_is_transient(self, client_error) -> None:
        """A dependency that is not visible yet is retried."""
        error = error_handler.classify(client_error("InvalidVpcID.NotFound"))

        assert isinstance(error, TransientProviderError)

    def test_eventual_consistency_message_is_transient(self, client_error) -> None:
        """A role that cannot be assumed yet is retried even with a permanent code."""
        error = error_handler.classify(
            client_error("InvalidParameterException", "ECS was unable to assume the role")
        )

        assert error.retryable is True

    def test_permission_error_is_not_retryable(self, client_error) -> None:
        """AccessDenied maps to a permission ProviderError with suggestions."""
        error = error_handler.classify(client_error("AccessDenied", "not allowed"))

        assert isinstance(error, ProviderError)
        assert not error.retryable
        assert error.category == ErrorCategory.PERMISSION
        assert error.suggestions
        assert error.exit_code == EXIT_USER_ERROR

    def test_expired_token_is_credential_error(self, client_error) -> None:
        error = error_handler.classify(client_error("ExpiredToken", "expired"))

        assert isinstance(error, CredentialError)

    def test_missing_credentials(self) -> None:
        error = error_handler.classify(NoCredentialsError())

        assert isinstance(error, CredentialError)
        assert error.message == "No AWS credentials found"

    def test_endpoint_connection_error_is_transient(self) -> None:
        error = error_handler.classify(EndpointConnectionError(endpoint_url="https://ecs.us-east-1.amazonaws.com"))

        assert isinstance(error, TransientProviderError)

    def test_deployment_error_passes_through(self) -> None:
        original = ConfigurationError("bad config")

        assert error_handler.classify(original) is original

    def test_unknown_exception(self) -> None:
        """Anything else becomes a non-retryable DeploymentError keeping the cause."""
        cause = KeyError("missing")
        error = error_handler.classify(cause, ErrorContext(resource_id="vpc"))

        assert type(error) is DeploymentError
        assert error.cause is cause
        assert error.context.resource_id == "vpc"
        assert not error.retryable


class TestExitCodes:
    """Tests for exit code mapping."""

    def test_success(self) -> None:
        assert exit_code_for(None) == EXIT_SUCCESS

    def test_operator_abort(self) -> None:
        assert exit_code_for(OperatorAbortError()) == EXIT_ABORTED
        assert exit_code_for(KeyboardInterrupt()) == EXIT_ABORTED

    def test_configuration_error(self) -> None:
        assert exit_code_for(ConfigurationError("bad")) == EXIT_USER_ERROR

    def test_apply_aborted_follows_cause(self) -> None:
        """An apply stopped by exhausted retries exits with the transient code."""
        transient = ApplyAbortedError("stopped", cause=TransientProviderError("throttled"))
        permanent = ApplyAbortedError("stopped", cause=ProviderError("denied"))

        assert transient.exit_code == EXIT_TRANSIENT
        assert permanent.exit_code == EXIT_USER_ERROR

    def test_unexpected_exception(self) -> None:
        assert exit_code_for(RuntimeError("boom")) == EXIT_USER_ERROR


class TestUserMessage:
    """Tests for error rendering."""

    def test_to_user_message_includes_context_and_suggestions(self) -> None:
        error = ProviderError(
            "Access denied",
            context=ErrorContext(resource_id="cluster", operation="create-cluster",
                                 last_completed_step="create-log-group"),
            suggestions=["Check IAM policies"],
        )

        message = error.to_user_message()

        assert "Resource: cluster" in message
        assert "Operation: create-cluster" in message
        assert "Last completed step: create-log-group" in message
        assert "1. Check IAM policies" in message

    def test_to_dict(self) -> None:
        data = OperatorAbortError(context=ErrorContext(attempt_id="a-1")).to_dict()

        assert data["error"] == "OperatorAbortError"
        assert data["exit_code"] == EXIT_ABORTED
        assert data["context"]["attempt_id"] == "a-1"

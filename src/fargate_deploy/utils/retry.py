"""Retry strategy with exponential backoff for AWS operations."""

import time
import random
from typing import Callable, TypeVar, Optional
from fargate_deploy.utils.errors import (
    DeploymentError,
    ErrorContext,
    ErrorHandler,
    error_handler,
)
from fargate_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors.

    Only errors the ErrorHandler classifies as transient are retried. Every
    failure leaves this class as a DeploymentError, so callers see a
    TransientProviderError once the attempts are exhausted and the original
    non-transient error (classified) otherwise.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        handler: Optional[ErrorHandler] = None
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Total number of attempts, including the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
            handler: Error classifier (defaults to the global handler)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep
        self.handler = handler or error_handler

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is transient and attempts remain
        """
        if attempt + 1 >= self.max_attempts:
            return False
        return self.handler.is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Up to 10% of the delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        context: Optional[ErrorContext] = None,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            context: Error context attached to the raised error
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            DeploymentError: Classified error of the last attempt
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")
                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    classified = self.handler.classify(e, context)
                    if classified.retryable:
                        logger.error(
                            f"All {self.max_attempts} attempts exhausted: {classified.message}"
                        )
                    else:
                        logger.debug(f"Error is not retryable: {e}")
                    if classified is e:
                        raise
                    raise classified from e

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed: {self._get_error_info(e)}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)
                attempt += 1

    def _get_error_info(self, error: BaseException) -> str:
        """Extract useful error information for logging."""
        if isinstance(error, DeploymentError):
            return error.message
        response = getattr(error, 'response', None)
        if isinstance(response, dict):
            error_code = response.get('Error', {}).get('Code', 'Unknown')
            error_message = response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {error}"

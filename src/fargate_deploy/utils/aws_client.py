"""AWS client management and session handling."""

import threading
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from fargate_deploy.utils.errors import ErrorContext, error_handler
from fargate_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """AWS credential information."""
    account_id: str
    user_arn: str
    user_id: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Manages boto3 sessions and clients.

    Clients are cached per service and shared by the apply worker threads;
    boto3 clients are thread-safe once created, so creation is guarded by a
    lock.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
        """
        self.profile = profile
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None
        self._lock = threading.Lock()

        # botocore retries throttling on its own; the apply engine layers its
        # own bounded retry for eventual-consistency errors on top
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'adaptive',
                'max_attempts': 5
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                        f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get boto3 client for a service with connection pooling.

        Args:
            service_name: AWS service name (e.g., 'ecs', 'elbv2')

        Returns:
            Boto3 client for the service
        """
        with self._lock:
            if service_name not in self._clients:
                self._clients[service_name] = self.session.client(
                    service_name, config=self._boto_config
                )
                logger.debug(f"Created {service_name} client")
            return self._clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return credential information.

        Returns:
            AWSCredentials object with account and user information

        Raises:
            CredentialError: If credentials are missing, incomplete or invalid
            ProviderError: If STS rejects the call for another reason
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except (BotoCoreError, ClientError) as e:
            error = error_handler.classify(
                e, ErrorContext(aws_service='sts', aws_operation='GetCallerIdentity')
            )
            logger.error(f"Failed to validate AWS credentials: {error.message}")
            raise error from e

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            user_id=identity['UserId'],
            region=self.session.region_name,
            profile=self.profile
        )

        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"User: {self._credentials.user_arn}, Region: {self._credentials.region}")

        return self._credentials

    def get_account_id(self) -> str:
        """Get the AWS account ID."""
        return self.validate_credentials().account_id

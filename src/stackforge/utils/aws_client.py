"""AWS client management and session handling."""

import threading

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from stackforge.utils.logging import get_logger

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
    """Manages boto3 sessions and clients with credential management.

    botocore's own retries are turned off: transient errors surface to the
    executor, which applies its configured backoff and counts attempts.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50,
        session: Optional[boto3.Session] = None
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
            session: Pre-built session (skips profile/region resolution)
        """
        self.profile = profile
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._session: Optional[boto3.Session] = session
        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()
        self._credentials: Optional[AWSCredentials] = None

        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'standard', 'max_attempts': 1},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session."""
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
        """Get a cached boto3 client for a service.

        boto3 clients are thread-safe once created, but creation is not, so
        creation happens under a lock.

        Args:
            service_name: AWS service name (e.g., 'ec2', 'elb', 'autoscaling')

        Returns:
            Boto3 client for the service
        """
        with self._clients_lock:
            client = self._clients.get(service_name)
            if client is None:
                client = self.session.client(service_name, config=self._boto_config)
                self._clients[service_name] = client
                logger.debug(f"Created {service_name} client")
            return client

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return credential information.

        Raises:
            NoCredentialsError: If no credentials are found
            PartialCredentialsError: If credentials are incomplete
            ClientError: If credentials are invalid
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except (NoCredentialsError, PartialCredentialsError, ClientError) as e:
            logger.error(f"Credential check against STS failed for profile "
                         f"{self.profile or 'default'}: {e}")
            raise

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            user_id=identity['UserId'],
            region=self.get_region(),
            profile=self.profile
        )

        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"Region: {self._credentials.region}")

        return self._credentials

    def get_region(self) -> str:
        """Get the AWS region name."""
        return self.session.region_name

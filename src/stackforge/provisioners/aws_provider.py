"""AWS provider: the provisioners for the supported resource types, bound to one session."""

from typing import Optional

from stackforge.provisioners.autoscaling_group import AutoScalingGroupProvisioner
from stackforge.provisioners.base import Provider
from stackforge.provisioners.elb import ClassicLoadBalancerProvisioner
from stackforge.provisioners.launch_template import LaunchTemplateProvisioner
from stackforge.provisioners.security_group import SecurityGroupProvisioner
from stackforge.utils.aws_client import AWSClientManager, AWSCredentials
from stackforge.utils.errors import ErrorContext, error_handler

PROVISIONER_CLASSES = (
    SecurityGroupProvisioner,
    LaunchTemplateProvisioner,
    ClassicLoadBalancerProvisioner,
    AutoScalingGroupProvisioner,
)


class AwsProvider(Provider):
    """Provider backed by boto3."""

    name = "aws"

    def __init__(self, client_manager: AWSClientManager):
        """Initialize AWS provider.

        Args:
            client_manager: Session and client cache for the target account/region
        """
        self.client_manager = client_manager
        super().__init__({
            cls.schema.type: cls(client_manager) for cls in PROVISIONER_CLASSES
        })
        self.credentials: Optional[AWSCredentials] = None

    @classmethod
    def from_settings(cls, region: str, profile: Optional[str] = None, max_pool_connections: int = 50) -> "AwsProvider":
        return cls(AWSClientManager(profile=profile, region=region, max_pool_connections=max_pool_connections))

    def configure(self) -> None:
        """Verify credentials before any resource is touched.

        Raises:
            CredentialError: If no usable credentials are found
            ProviderError: If the identity call fails
        """
        try:
            self.credentials = self.client_manager.validate_credentials()
        except Exception as e:
            raise error_handler.handle_exception(e, ErrorContext(operation="configure")) from e


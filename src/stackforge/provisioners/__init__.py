"""Provisioners for the supported AWS resource types."""

from .base import AwsProvisioner, BaseProvisioner, ChangeType, Provider, ResourceSchema
from .security_group import SecurityGroupProvisioner
from .launch_template import LaunchTemplateProvisioner
from .elb import ClassicLoadBalancerProvisioner
from .autoscaling_group import AutoScalingGroupProvisioner
from .aws_provider import AwsProvider

__all__ = [
    'AwsProvisioner',
    'BaseProvisioner',
    'ChangeType',
    'Provider',
    'ResourceSchema',
    'SecurityGroupProvisioner',
    'LaunchTemplateProvisioner',
    'ClassicLoadBalancerProvisioner',
    'AutoScalingGroupProvisioner',
    'AwsProvider',
]

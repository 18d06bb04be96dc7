"""Auto-scaling group provisioner."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import AwsProvisioner, ResourceSchema


class AutoScalingGroupProvisioner(AwsProvisioner):
    """Provisioner for ``aws_autoscaling_group``.

    ``launch_template`` is a mapping ``{id: ..., version: ...}``; version
    defaults to ``$Latest``. Tags propagate to launched instances.
    """

    service = 'autoscaling'
    schema = ResourceSchema(
        type='aws_autoscaling_group',
        immutable=frozenset({'name'}),
        unique=(('name',),),
        computed=frozenset({'id', 'arn'}),
        required=frozenset({'name', 'launch_template', 'min_size', 'max_size'}),
    )

    SCALING_FIELDS = {
        'launch_template', 'min_size', 'max_size', 'desired_capacity',
        'availability_zones', 'vpc_zone_identifier', 'health_check_type',
        'health_check_grace_period',
    }

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        name = attributes['name']
        params = self._group_params(attributes)
        if attributes.get('load_balancers'):
            params['LoadBalancerNames'] = list(attributes['load_balancers'])
        if attributes.get('tags'):
            params['Tags'] = self._tags(name, attributes['tags'])

        try:
            self.client.create_auto_scaling_group(**params)
        except ClientError as e:
            # A repeated create after the read-back failed finds its own group
            if self.error_code(e) != 'AlreadyExists':
                raise
            self.logger.warning(f"Adopting existing auto-scaling group {name}")

        computed = {'id': name, 'arn': None}
        current = self.read(computed)
        if current:
            computed.update(current)
        return computed

    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self.client.describe_auto_scaling_groups(AutoScalingGroupNames=[computed['id']])
        groups = response.get('AutoScalingGroups', [])
        if not groups:
            return None
        group = groups[0]
        # A group being deleted still shows up with a Status
        if group.get('Status'):
            return None
        return {'id': group['AutoScalingGroupName'], 'arn': group.get('AutoScalingGroupARN')}

    def update(
        self,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        name = computed['id']

        if self.SCALING_FIELDS.intersection(changed):
            self.client.update_auto_scaling_group(**self._group_params(attributes))

        if 'load_balancers' in changed:
            current = set(previous.get('load_balancers') or [])
            desired = set(attributes.get('load_balancers') or [])
            if desired - current:
                self.client.attach_load_balancers(
                    AutoScalingGroupName=name, LoadBalancerNames=sorted(desired - current)
                )
            if current - desired:
                self.client.detach_load_balancers(
                    AutoScalingGroupName=name, LoadBalancerNames=sorted(current - desired)
                )

        if 'tags' in changed:
            current_tags = previous.get('tags') or {}
            desired_tags = attributes.get('tags') or {}
            removed = {k: v for k, v in current_tags.items() if k not in desired_tags}
            if removed:
                self.client.delete_tags(Tags=self._tags(name, removed))
            if desired_tags:
                self.client.create_or_update_tags(Tags=self._tags(name, desired_tags))

        return dict(computed)

    def delete(self, computed: Dict[str, Any]) -> None:
        name = computed.get('id')
        if not name:
            return
        if self.read(computed) is None:
            return
        self.client.delete_auto_scaling_group(AutoScalingGroupName=name, ForceDelete=True)

    @staticmethod
    def _group_params(attributes: Dict[str, Any]) -> Dict[str, Any]:
        template = attributes['launch_template']
        params: Dict[str, Any] = {
            'AutoScalingGroupName': attributes['name'],
            'LaunchTemplate': {
                'LaunchTemplateId': template['id'],
                'Version': str(template.get('version', '$Latest')),
            },
            'MinSize': int(attributes['min_size']),
            'MaxSize': int(attributes['max_size']),
        }
        if attributes.get('desired_capacity') is not None:
            params['DesiredCapacity'] = int(attributes['desired_capacity'])
        if attributes.get('vpc_zone_identifier'):
            params['VPCZoneIdentifier'] = ",".join(attributes['vpc_zone_identifier'])
        elif attributes.get('availability_zones'):
            params['AvailabilityZones'] = list(attributes['availability_zones'])
        if attributes.get('health_check_type'):
            params['HealthCheckType'] = attributes['health_check_type']
        if attributes.get('health_check_grace_period') is not None:
            params['HealthCheckGracePeriod'] = int(attributes['health_check_grace_period'])
        return params

    @staticmethod
    def _tags(name: str, tags: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {
                'ResourceId': name,
                'ResourceType': 'auto-scaling-group',
                'Key': str(key),
                'Value': str(value),
                'PropagateAtLaunch': True,
            }
            for key, value in tags.items()
        ]

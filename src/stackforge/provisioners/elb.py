"""Classic load balancer provisioner."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import AwsProvisioner, ResourceSchema


class ClassicLoadBalancerProvisioner(AwsProvisioner):
    """Provisioner for ``aws_elb``.

    Example attributes::

        name: web-elb
        availability_zones: [us-east-2a, us-east-2b]
        security_groups: ["${aws_security_group.elb.id}"]
        listener:
          - {lb_port: 80, lb_protocol: http, instance_port: 8080, instance_protocol: http}
        health_check:
          {target: "HTTP:8080/", interval: 30, timeout: 3,
           healthy_threshold: 2, unhealthy_threshold: 2}
    """

    service = 'elb'
    schema = ResourceSchema(
        type='aws_elb',
        immutable=frozenset({'name', 'availability_zones', 'subnets', 'listener', 'internal'}),
        unique=(('name',),),
        computed=frozenset({'id', 'dns_name', 'zone_id'}),
        required=frozenset({'name', 'listener'}),
    )

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        name = attributes['name']
        params: Dict[str, Any] = {
            'LoadBalancerName': name,
            'Listeners': [self._listener(item) for item in attributes['listener']],
        }
        if attributes.get('subnets'):
            params['Subnets'] = list(attributes['subnets'])
        else:
            params['AvailabilityZones'] = list(attributes.get('availability_zones') or [])
        if attributes.get('security_groups'):
            params['SecurityGroups'] = list(attributes['security_groups'])
        if attributes.get('internal'):
            params['Scheme'] = 'internal'
        if attributes.get('tags'):
            params['Tags'] = self.tag_list(attributes['tags'])

        response = self.client.create_load_balancer(**params)

        if attributes.get('health_check'):
            self._configure_health_check(name, attributes['health_check'])

        computed = {'id': name, 'dns_name': response['DNSName'], 'zone_id': None}
        current = self.read(computed)
        if current:
            computed.update(current)
        return computed

    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_load_balancers(LoadBalancerNames=[computed['id']])
        except ClientError as e:
            if self.error_code(e) in ('LoadBalancerNotFound', 'AccessPointNotFound'):
                return None
            raise

        descriptions = response.get('LoadBalancerDescriptions', [])
        if not descriptions:
            return None
        description = descriptions[0]
        return {
            'id': description['LoadBalancerName'],
            'dns_name': description['DNSName'],
            'zone_id': description.get('CanonicalHostedZoneNameID'),
        }

    def update(
        self,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        name = computed['id']

        if 'security_groups' in changed:
            self.client.apply_security_groups_to_load_balancer(
                LoadBalancerName=name,
                SecurityGroups=list(attributes.get('security_groups') or []),
            )

        if 'health_check' in changed and attributes.get('health_check'):
            self._configure_health_check(name, attributes['health_check'])

        if 'tags' in changed:
            current = previous.get('tags') or {}
            desired = attributes.get('tags') or {}
            removed = [k for k in current if k not in desired]
            if removed:
                self.client.remove_tags(LoadBalancerNames=[name], Tags=[{'Key': k} for k in removed])
            if desired:
                self.client.add_tags(LoadBalancerNames=[name], Tags=self.tag_list(desired))

        return dict(computed)

    def delete(self, computed: Dict[str, Any]) -> None:
        # DeleteLoadBalancer is idempotent on the AWS side
        if computed.get('id'):
            self.client.delete_load_balancer(LoadBalancerName=computed['id'])

    def _configure_health_check(self, name: str, health_check: Dict[str, Any]) -> None:
        self.client.configure_health_check(
            LoadBalancerName=name,
            HealthCheck={
                'Target': health_check['target'],
                'Interval': int(health_check.get('interval', 30)),
                'Timeout': int(health_check.get('timeout', 5)),
                'HealthyThreshold': int(health_check.get('healthy_threshold', 2)),
                'UnhealthyThreshold': int(health_check.get('unhealthy_threshold', 2)),
            },
        )

    @staticmethod
    def _listener(item: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'Protocol': str(item.get('lb_protocol', 'http')).upper(),
            'LoadBalancerPort': int(item['lb_port']),
            'InstanceProtocol': str(item.get('instance_protocol', item.get('lb_protocol', 'http'))).upper(),
            'InstancePort': int(item['instance_port']),
        }

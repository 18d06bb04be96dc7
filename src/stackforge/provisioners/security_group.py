"""Security group provisioner."""

from typing import Optional, List, Dict, Any
from botocore.exceptions import ClientError

from .base import AwsProvisioner, ResourceSchema


DEFAULT_DESCRIPTION = "Managed by stackforge"

ALLOW_ALL_EGRESS = {'IpProtocol': '-1', 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}


class SecurityGroupProvisioner(AwsProvisioner):
    """Provisioner for ``aws_security_group``.

    Rules use the familiar shape::

        ingress:
          - {from_port: 8080, to_port: 8080, protocol: tcp, cidr_blocks: [0.0.0.0/0]}
          - {from_port: 80, to_port: 80, protocol: tcp, security_groups: [sg-123]}
    """

    service = 'ec2'
    schema = ResourceSchema(
        type='aws_security_group',
        immutable=frozenset({'name', 'description', 'vpc_id'}),
        unique=(('vpc_id', 'name'),),
        computed=frozenset({'id', 'arn'}),
        required=frozenset({'name'}),
    )

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create the group, then authorize its rules."""
        create_params = {
            'GroupName': attributes['name'],
            'Description': attributes.get('description') or DEFAULT_DESCRIPTION,
        }
        if attributes.get('vpc_id'):
            create_params['VpcId'] = attributes['vpc_id']
        if attributes.get('tags'):
            create_params['TagSpecifications'] = [
                {'ResourceType': 'security-group', 'Tags': self.tag_list(attributes['tags'])}
            ]

        try:
            response = self.client.create_security_group(**create_params)
        except ClientError as e:
            if self.error_code(e) != 'InvalidGroup.Duplicate':
                raise
            # An earlier attempt created the group before failing on its rules
            response = self._find_group(attributes['name'], attributes.get('vpc_id'))
            if response is None:
                raise
            self.logger.warning(f"Adopting existing security group {response['GroupId']} "
                                f"named {attributes['name']}")
        sg_id = response['GroupId']
        self.logger.debug(f"Created security group {sg_id}")

        ingress = self.to_permissions(attributes.get('ingress') or [])
        if ingress:
            self._modify_rules(self.client.authorize_security_group_ingress, sg_id, ingress)

        # Without an explicit egress list AWS keeps its default allow-all rule
        if attributes.get('egress') is not None:
            egress = self.to_permissions(attributes['egress'])
            if ALLOW_ALL_EGRESS not in egress:
                self._modify_rules(self.client.revoke_security_group_egress, sg_id, [ALLOW_ALL_EGRESS])
                if egress:
                    self._modify_rules(self.client.authorize_security_group_egress, sg_id, egress)

        return {'id': sg_id, 'arn': response.get('SecurityGroupArn')}

    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_security_groups(GroupIds=[computed['id']])
        except ClientError as e:
            if self.error_code(e) == 'InvalidGroup.NotFound':
                return None
            raise

        groups = response.get('SecurityGroups', [])
        if not groups:
            return None
        group = groups[0]
        return {'id': group['GroupId'], 'arn': group.get('SecurityGroupArn', computed.get('arn'))}

    def update(
        self,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        """Replace changed rule sets and tags in place."""
        sg_id = computed['id']

        if 'ingress' in changed:
            self._update_rules(
                sg_id,
                self.to_permissions(previous.get('ingress') or []),
                self.to_permissions(attributes.get('ingress') or []),
                'ingress'
            )

        if 'egress' in changed:
            current = previous.get('egress')
            desired = attributes.get('egress')
            self._update_rules(
                sg_id,
                [ALLOW_ALL_EGRESS] if current is None else self.to_permissions(current),
                [ALLOW_ALL_EGRESS] if desired is None else self.to_permissions(desired),
                'egress'
            )

        if 'tags' in changed:
            self._update_tags(sg_id, previous.get('tags') or {}, attributes.get('tags') or {})

        return dict(computed)

    def delete(self, computed: Dict[str, Any]) -> None:
        sg_id = computed.get('id')
        if not sg_id:
            return

        try:
            self.client.delete_security_group(GroupId=sg_id)
        except ClientError as e:
            if self.error_code(e) != 'InvalidGroup.NotFound':
                raise

    def _update_rules(
        self,
        sg_id: str,
        current_rules: List[Dict[str, Any]],
        desired_rules: List[Dict[str, Any]],
        rule_type: str
    ) -> None:
        current_normalized = [self._normalize_rule(r) for r in current_rules]
        desired_normalized = [self._normalize_rule(r) for r in desired_rules]

        rules_to_add = [r for r in desired_rules if self._normalize_rule(r) not in current_normalized]
        rules_to_remove = [r for r in current_rules if self._normalize_rule(r) not in desired_normalized]

        if rules_to_remove:
            revoke = (self.client.revoke_security_group_ingress if rule_type == 'ingress'
                      else self.client.revoke_security_group_egress)
            self._modify_rules(revoke, sg_id, rules_to_remove)

        if rules_to_add:
            authorize = (self.client.authorize_security_group_ingress if rule_type == 'ingress'
                         else self.client.authorize_security_group_egress)
            self._modify_rules(authorize, sg_id, rules_to_add)

    def _find_group(self, name: str, vpc_id: Optional[str]) -> Optional[Dict[str, Any]]:
        filters = [{'Name': 'group-name', 'Values': [name]}]
        if vpc_id:
            filters.append({'Name': 'vpc-id', 'Values': [vpc_id]})
        groups = self.client.describe_security_groups(Filters=filters).get('SecurityGroups', [])
        return groups[0] if len(groups) == 1 else None

    def _modify_rules(self, call, sg_id: str, permissions: List[Dict[str, Any]]) -> None:
        """Authorize or revoke rules, accepting rules already in the wanted state."""
        try:
            call(GroupId=sg_id, IpPermissions=permissions)
        except ClientError as e:
            if self.error_code(e) not in ('InvalidPermission.Duplicate', 'InvalidPermission.NotFound'):
                raise

    def _update_tags(self, sg_id: str, current: Dict[str, Any], desired: Dict[str, Any]) -> None:
        removed = [k for k in current if k not in desired]
        if removed:
            self.client.delete_tags(Resources=[sg_id], Tags=[{'Key': k} for k in removed])
        if desired:
            self.client.create_tags(Resources=[sg_id], Tags=self.tag_list(desired))

    @staticmethod
    def to_permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert rule mappings into EC2 ``IpPermissions``."""
        permissions = []
        for rule in rules:
            protocol = str(rule.get('protocol', '-1'))
            permission: Dict[str, Any] = {'IpProtocol': protocol}
            if protocol != '-1':
                permission['FromPort'] = int(rule.get('from_port', 0))
                permission['ToPort'] = int(rule.get('to_port', rule.get('from_port', 0)))
            if rule.get('cidr_blocks'):
                permission['IpRanges'] = [{'CidrIp': cidr} for cidr in rule['cidr_blocks']]
            if rule.get('ipv6_cidr_blocks'):
                permission['Ipv6Ranges'] = [{'CidrIpv6': cidr} for cidr in rule['ipv6_cidr_blocks']]
            if rule.get('security_groups'):
                permission['UserIdGroupPairs'] = [{'GroupId': sg} for sg in rule['security_groups']]
            permissions.append(permission)
        return permissions

    @staticmethod
    def _normalize_rule(rule: Dict[str, Any]) -> str:
        protocol = rule.get('IpProtocol', '-1')
        from_port = rule.get('FromPort', 0)
        to_port = rule.get('ToPort', 0)

        sources = []
        for ip_range in rule.get('IpRanges', []):
            sources.append(f"cidr:{ip_range.get('CidrIp', '')}")
        for ipv6_range in rule.get('Ipv6Ranges', []):
            sources.append(f"cidr6:{ipv6_range.get('CidrIpv6', '')}")
        for sg_ref in rule.get('UserIdGroupPairs', []):
            sources.append(f"sg:{sg_ref.get('GroupId', '')}")

        sources.sort()
        return f"{protocol}:{from_port}:{to_port}:{','.join(sources)}"

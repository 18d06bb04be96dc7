"""Launch template provisioner."""

import base64
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import AwsProvisioner, ResourceSchema


class LaunchTemplateProvisioner(AwsProvisioner):
    """Provisioner for ``aws_launch_template``.

    Changing any launch data creates a new template version and makes it the
    default, so dependents pinned to ``$Default`` or ``$Latest`` pick it up.
    """

    service = 'ec2'
    schema = ResourceSchema(
        type='aws_launch_template',
        immutable=frozenset({'name'}),
        unique=(('name',),),
        computed=frozenset({'id', 'latest_version', 'default_version'}),
        required=frozenset({'name', 'image_id', 'instance_type'}),
        volatile=frozenset({'latest_version', 'default_version'}),
    )

    NOT_FOUND_CODES = {
        'InvalidLaunchTemplateId.NotFound',
        'InvalidLaunchTemplateName.NotFoundException',
        'InvalidLaunchTemplateId.Malformed',
    }

    def create(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        params = {
            'LaunchTemplateName': attributes['name'],
            'LaunchTemplateData': self._launch_data(attributes),
        }
        if attributes.get('tags'):
            params['TagSpecifications'] = [
                {'ResourceType': 'launch-template', 'Tags': self.tag_list(attributes['tags'])}
            ]

        try:
            template = self.client.create_launch_template(**params)['LaunchTemplate']
        except ClientError as e:
            if self.error_code(e) != 'InvalidLaunchTemplateName.AlreadyExistsException':
                raise
            templates = self.client.describe_launch_templates(
                LaunchTemplateNames=[attributes['name']]
            ).get('LaunchTemplates', [])
            if not templates:
                raise
            template = templates[0]
            self.logger.warning(f"Adopting existing launch template {template['LaunchTemplateId']}")

        return {
            'id': template['LaunchTemplateId'],
            'latest_version': template['LatestVersionNumber'],
            'default_version': template.get('DefaultVersionNumber', template['LatestVersionNumber']),
        }

    def read(self, computed: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_launch_templates(LaunchTemplateIds=[computed['id']])
        except ClientError as e:
            if self.error_code(e) in self.NOT_FOUND_CODES:
                return None
            raise

        templates = response.get('LaunchTemplates', [])
        if not templates:
            return None
        template = templates[0]
        return {
            'id': template['LaunchTemplateId'],
            'latest_version': template['LatestVersionNumber'],
            'default_version': template['DefaultVersionNumber'],
        }

    def update(
        self,
        computed: Dict[str, Any],
        attributes: Dict[str, Any],
        previous: Dict[str, Any],
        changed: List[str]
    ) -> Dict[str, Any]:
        template_id = computed['id']
        result = dict(computed)

        launch_changes = [name for name in changed if name != 'tags']
        if launch_changes:
            version = self.client.create_launch_template_version(
                LaunchTemplateId=template_id,
                LaunchTemplateData=self._launch_data(attributes),
            )['LaunchTemplateVersion']['VersionNumber']
            self.client.modify_launch_template(
                LaunchTemplateId=template_id,
                DefaultVersion=str(version),
            )
            self.logger.debug(f"Launch template {template_id} now at version {version}")
            result.update(latest_version=version, default_version=version)

        if 'tags' in changed:
            current = previous.get('tags') or {}
            desired = attributes.get('tags') or {}
            removed = [k for k in current if k not in desired]
            if removed:
                self.client.delete_tags(Resources=[template_id], Tags=[{'Key': k} for k in removed])
            if desired:
                self.client.create_tags(Resources=[template_id], Tags=self.tag_list(desired))

        return result

    def delete(self, computed: Dict[str, Any]) -> None:
        template_id = computed.get('id')
        if not template_id:
            return
        try:
            self.client.delete_launch_template(LaunchTemplateId=template_id)
        except ClientError as e:
            if self.error_code(e) not in self.NOT_FOUND_CODES:
                raise

    @staticmethod
    def _launch_data(attributes: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'ImageId': attributes['image_id'],
            'InstanceType': attributes['instance_type'],
        }
        if attributes.get('user_data'):
            data['UserData'] = base64.b64encode(attributes['user_data'].encode('utf-8')).decode('ascii')
        if attributes.get('vpc_security_group_ids'):
            data['SecurityGroupIds'] = list(attributes['vpc_security_group_ids'])
        if attributes.get('key_name'):
            data['KeyName'] = attributes['key_name']
        if attributes.get('iam_instance_profile'):
            data['IamInstanceProfile'] = {'Name': attributes['iam_instance_profile']}
        return data

"""Security group and IAM execution role provisioners."""

import json
from typing import Any, Dict, List, Set, Tuple

from botocore.exceptions import ClientError

from fargate_deploy.provisioners.base import (
    BaseProvisioner,
    ProvisionResult,
    error_code,
    to_aws_tags,
)
from fargate_deploy.state.models import ResourceRecord

ECS_TASK_EXECUTION_POLICY = 'arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy'

# (port, cidr or None, self-referencing)
Rule = Tuple[int, str, bool]


class SecurityGroupProvisioner(BaseProvisioner):
    """Provisioner for the security group shared by the load balancer and tasks.

    Ingress rules are given as ``{'Port': 80, 'CidrIp': '0.0.0.0/0'}`` or
    ``{'Port': 8080, 'SourceSelf': True}``; the latter lets the load balancer
    reach the tasks on the container port without exposing it publicly.
    """

    kind = 'AWS::EC2::SecurityGroup'
    replace_on = frozenset({'GroupName', 'Description', 'VpcId'})
    not_found_codes = frozenset({'InvalidGroup.NotFound', 'InvalidGroupId.NotFound'})

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        ec2 = self.client('ec2')
        existing = ec2.describe_security_groups(
            Filters=[
                {'Name': 'group-name', 'Values': [properties['GroupName']]},
                {'Name': 'vpc-id', 'Values': [properties['VpcId']]},
            ]
        )['SecurityGroups']
        if existing:
            group_id = existing[0]['GroupId']
            self.logger.info(f"Adopting existing security group {group_id}")
        else:
            group_id = ec2.create_security_group(
                GroupName=properties['GroupName'],
                Description=properties['Description'],
                VpcId=properties['VpcId'],
                TagSpecifications=[{
                    'ResourceType': 'security-group',
                    'Tags': to_aws_tags({**tags, 'Name': properties['GroupName']}),
                }]
            )['GroupId']
            self.logger.info(f"Created security group {group_id}")

        self._sync_ingress(group_id, properties.get('Ingress', []))
        return ProvisionResult(physical_id=group_id, outputs={'GroupId': group_id})

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self._sync_ingress(record.physical_id, properties.get('Ingress', []))
        self.client('ec2').create_tags(Resources=[record.physical_id], Tags=to_aws_tags(tags))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _sync_ingress(self, group_id: str, ingress: List[Dict[str, Any]]) -> None:
        """Authorize missing rules and revoke rules no longer desired."""
        ec2 = self.client('ec2')
        desired = {self._rule(entry) for entry in ingress}
        current = self._current_rules(group_id)

        missing = sorted(desired - current)
        if missing:
            try:
                ec2.authorize_security_group_ingress(
                    GroupId=group_id, IpPermissions=[self._permission(group_id, r) for r in missing]
                )
            except ClientError as e:
                if error_code(e) != 'InvalidPermission.Duplicate':
                    raise

        extra = sorted(current - desired)
        if extra:
            ec2.revoke_security_group_ingress(
                GroupId=group_id, IpPermissions=[self._permission(group_id, r) for r in extra]
            )

    @staticmethod
    def _rule(entry: Dict[str, Any]) -> Rule:
        return (int(entry['Port']), entry.get('CidrIp', ''), bool(entry.get('SourceSelf', False)))

    @staticmethod
    def _permission(group_id: str, rule: Rule) -> Dict[str, Any]:
        port, cidr, source_self = rule
        permission: Dict[str, Any] = {'IpProtocol': 'tcp', 'FromPort': port, 'ToPort': port}
        if source_self:
            permission['UserIdGroupPairs'] = [{'GroupId': group_id}]
        else:
            permission['IpRanges'] = [{'CidrIp': cidr}]
        return permission

    def _current_rules(self, group_id: str) -> Set[Rule]:
        groups = self.client('ec2').describe_security_groups(GroupIds=[group_id])['SecurityGroups']
        rules: Set[Rule] = set()
        for permission in groups[0].get('IpPermissions', []) if groups else []:
            if permission.get('IpProtocol') != 'tcp':
                continue
            port = permission.get('FromPort')
            for ip_range in permission.get('IpRanges', []):
                rules.add((port, ip_range['CidrIp'], False))
            for pair in permission.get('UserIdGroupPairs', []):
                if pair.get('GroupId') == group_id:
                    rules.add((port, '', True))
        return rules

    def exists(self, record: ResourceRecord) -> bool:
        try:
            groups = self.client('ec2').describe_security_groups(
                GroupIds=[record.physical_id]
            )['SecurityGroups']
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return bool(groups)

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('ec2').delete_security_group(GroupId=record.physical_id)
            self.logger.info(f"Deleted security group {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)


class ExecutionRoleProvisioner(BaseProvisioner):
    """Provisioner for the ECS task execution role."""

    kind = 'AWS::IAM::Role'
    replace_on = frozenset({'RoleName'})
    not_found_codes = frozenset({'NoSuchEntity'})
    poll_delay = 1

    @staticmethod
    def assume_role_policy(principal: str) -> str:
        return json.dumps({
            'Version': '2012-10-17',
            'Statement': [{
                'Effect': 'Allow',
                'Principal': {'Service': principal},
                'Action': 'sts:AssumeRole'
            }]
        }, sort_keys=True)

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        iam = self.client('iam')
        role_name = properties['RoleName']
        try:
            role = iam.get_role(RoleName=role_name)['Role']
            self.logger.info(f"Adopting existing IAM role {role_name}")
        except ClientError as e:
            if error_code(e) != 'NoSuchEntity':
                raise
            role = iam.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=self.assume_role_policy(properties['AssumeRolePrincipal']),
                Description=properties.get('Description', ''),
                Tags=to_aws_tags(tags)
            )['Role']
            self.logger.info(f"Created IAM role {role_name}")

        self._sync_policies(role_name, properties.get('ManagedPolicyArns', []))
        return ProvisionResult(physical_id=role_name, outputs={'Arn': role['Arn']})

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        iam = self.client('iam')
        iam.update_assume_role_policy(
            RoleName=record.physical_id,
            PolicyDocument=self.assume_role_policy(properties['AssumeRolePrincipal'])
        )
        iam.tag_role(RoleName=record.physical_id, Tags=to_aws_tags(tags))
        self._sync_policies(record.physical_id, properties.get('ManagedPolicyArns', []))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _sync_policies(self, role_name: str, policy_arns: List[str]) -> None:
        iam = self.client('iam')
        attached = {
            policy['PolicyArn']
            for policy in iam.list_attached_role_policies(RoleName=role_name)['AttachedPolicies']
        }
        for arn in sorted(set(policy_arns) - attached):
            iam.attach_role_policy(RoleName=role_name, PolicyArn=arn)
        for arn in sorted(attached - set(policy_arns)):
            iam.detach_role_policy(RoleName=role_name, PolicyArn=arn)

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self.client('iam').get_waiter('role_exists').wait(
            RoleName=result.physical_id, WaiterConfig=self._waiter_config(timeout)
        )

    def exists(self, record: ResourceRecord) -> bool:
        try:
            self.client('iam').get_role(RoleName=record.physical_id)
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return True

    def destroy(self, record: ResourceRecord) -> None:
        iam = self.client('iam')
        try:
            for policy in iam.list_attached_role_policies(RoleName=record.physical_id)['AttachedPolicies']:
                iam.detach_role_policy(RoleName=record.physical_id, PolicyArn=policy['PolicyArn'])
            iam.delete_role(RoleName=record.physical_id)
            self.logger.info(f"Deleted IAM role {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)

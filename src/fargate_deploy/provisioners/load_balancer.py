"""Application Load Balancer, target group and listener provisioners."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from fargate_deploy.provisioners.base import (
    BaseProvisioner,
    ProvisionResult,
    to_aws_tags,
)
from fargate_deploy.state.models import ResourceRecord


class LoadBalancerProvisioner(BaseProvisioner):
    """Provisioner for the internet-facing Application Load Balancer."""

    kind = 'AWS::ElasticLoadBalancingV2::LoadBalancer'
    replace_on = frozenset({'Name', 'Scheme', 'Type'})
    not_found_codes = frozenset({'LoadBalancerNotFound'})
    poll_delay = 15

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        elbv2 = self.client('elbv2')
        balancer = self._describe_by_name(properties['Name'])
        if balancer is not None:
            self.logger.info(f"Adopting existing load balancer {properties['Name']}")
            self._apply_network(balancer['LoadBalancerArn'], properties)
        else:
            balancer = elbv2.create_load_balancer(
                Name=properties['Name'],
                Subnets=properties['Subnets'],
                SecurityGroups=properties['SecurityGroups'],
                Scheme=properties.get('Scheme', 'internet-facing'),
                Type=properties.get('Type', 'application'),
                IpAddressType='ipv4',
                Tags=to_aws_tags(tags)
            )['LoadBalancers'][0]
            self.logger.info(f"Created load balancer {balancer['DNSName']}")

        return self._result(balancer)

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self._apply_network(record.physical_id, properties)
        self.client('elbv2').add_tags(ResourceArns=[record.physical_id], Tags=to_aws_tags(tags))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _apply_network(self, arn: str, properties: Dict[str, Any]) -> None:
        elbv2 = self.client('elbv2')
        elbv2.set_subnets(LoadBalancerArn=arn, Subnets=properties['Subnets'])
        elbv2.set_security_groups(LoadBalancerArn=arn, SecurityGroups=properties['SecurityGroups'])

    def _describe_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client('elbv2').describe_load_balancers(Names=[name])['LoadBalancers'][0]
        except ClientError as e:
            self._ignore_not_found(e)
            return None

    @staticmethod
    def _result(balancer: Dict[str, Any]) -> ProvisionResult:
        return ProvisionResult(
            physical_id=balancer['LoadBalancerArn'],
            outputs={
                'Arn': balancer['LoadBalancerArn'],
                'DNSName': balancer['DNSName'],
                'CanonicalHostedZoneId': balancer.get('CanonicalHostedZoneId'),
            }
        )

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self.client('elbv2').get_waiter('load_balancer_available').wait(
            LoadBalancerArns=[result.physical_id], WaiterConfig=self._waiter_config(timeout)
        )

    def exists(self, record: ResourceRecord) -> bool:
        try:
            self.client('elbv2').describe_load_balancers(LoadBalancerArns=[record.physical_id])
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return True

    def destroy(self, record: ResourceRecord) -> None:
        elbv2 = self.client('elbv2')
        try:
            elbv2.delete_load_balancer(LoadBalancerArn=record.physical_id)
        except ClientError as e:
            self._ignore_not_found(e)
            return
        # Network interfaces must be gone before the security group can be deleted
        elbv2.get_waiter('load_balancers_deleted').wait(
            LoadBalancerArns=[record.physical_id], WaiterConfig=self._waiter_config(600)
        )
        self.logger.info(f"Deleted load balancer {record.physical_id}")


class TargetGroupProvisioner(BaseProvisioner):
    """Provisioner for the IP target group the service registers into.

    The health check policy is carried here as opaque parameters.
    """

    kind = 'AWS::ElasticLoadBalancingV2::TargetGroup'
    replace_on = frozenset({'Name', 'Port', 'Protocol', 'TargetType', 'VpcId'})
    not_found_codes = frozenset({'TargetGroupNotFound'})

    @staticmethod
    def _health_check_args(health_check: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'HealthCheckEnabled': True,
            'HealthCheckProtocol': 'HTTP',
            'HealthCheckPath': health_check['Path'],
            'HealthCheckIntervalSeconds': health_check['IntervalSeconds'],
            'HealthCheckTimeoutSeconds': health_check['TimeoutSeconds'],
            'HealthyThresholdCount': health_check['HealthyThresholdCount'],
            'UnhealthyThresholdCount': health_check['UnhealthyThresholdCount'],
            'Matcher': {'HttpCode': health_check['Matcher']},
        }

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        elbv2 = self.client('elbv2')
        group = self._describe_by_name(properties['Name'])
        if group is not None:
            self.logger.info(f"Adopting existing target group {properties['Name']}")
            elbv2.modify_target_group(
                TargetGroupArn=group['TargetGroupArn'],
                **self._health_check_args(properties['HealthCheck'])
            )
        else:
            group = elbv2.create_target_group(
                Name=properties['Name'],
                Protocol=properties.get('Protocol', 'HTTP'),
                Port=properties['Port'],
                VpcId=properties['VpcId'],
                TargetType=properties.get('TargetType', 'ip'),
                Tags=to_aws_tags(tags),
                **self._health_check_args(properties['HealthCheck'])
            )['TargetGroups'][0]
            self.logger.info(f"Created target group {properties['Name']}")

        return ProvisionResult(
            physical_id=group['TargetGroupArn'],
            outputs={'Arn': group['TargetGroupArn'], 'Name': properties['Name']}
        )

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        elbv2 = self.client('elbv2')
        elbv2.modify_target_group(
            TargetGroupArn=record.physical_id,
            **self._health_check_args(properties['HealthCheck'])
        )
        elbv2.add_tags(ResourceArns=[record.physical_id], Tags=to_aws_tags(tags))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _describe_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client('elbv2').describe_target_groups(Names=[name])['TargetGroups'][0]
        except ClientError as e:
            self._ignore_not_found(e)
            return None

    def exists(self, record: ResourceRecord) -> bool:
        try:
            self.client('elbv2').describe_target_groups(TargetGroupArns=[record.physical_id])
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return True

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('elbv2').delete_target_group(TargetGroupArn=record.physical_id)
            self.logger.info(f"Deleted target group {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)


class ListenerProvisioner(BaseProvisioner):
    """Provisioner for the HTTP listener forwarding to the target group."""

    kind = 'AWS::ElasticLoadBalancingV2::Listener'
    replace_on = frozenset({'LoadBalancerArn'})
    not_found_codes = frozenset({'ListenerNotFound', 'LoadBalancerNotFound'})

    @staticmethod
    def _actions(properties: Dict[str, Any]):
        return [{'Type': 'forward', 'TargetGroupArn': properties['TargetGroupArn']}]

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        elbv2 = self.client('elbv2')
        listeners = elbv2.describe_listeners(LoadBalancerArn=properties['LoadBalancerArn'])['Listeners']
        existing = [listener for listener in listeners if listener['Port'] == properties['Port']]
        if existing:
            arn = existing[0]['ListenerArn']
            self.logger.info(f"Adopting existing listener on port {properties['Port']}")
            elbv2.modify_listener(
                ListenerArn=arn,
                Protocol=properties.get('Protocol', 'HTTP'),
                DefaultActions=self._actions(properties)
            )
        else:
            arn = elbv2.create_listener(
                LoadBalancerArn=properties['LoadBalancerArn'],
                Protocol=properties.get('Protocol', 'HTTP'),
                Port=properties['Port'],
                DefaultActions=self._actions(properties),
                Tags=to_aws_tags(tags)
            )['Listeners'][0]['ListenerArn']
            self.logger.info(f"Created listener on port {properties['Port']}")

        return ProvisionResult(physical_id=arn, outputs={'Arn': arn})

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self.client('elbv2').modify_listener(
            ListenerArn=record.physical_id,
            Port=properties['Port'],
            Protocol=properties.get('Protocol', 'HTTP'),
            DefaultActions=self._actions(properties)
        )
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def exists(self, record: ResourceRecord) -> bool:
        try:
            self.client('elbv2').describe_listeners(ListenerArns=[record.physical_id])
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return True

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('elbv2').delete_listener(ListenerArn=record.physical_id)
            self.logger.info(f"Deleted listener {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)

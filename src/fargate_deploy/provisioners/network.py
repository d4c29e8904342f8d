"""VPC and public subnet provisioners."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from fargate_deploy.provisioners.base import (
    BaseProvisioner,
    ProvisionResult,
    error_code,
    ownership_filters,
    to_aws_tags,
)
from fargate_deploy.state.models import ResourceRecord


class VpcProvisioner(BaseProvisioner):
    """Provisioner for the service VPC."""

    kind = 'AWS::EC2::VPC'
    replace_on = frozenset({'CidrBlock'})
    not_found_codes = frozenset({'InvalidVpcID.NotFound'})

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        """Create the VPC, adopting one that already carries our tags."""
        ec2 = self.client('ec2')

        existing = ec2.describe_vpcs(
            Filters=ownership_filters(tags) + [{'Name': 'cidr', 'Values': [properties['CidrBlock']]}]
        )['Vpcs']
        if existing:
            vpc_id = existing[0]['VpcId']
            self.logger.info(f"Adopting existing VPC {vpc_id}")
        else:
            response = ec2.create_vpc(
                CidrBlock=properties['CidrBlock'],
                TagSpecifications=[{
                    'ResourceType': 'vpc',
                    'Tags': to_aws_tags({**tags, 'Name': properties['Name']}),
                }]
            )
            vpc_id = response['Vpc']['VpcId']
            self.logger.info(f"Created VPC {vpc_id} ({properties['CidrBlock']})")

        self._apply_attributes(vpc_id, properties)
        return ProvisionResult(physical_id=vpc_id, outputs={'CidrBlock': properties['CidrBlock']})

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self._apply_attributes(record.physical_id, properties)
        self.client('ec2').create_tags(
            Resources=[record.physical_id],
            Tags=to_aws_tags({**tags, 'Name': properties['Name']})
        )
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _apply_attributes(self, vpc_id: str, properties: Dict[str, Any]) -> None:
        ec2 = self.client('ec2')
        # One attribute per call
        ec2.modify_vpc_attribute(
            VpcId=vpc_id, EnableDnsSupport={'Value': properties.get('EnableDnsSupport', True)}
        )
        ec2.modify_vpc_attribute(
            VpcId=vpc_id, EnableDnsHostnames={'Value': properties.get('EnableDnsHostnames', True)}
        )

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self.client('ec2').get_waiter('vpc_available').wait(
            VpcIds=[result.physical_id], WaiterConfig=self._waiter_config(timeout)
        )

    def exists(self, record: ResourceRecord) -> bool:
        try:
            vpcs = self.client('ec2').describe_vpcs(VpcIds=[record.physical_id])['Vpcs']
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return bool(vpcs)

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('ec2').delete_vpc(VpcId=record.physical_id)
            self.logger.info(f"Deleted VPC {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)


class SubnetProvisioner(BaseProvisioner):
    """Provisioner for public subnets, their internet gateway and route table.

    The subnets are managed as one resource because they share a route table
    and are only ever consumed as a list.
    """

    kind = 'AWS::EC2::Subnet'
    replace_on = frozenset({'VpcId', 'CidrBlocks'})
    not_found_codes = frozenset({
        'InvalidSubnetID.NotFound',
        'InvalidRouteTableID.NotFound',
        'InvalidInternetGatewayID.NotFound',
        'InvalidAssociationID.NotFound',
        'Gateway.NotAttached',
    })

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        """Create one public subnet per availability zone."""
        ec2 = self.client('ec2')
        vpc_id = properties['VpcId']
        cidrs: List[str] = properties['CidrBlocks']
        zones = self._availability_zones(len(cidrs))

        subnet_ids = []
        for index, (cidr, zone) in enumerate(zip(cidrs, zones)):
            subnet_ids.append(self._ensure_subnet(vpc_id, cidr, zone, index, properties['Name'], tags))

        igw_id = self._ensure_internet_gateway(vpc_id, properties['Name'], tags)
        route_table_id = self._ensure_route_table(vpc_id, igw_id, properties['Name'], tags)

        associated = {
            association.get('SubnetId')
            for association in ec2.describe_route_tables(
                RouteTableIds=[route_table_id]
            )['RouteTables'][0].get('Associations', [])
        }
        for subnet_id in subnet_ids:
            if subnet_id not in associated:
                ec2.associate_route_table(RouteTableId=route_table_id, SubnetId=subnet_id)

        return ProvisionResult(
            physical_id=','.join(subnet_ids),
            outputs={
                'SubnetIds': subnet_ids,
                'VpcId': vpc_id,
                'AvailabilityZones': zones,
                'InternetGatewayId': igw_id,
                'RouteTableId': route_table_id,
            }
        )

    def _availability_zones(self, count: int) -> List[str]:
        zones = self.client('ec2').describe_availability_zones(
            Filters=[{'Name': 'state', 'Values': ['available']}]
        )['AvailabilityZones']
        names = sorted(zone['ZoneName'] for zone in zones)
        if len(names) < count:
            raise ValueError(f"Region has {len(names)} available zones, {count} required")
        return names[:count]

    def _ensure_subnet(
        self, vpc_id: str, cidr: str, zone: str, index: int, name: str, tags: Dict[str, str]
    ) -> str:
        ec2 = self.client('ec2')
        existing = ec2.describe_subnets(
            Filters=[
                {'Name': 'vpc-id', 'Values': [vpc_id]},
                {'Name': 'cidr-block', 'Values': [cidr]},
            ]
        )['Subnets']
        if existing:
            subnet_id = existing[0]['SubnetId']
        else:
            subnet_id = ec2.create_subnet(
                VpcId=vpc_id,
                CidrBlock=cidr,
                AvailabilityZone=zone,
                TagSpecifications=[{
                    'ResourceType': 'subnet',
                    'Tags': to_aws_tags({**tags, 'Name': f"{name}-{index + 1}"}),
                }]
            )['Subnet']['SubnetId']
            self.logger.info(f"Created subnet {subnet_id} ({cidr}, {zone})")

        ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={'Value': True})
        return subnet_id

    def _ensure_internet_gateway(self, vpc_id: str, name: str, tags: Dict[str, str]) -> str:
        ec2 = self.client('ec2')
        attached = ec2.describe_internet_gateways(
            Filters=[{'Name': 'attachment.vpc-id', 'Values': [vpc_id]}]
        )['InternetGateways']
        if attached:
            return attached[0]['InternetGatewayId']

        igw_id = ec2.create_internet_gateway(
            TagSpecifications=[{
                'ResourceType': 'internet-gateway',
                'Tags': to_aws_tags({**tags, 'Name': f"{name}-igw"}),
            }]
        )['InternetGateway']['InternetGatewayId']
        ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        self.logger.info(f"Attached internet gateway {igw_id} to {vpc_id}")
        return igw_id

    def _ensure_route_table(self, vpc_id: str, igw_id: str, name: str, tags: Dict[str, str]) -> str:
        ec2 = self.client('ec2')
        existing = ec2.describe_route_tables(
            Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}] + ownership_filters(tags)
        )['RouteTables']
        if existing:
            route_table_id = existing[0]['RouteTableId']
        else:
            route_table_id = ec2.create_route_table(
                VpcId=vpc_id,
                TagSpecifications=[{
                    'ResourceType': 'route-table',
                    'Tags': to_aws_tags({**tags, 'Name': f"{name}-public"}),
                }]
            )['RouteTable']['RouteTableId']

        try:
            ec2.create_route(
                RouteTableId=route_table_id,
                DestinationCidrBlock='0.0.0.0/0',
                GatewayId=igw_id
            )
        except ClientError as e:
            if error_code(e) != 'RouteAlreadyExists':
                raise
        return route_table_id

    def wait_until_ready(self, result: ProvisionResult, timeout: int) -> None:
        self.client('ec2').get_waiter('subnet_available').wait(
            SubnetIds=result.outputs['SubnetIds'], WaiterConfig=self._waiter_config(timeout)
        )

    def exists(self, record: ResourceRecord) -> bool:
        subnet_ids = record.outputs.get('SubnetIds') or record.physical_id.split(',')
        try:
            subnets = self.client('ec2').describe_subnets(SubnetIds=subnet_ids)['Subnets']
        except ClientError as e:
            self._ignore_not_found(e)
            return False
        return len(subnets) == len(subnet_ids)

    def destroy(self, record: ResourceRecord) -> None:
        ec2 = self.client('ec2')
        route_table_id: Optional[str] = record.outputs.get('RouteTableId')
        igw_id: Optional[str] = record.outputs.get('InternetGatewayId')
        vpc_id: Optional[str] = record.outputs.get('VpcId')

        if route_table_id:
            try:
                tables = ec2.describe_route_tables(RouteTableIds=[route_table_id])['RouteTables']
                for association in tables[0].get('Associations', []) if tables else []:
                    if not association.get('Main'):
                        ec2.disassociate_route_table(AssociationId=association['RouteTableAssociationId'])
                ec2.delete_route_table(RouteTableId=route_table_id)
            except ClientError as e:
                self._ignore_not_found(e)

        for subnet_id in record.outputs.get('SubnetIds') or record.physical_id.split(','):
            try:
                ec2.delete_subnet(SubnetId=subnet_id)
            except ClientError as e:
                self._ignore_not_found(e)

        if igw_id:
            try:
                if vpc_id:
                    ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
                ec2.delete_internet_gateway(InternetGatewayId=igw_id)
            except ClientError as e:
                self._ignore_not_found(e)

        self.logger.info(f"Deleted subnets {record.physical_id}")

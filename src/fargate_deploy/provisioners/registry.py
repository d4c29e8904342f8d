"""ECR repository and CloudWatch log group provisioners."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from fargate_deploy.provisioners.base import (
    BaseProvisioner,
    ProvisionResult,
    error_code,
    to_aws_tags,
)
from fargate_deploy.state.models import ResourceRecord


class EcrRepositoryProvisioner(BaseProvisioner):
    """Provisioner for the application's ECR repository.

    Images are scanned on push.
    """

    kind = 'AWS::ECR::Repository'
    replace_on = frozenset({'RepositoryName'})
    not_found_codes = frozenset({'RepositoryNotFoundException'})

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        ecr = self.client('ecr')
        name = properties['RepositoryName']
        repository = self._describe(name)
        if repository is not None:
            self.logger.info(f"Adopting existing ECR repository {name}")
        else:
            try:
                repository = ecr.create_repository(
                    repositoryName=name,
                    imageScanningConfiguration={'scanOnPush': properties.get('ScanOnPush', True)},
                    imageTagMutability=properties.get('ImageTagMutability', 'MUTABLE'),
                    tags=to_aws_tags(tags)
                )['repository']
                self.logger.info(f"Created ECR repository {repository['repositoryUri']}")
            except ClientError as e:
                if error_code(e) != 'RepositoryAlreadyExistsException':
                    raise
                repository = self._describe(name)

        self._apply_settings(name, properties)
        return self._result(repository)

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self._apply_settings(record.physical_id, properties)
        self.client('ecr').tag_resource(resourceArn=record.outputs['Arn'], tags=to_aws_tags(tags))
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _apply_settings(self, name: str, properties: Dict[str, Any]) -> None:
        ecr = self.client('ecr')
        ecr.put_image_scanning_configuration(
            repositoryName=name,
            imageScanningConfiguration={'scanOnPush': properties.get('ScanOnPush', True)}
        )
        ecr.put_image_tag_mutability(
            repositoryName=name,
            imageTagMutability=properties.get('ImageTagMutability', 'MUTABLE')
        )

    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client('ecr').describe_repositories(repositoryNames=[name])['repositories'][0]
        except ClientError as e:
            self._ignore_not_found(e)
            return None

    @staticmethod
    def _result(repository: Dict[str, Any]) -> ProvisionResult:
        return ProvisionResult(
            physical_id=repository['repositoryName'],
            outputs={
                'Arn': repository['repositoryArn'],
                'RepositoryUri': repository['repositoryUri'],
            }
        )

    def exists(self, record: ResourceRecord) -> bool:
        return self._describe(record.physical_id) is not None

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('ecr').delete_repository(repositoryName=record.physical_id, force=True)
            self.logger.info(f"Deleted ECR repository {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)


class LogGroupProvisioner(BaseProvisioner):
    """Provisioner for the container log group."""

    kind = 'AWS::Logs::LogGroup'
    replace_on = frozenset({'LogGroupName'})
    not_found_codes = frozenset({'ResourceNotFoundException'})

    def create(self, resource_id: str, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        logs = self.client('logs')
        name = properties['LogGroupName']
        try:
            logs.create_log_group(logGroupName=name, tags=dict(tags))
            self.logger.info(f"Created log group {name}")
        except ClientError as e:
            if error_code(e) != 'ResourceAlreadyExistsException':
                raise
            self.logger.info(f"Adopting existing log group {name}")

        logs.put_retention_policy(logGroupName=name, retentionInDays=properties['RetentionInDays'])
        group = self._describe(name)
        return ProvisionResult(physical_id=name, outputs={'Arn': group['arn'] if group else None})

    def update(self, record: ResourceRecord, properties: Dict[str, Any], tags: Dict[str, str]) -> ProvisionResult:
        self.client('logs').put_retention_policy(
            logGroupName=record.physical_id, retentionInDays=properties['RetentionInDays']
        )
        return ProvisionResult(physical_id=record.physical_id, outputs=dict(record.outputs))

    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        groups = self.client('logs').describe_log_groups(logGroupNamePrefix=name)['logGroups']
        for group in groups:
            if group['logGroupName'] == name:
                return group
        return None

    def exists(self, record: ResourceRecord) -> bool:
        return self._describe(record.physical_id) is not None

    def destroy(self, record: ResourceRecord) -> None:
        try:
            self.client('logs').delete_log_group(logGroupName=record.physical_id)
            self.logger.info(f"Deleted log group {record.physical_id}")
        except ClientError as e:
            self._ignore_not_found(e)

"""Unit tests for the ECS cluster and service provisioners."""

import pytest

from fargate_deploy.provisioners.compute import (
    ServiceProvisioner,
    build_task_definition,
    container_image,
    copy_task_definition,
)
from fargate_deploy.state.models import ResourceRecord

SERVICE_PROPERTIES = {
    "ServiceName": "shop-staging",
    "Cluster": "arn:aws:ecs:us-east-1:123456789012:cluster/shop-staging",
    "DesiredCount": 2,
    "Family": "shop-staging",
    "Cpu": 512,
    "Memory": 1024,
    "ContainerName": "shop",
    "ContainerPort": 8080,
    "Image": "123456789012.dkr.ecr.us-east-1.amazonaws.com/shop:latest",
    "Environment": {"LOG_LEVEL": "info"},
    "ExecutionRoleArn": "arn:aws:iam::123456789012:role/shop-staging-execution-role",
    "LogGroupName": "/ecs/shop-staging",
    "Region": "us-east-1",
    "Subnets": ["subnet-a", "subnet-b"],
    "SecurityGroups": ["sg-1"],
    "TargetGroupArn": "arn:tg",
    "HealthCheckGracePeriod": 60,
    "MinimumHealthyPercent": 100,
    "MaximumPercent": 200,
}
SERVICE = {
    "serviceArn": "arn:aws:ecs:us-east-1:123456789012:service/shop-staging/shop-staging",
    "serviceName": "shop-staging",
    "clusterArn": SERVICE_PROPERTIES["Cluster"],
    "taskDefinition": "arn:task:3",
    "status": "ACTIVE",
}


def _record(**properties) -> ResourceRecord:
    return ResourceRecord(
        id="service",
        kind=ServiceProvisioner.kind,
        physical_id=SERVICE["serviceArn"],
        config_hash="h",
        properties={**SERVICE_PROPERTIES, **properties},
        outputs={"ServiceName": "shop-staging", "ClusterArn": SERVICE_PROPERTIES["Cluster"]},
    )


class TestTaskDefinitions:
    """Tests for task definition helpers."""

    def test_build_task_definition(self) -> None:
        definition = build_task_definition(SERVICE_PROPERTIES)

        assert definition["requiresCompatibilities"] == ["FARGATE"]
        assert definition["cpu"] == "512"
        container = definition["containerDefinitions"][0]
        assert container["portMappings"] == [{"containerPort": 8080, "protocol": "tcp"}]
        assert container["environment"] == [{"name": "LOG_LEVEL", "value": "info"}]
        assert container["logConfiguration"]["options"]["awslogs-group"] == "/ecs/shop-staging"

    def test_copy_replaces_only_the_named_container(self) -> None:
        described = {
            "taskDefinitionArn": "arn:task:3",
            "revision": 3,
            "registeredAt": "2024-01-01",
            "family": "shop-staging",
            "containerDefinitions": [{"name": "shop", "image": "old"}, {"name": "agent", "image": "agent:1"}],
        }

        registration = copy_task_definition(described, "shop", "new")

        assert set(registration) == {"family", "containerDefinitions"}
        assert container_image(registration, "shop") == "new"
        assert container_image(registration, "agent") == "agent:1"
        assert container_image(described, "shop") == "old"

    def test_copy_requires_container(self) -> None:
        with pytest.raises(ValueError, match="no container named"):
            copy_task_definition({"containerDefinitions": []}, "shop", "new")


class TestServiceProvisioner:
    """Tests for ServiceProvisioner."""

    def test_create_registers_and_creates(self, aws) -> None:
        ecs = aws.clients["ecs"]
        ecs.describe_services.return_value = {"services": []}
        ecs.register_task_definition.return_value = {"taskDefinition": {"taskDefinitionArn": "arn:task:1"}}
        ecs.create_service.return_value = {"service": {**SERVICE, "taskDefinition": "arn:task:1"}}

        result = ServiceProvisioner(aws).create("service", SERVICE_PROPERTIES, {"team": "platform"})

        assert result.physical_id == SERVICE["serviceArn"]
        assert result.outputs["TaskDefinitionArn"] == "arn:task:1"
        kwargs = ecs.create_service.call_args.kwargs
        assert kwargs["launchType"] == "FARGATE"
        assert kwargs["loadBalancers"][0]["containerPort"] == 8080
        assert kwargs["deploymentConfiguration"]["deploymentCircuitBreaker"] == {"enable": False, "rollback": False}

    def test_create_adopts_existing_service(self, aws) -> None:
        ecs = aws.clients["ecs"]
        ecs.describe_services.return_value = {"services": [SERVICE]}
        ecs.update_service.return_value = {"service": SERVICE}

        ServiceProvisioner(aws).create("service", SERVICE_PROPERTIES, {})

        ecs.create_service.assert_not_called()
        ecs.register_task_definition.assert_not_called()

    def test_scaling_keeps_task_definition(self, aws) -> None:
        ecs = aws.clients["ecs"]
        ecs.update_service.return_value = {"service": SERVICE}

        ServiceProvisioner(aws).update(_record(), {**SERVICE_PROPERTIES, "DesiredCount": 4}, {})

        kwargs = ecs.update_service.call_args.kwargs
        assert kwargs["desiredCount"] == 4
        assert "taskDefinition" not in kwargs

    def test_task_setting_change_keeps_released_image(self, aws) -> None:
        ecs = aws.clients["ecs"]
        ecs.describe_services.return_value = {"services": [SERVICE]}
        ecs.describe_task_definition.return_value = {"taskDefinition": {
            "containerDefinitions": [{"name": "shop", "image": "repo/shop@sha256:released"}]
        }}
        ecs.register_task_definition.return_value = {"taskDefinition": {"taskDefinitionArn": "arn:task:4"}}
        ecs.update_service.return_value = {"service": SERVICE}

        ServiceProvisioner(aws).update(_record(), {**SERVICE_PROPERTIES, "Memory": 2048}, {})

        registration = ecs.register_task_definition.call_args.kwargs
        assert registration["memory"] == "2048"
        assert registration["containerDefinitions"][0]["image"] == "repo/shop@sha256:released"
        assert ecs.update_service.call_args.kwargs["taskDefinition"] == "arn:task:4"

    def test_destroy_ignores_inactive_service(self, aws, client_error) -> None:
        aws.clients["ecs"].update_service.side_effect = client_error("ServiceNotActiveException")

        ServiceProvisioner(aws).destroy(_record())

        aws.clients["ecs"].delete_service.assert_not_called()

"""Unit tests for the ECS service platform."""

import pytest

from fargate_deploy.release.platform import EcsServicePlatform, parse_image_ref
from fargate_deploy.utils.errors import ProviderError

REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"
BASE_REVISION = "arn:aws:ecs:us-east-1:123456789012:task-definition/shop-staging:4"


@pytest.fixture
def ecs_platform(aws) -> EcsServicePlatform:
    return EcsServicePlatform(
        aws,
        cluster="shop-staging",
        service_name="shop-staging",
        container_name="shop",
        repository_uri=f"{REGISTRY}/shop",
    )


def _service(**overrides):
    service = {
        "serviceName": "shop-staging",
        "status": "ACTIVE",
        "taskDefinition": BASE_REVISION,
        "desiredCount": 2,
        "runningCount": 2,
        "loadBalancers": [{"targetGroupArn": "arn:tg"}],
        "deployments": [{
            "id": "ecs-svc/1",
            "taskDefinition": BASE_REVISION,
            "status": "PRIMARY",
            "desiredCount": 2,
            "runningCount": 2,
            "rolloutState": "COMPLETED",
        }],
    }
    service.update(overrides)
    return service


class TestResolveImage:
    """Tests for resolving tags to digests."""

    def test_tag_resolves_to_digest(self, ecs_platform, aws) -> None:
        ecr = aws.clients["ecr"]
        ecr.describe_images.return_value = {"imageDetails": [{"imageDigest": "sha256:abc"}]}

        uri = ecs_platform.resolve_image(parse_image_ref("v2"))

        assert uri == f"{REGISTRY}/shop@sha256:abc"
        ecr.describe_images.assert_called_once_with(repositoryName="shop", imageIds=[{"imageTag": "v2"}])

    def test_repository_from_reference(self, ecs_platform, aws) -> None:
        ecr = aws.clients["ecr"]
        ecr.describe_images.return_value = {"imageDetails": [{"imageDigest": "sha256:def"}]}

        uri = ecs_platform.resolve_image(parse_image_ref("tools/worker:v1"))

        assert uri == f"{REGISTRY}/tools/worker@sha256:def"

    def test_unpublished_image(self, ecs_platform, aws) -> None:
        aws.clients["ecr"].describe_images.return_value = {"imageDetails": []}

        with pytest.raises(ProviderError, match="not published"):
            ecs_platform.resolve_image(parse_image_ref("v2"))


class TestRevisions:
    """Tests for task definition handling."""

    def test_current_revision(self, ecs_platform, aws) -> None:
        aws.clients["ecs"].describe_services.return_value = {"services": [_service()]}

        assert ecs_platform.current_revision() == BASE_REVISION

    def test_missing_service(self, ecs_platform, aws) -> None:
        aws.clients["ecs"].describe_services.return_value = {"services": [_service(status="INACTIVE")]}

        with pytest.raises(ProviderError, match="not found"):
            ecs_platform.current_revision()

    def test_register_revision_copies_base(self, ecs_platform, aws) -> None:
        ecs = aws.clients["ecs"]
        ecs.describe_task_definition.return_value = {
            "taskDefinition": {
                "taskDefinitionArn": BASE_REVISION,
                "revision": 4,
                "status": "ACTIVE",
                "family": "shop-staging",
                "cpu": "512",
                "containerDefinitions": [
                    {"name": "shop", "image": f"{REGISTRY}/shop:v1"},
                    {"name": "sidecar", "image": "envoy:1"},
                ],
            },
            "tags": [{"key": "team", "value": "platform"}],
        }
        ecs.register_task_definition.return_value = {"taskDefinition": {"taskDefinitionArn": "arn:new"}}

        arn = ecs_platform.register_revision(BASE_REVISION, f"{REGISTRY}/shop@sha256:abc")

        assert arn == "arn:new"
        registration = ecs.register_task_definition.call_args.kwargs
        assert "taskDefinitionArn" not in registration
        assert "revision" not in registration
        assert registration["family"] == "shop-staging"
        assert registration["containerDefinitions"][0]["image"] == f"{REGISTRY}/shop@sha256:abc"
        assert registration["containerDefinitions"][1]["image"] == "envoy:1"
        assert registration["tags"] == [{"key": "team", "value": "platform"}]

    def test_revision_image(self, ecs_platform, aws) -> None:
        aws.clients["ecs"].describe_task_definition.return_value = {
            "taskDefinition": {"containerDefinitions": [{"name": "shop", "image": "img:1"}]}
        }

        assert ecs_platform.revision_image(BASE_REVISION) == "img:1"

    def test_discard_revision(self, ecs_platform, aws) -> None:
        ecs_platform.discard_revision("arn:new")

        aws.clients["ecs"].deregister_task_definition.assert_called_once_with(taskDefinition="arn:new")


class TestRollout:
    """Tests for rollout and status calls."""

    def test_start_rollout(self, ecs_platform, aws) -> None:
        ecs_platform.start_rollout("arn:new")

        kwargs = aws.clients["ecs"].update_service.call_args.kwargs
        assert kwargs["taskDefinition"] == "arn:new"
        assert kwargs["deploymentConfiguration"]["minimumHealthyPercent"] == 100
        assert kwargs["deploymentConfiguration"]["deploymentCircuitBreaker"]["rollback"] is False

    def test_describe(self, ecs_platform, aws) -> None:
        aws.clients["ecs"].describe_services.return_value = {"services": [_service()]}

        status = ecs_platform.describe()

        assert status.target_group_arn == "arn:tg"
        assert status.deployment_for(BASE_REVISION).rollout_state == "COMPLETED"
        assert status.to_dict()["deployments"][0]["running"] == 2

    def test_target_health(self, ecs_platform, aws) -> None:
        aws.clients["ecs"].describe_services.return_value = {"services": [_service()]}
        aws.clients["elbv2"].describe_target_health.return_value = {
            "TargetHealthDescriptions": [
                {"Target": {"Id": "10.0.0.5", "Port": 80}, "TargetHealth": {"State": "healthy"}},
                {"Target": {"Id": "10.0.1.7", "Port": 80}, "TargetHealth": {"State": "initial"}},
            ]
        }

        assert ecs_platform.target_health() == {"10.0.0.5:80": "healthy", "10.0.1.7:80": "initial"}

    def test_decommission_waits_for_stable_service(self, ecs_platform, aws) -> None:
        waiter = aws.clients["ecs"].get_waiter.return_value

        ecs_platform.decommission(BASE_REVISION, timeout=300)

        aws.clients["ecs"].get_waiter.assert_called_once_with("services_stable")
        assert waiter.wait.call_args.kwargs["WaiterConfig"] == {"Delay": 15, "MaxAttempts": 20}

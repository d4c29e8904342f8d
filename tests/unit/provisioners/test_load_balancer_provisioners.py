"""Unit tests for the load balancer, target group and listener provisioners."""

import pytest

from fargate_deploy.provisioners.load_balancer import (
    ListenerProvisioner,
    LoadBalancerProvisioner,
    TargetGroupProvisioner,
)
from fargate_deploy.state.models import ResourceRecord

BALANCER = {
    "LoadBalancerArn": "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/shop-staging-alb/1",
    "DNSName": "shop-staging-alb-1.us-east-1.elb.amazonaws.com",
    "CanonicalHostedZoneId": "Z35SXDOTRQ7X7K",
}
BALANCER_PROPERTIES = {"Name": "shop-staging-alb", "Subnets": ["subnet-a", "subnet-b"], "SecurityGroups": ["sg-1"]}
HEALTH_CHECK = {
    "Path": "/health",
    "IntervalSeconds": 30,
    "TimeoutSeconds": 5,
    "HealthyThresholdCount": 2,
    "UnhealthyThresholdCount": 3,
    "Matcher": "200-399",
}
TARGET_GROUP_PROPERTIES = {"Name": "shop-staging-tg", "Port": 8080, "VpcId": "vpc-1", "HealthCheck": HEALTH_CHECK}


def _record(provisioner_cls, physical_id: str) -> ResourceRecord:
    return ResourceRecord(id="x", kind=provisioner_cls.kind, physical_id=physical_id, config_hash="h",
                          outputs={"Arn": physical_id})


class TestLoadBalancerProvisioner:
    """Tests for LoadBalancerProvisioner."""

    def test_creates_load_balancer(self, aws, client_error) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.describe_load_balancers.side_effect = client_error("LoadBalancerNotFound")
        elbv2.create_load_balancer.return_value = {"LoadBalancers": [BALANCER]}

        result = LoadBalancerProvisioner(aws).create("load-balancer", BALANCER_PROPERTIES, {"team": "platform"})

        assert result.physical_id == BALANCER["LoadBalancerArn"]
        assert result.outputs["DNSName"] == BALANCER["DNSName"]
        kwargs = elbv2.create_load_balancer.call_args.kwargs
        assert kwargs["Scheme"] == "internet-facing"
        assert kwargs["Tags"] == [{"Key": "team", "Value": "platform"}]

    def test_adopts_and_reapplies_network(self, aws) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.describe_load_balancers.return_value = {"LoadBalancers": [BALANCER]}

        LoadBalancerProvisioner(aws).create("load-balancer", BALANCER_PROPERTIES, {})

        elbv2.create_load_balancer.assert_not_called()
        elbv2.set_subnets.assert_called_once_with(LoadBalancerArn=BALANCER["LoadBalancerArn"],
                                                  Subnets=["subnet-a", "subnet-b"])

    def test_describe_errors_propagate(self, aws, client_error) -> None:
        aws.clients["elbv2"].describe_load_balancers.side_effect = client_error("AccessDenied")

        with pytest.raises(Exception, match="AccessDenied"):
            LoadBalancerProvisioner(aws).create("load-balancer", BALANCER_PROPERTIES, {})

    def test_wait_uses_poll_delay(self, aws) -> None:
        provisioner = LoadBalancerProvisioner(aws)
        record = _record(LoadBalancerProvisioner, BALANCER["LoadBalancerArn"])

        provisioner.wait_until_ready(provisioner.update(record, BALANCER_PROPERTIES, {}), timeout=300)

        waiter = aws.clients["elbv2"].get_waiter.return_value
        assert waiter.wait.call_args.kwargs["WaiterConfig"] == {"Delay": 15, "MaxAttempts": 20}

    def test_destroy_waits_for_deletion(self, aws) -> None:
        elbv2 = aws.clients["elbv2"]

        LoadBalancerProvisioner(aws).destroy(_record(LoadBalancerProvisioner, BALANCER["LoadBalancerArn"]))

        elbv2.get_waiter.assert_called_once_with("load_balancers_deleted")

    def test_destroy_missing_skips_wait(self, aws, client_error) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.delete_load_balancer.side_effect = client_error("LoadBalancerNotFound")

        LoadBalancerProvisioner(aws).destroy(_record(LoadBalancerProvisioner, "arn:gone"))

        elbv2.get_waiter.assert_not_called()


class TestTargetGroupProvisioner:
    """Tests for TargetGroupProvisioner."""

    def test_creates_with_health_check(self, aws, client_error) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.describe_target_groups.side_effect = client_error("TargetGroupNotFound")
        elbv2.create_target_group.return_value = {"TargetGroups": [{"TargetGroupArn": "arn:tg"}]}

        result = TargetGroupProvisioner(aws).create("target-group", TARGET_GROUP_PROPERTIES, {})

        assert result.outputs == {"Arn": "arn:tg", "Name": "shop-staging-tg"}
        kwargs = elbv2.create_target_group.call_args.kwargs
        assert kwargs["TargetType"] == "ip"
        assert kwargs["HealthCheckPath"] == "/health"
        assert kwargs["Matcher"] == {"HttpCode": "200-399"}

    def test_update_modifies_health_check(self, aws) -> None:
        elbv2 = aws.clients["elbv2"]
        properties = {**TARGET_GROUP_PROPERTIES, "HealthCheck": {**HEALTH_CHECK, "Path": "/ready"}}

        TargetGroupProvisioner(aws).update(_record(TargetGroupProvisioner, "arn:tg"), properties, {})

        kwargs = elbv2.modify_target_group.call_args.kwargs
        assert kwargs["TargetGroupArn"] == "arn:tg"
        assert kwargs["HealthCheckPath"] == "/ready"

    def test_port_change_requires_replacement(self, aws) -> None:
        provisioner = TargetGroupProvisioner(aws)

        assert provisioner.requires_replacement(TARGET_GROUP_PROPERTIES, {**TARGET_GROUP_PROPERTIES, "Port": 80})
        assert not provisioner.requires_replacement(
            TARGET_GROUP_PROPERTIES, {**TARGET_GROUP_PROPERTIES, "HealthCheck": {**HEALTH_CHECK, "Path": "/"}}
        )


class TestListenerProvisioner:
    """Tests for ListenerProvisioner."""

    PROPERTIES = {"LoadBalancerArn": "arn:lb", "Port": 80, "TargetGroupArn": "arn:tg"}

    def test_creates_forwarding_listener(self, aws) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.describe_listeners.return_value = {"Listeners": []}
        elbv2.create_listener.return_value = {"Listeners": [{"ListenerArn": "arn:listener"}]}

        result = ListenerProvisioner(aws).create("listener", self.PROPERTIES, {})

        assert result.physical_id == "arn:listener"
        assert elbv2.create_listener.call_args.kwargs["DefaultActions"] == [
            {"Type": "forward", "TargetGroupArn": "arn:tg"}
        ]

    def test_adopts_listener_on_same_port(self, aws) -> None:
        elbv2 = aws.clients["elbv2"]
        elbv2.describe_listeners.return_value = {"Listeners": [
            {"ListenerArn": "arn:https", "Port": 443},
            {"ListenerArn": "arn:http", "Port": 80},
        ]}

        result = ListenerProvisioner(aws).create("listener", self.PROPERTIES, {})

        assert result.physical_id == "arn:http"
        elbv2.create_listener.assert_not_called()
        assert elbv2.modify_listener.call_args.kwargs["ListenerArn"] == "arn:http"

    def test_missing_load_balancer_means_missing_listener(self, aws, client_error) -> None:
        aws.clients["elbv2"].describe_listeners.side_effect = client_error("LoadBalancerNotFound")

        assert ListenerProvisioner(aws).exists(_record(ListenerProvisioner, "arn:listener")) is False

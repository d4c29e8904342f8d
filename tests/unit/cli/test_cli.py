"""Unit tests for the command line interface."""

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from fargate_deploy.cli.main import CliSettings, cli, get_state_path, load_config
from fargate_deploy.release.health import HealthState
from fargate_deploy.utils.errors import ConfigurationError, CredentialError

CONFIG = """
project:
  name: shop
  region: us-east-1

service:
  container_port: 8080

environments:
  staging: {}
  production:
    desired_count: 3
"""


@pytest.fixture(autouse=True)
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Run every command from an empty project directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def factory(orchestrator):
    """Orchestrator factory that records what the CLI asked for."""
    calls = []

    def build(settings, overrides, cancel_event):
        calls.append((settings, overrides))
        return orchestrator

    build.calls = calls
    return build


def _invoke(runner: CliRunner, factory, *args: str, **kwargs):
    return runner.invoke(cli, list(args), obj={"orchestrator_factory": factory}, **kwargs)


class TestPlanCommand:
    """Tests for plan."""

    def test_plan_json(self, runner, factory) -> None:
        result = _invoke(runner, factory, "--output", "json", "plan")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["summary"]["create"] == 11
        assert data["operations"][0]["operation"] == "create-vpc"

    def test_plan_table(self, runner, factory) -> None:
        result = _invoke(runner, factory, "plan")

        assert result.exit_code == 0
        assert "11 to create" in result.stdout

    def test_global_options_and_overrides(self, runner, factory) -> None:
        result = _invoke(
            runner, factory,
            "--env", "production", "--region", "eu-west-1", "--app-name", "api",
            "plan", "--no-refresh", "--desired-count", "3",
        )

        assert result.exit_code == 0
        settings, overrides = factory.calls[0]
        assert settings.environment == "production"
        assert settings.region == "eu-west-1"
        assert settings.app_name == "api"
        assert overrides == {"desired_count": 3}

    def test_plan_with_drift_exits_1(self, runner, factory, orchestrator, cloud, state_manager) -> None:
        orchestrator.apply()
        cloud.remove(state_manager.get_resource("listener").physical_id)

        result = _invoke(runner, factory, "--output", "json", "plan")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["drifted"][0]["resource_id"] == "listener"


class TestApplyCommand:
    """Tests for apply."""

    def test_apply_json(self, runner, factory) -> None:
        result = _invoke(runner, factory, "--output", "json", "apply", "--sequential")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["result"]["success"] is True
        assert len(data["result"]["completed"]) == 11
        assert data["outputs"]["url"].startswith("http://load-balancer-")

    def test_apply_table(self, runner, factory, state_manager) -> None:
        result = _invoke(runner, factory, "apply")

        assert result.exit_code == 0
        assert state_manager.get_resource("service") is not None

    def test_transient_failure_exits_2(self, runner, factory, cloud, client_error) -> None:
        cloud.fail("create", "vpc", *[client_error("ThrottlingException")] * 3)

        result = _invoke(runner, factory, "--output", "json", "apply")

        assert result.exit_code == 2
        data = json.loads(result.stdout)
        assert data["result"]["error"]["context"]["resource_id"] == "vpc"

    def test_confirm_drift(self, runner, factory, orchestrator, cloud, state_manager) -> None:
        orchestrator.apply()
        cloud.remove(state_manager.get_resource("target-group").physical_id)

        declined = _invoke(runner, factory, "--output", "json", "apply")
        confirmed = _invoke(runner, factory, "--output", "json", "apply", "--confirm-drift", "target-group")

        assert declined.exit_code == 1
        assert json.loads(declined.stdout)["result"]["skipped"] == ["target-group", "listener", "service"]
        assert confirmed.exit_code == 0


class TestReleaseCommands:
    """Tests for release and rollback."""

    def test_release_json(self, runner, factory, orchestrator) -> None:
        orchestrator.apply()

        result = _invoke(runner, factory, "--output", "json", "release", "v2")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["stage"] == "healthy"
        assert data["error"] is None

    def test_unhealthy_release_exits_1(self, runner, factory, orchestrator, health_check, platform) -> None:
        orchestrator.apply()
        health_check.default = HealthState.UNHEALTHY
        health_check.states[platform.serving] = HealthState.HEALTHY

        result = _invoke(runner, factory, "--output", "json", "release", "v2")

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["stage"] == "rolled_back"
        assert data["error"]["error"] == "ReleaseFailedError"

    def test_release_before_apply(self, runner, factory) -> None:
        result = _invoke(runner, factory, "--output", "json", "release", "v2")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["error"] == "ConfigurationError"

    def test_rollback_without_history(self, runner, factory, orchestrator) -> None:
        orchestrator.apply()

        result = _invoke(runner, factory, "--output", "json", "rollback")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["message"].startswith("No earlier healthy revision")

    def test_rollback_after_release(self, runner, factory, orchestrator, platform) -> None:
        orchestrator.apply()
        first = platform.serving
        orchestrator.release("v2")

        result = _invoke(runner, factory, "rollback")

        assert result.exit_code == 0
        assert platform.serving == first


class TestStatusAndDestroy:
    """Tests for status and destroy."""

    def test_status_json(self, runner, factory, orchestrator) -> None:
        orchestrator.apply()

        result = _invoke(runner, factory, "--output", "json", "status")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["converged"] is True
        assert data["service"] == "shop-staging"

    def test_destroy_with_yes(self, runner, factory, orchestrator, state_manager) -> None:
        orchestrator.apply()

        result = _invoke(runner, factory, "--output", "json", "destroy", "--yes")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["result"]["success"] is True
        assert state_manager.snapshot().resources == {}

    def test_destroy_declined_exits_3(self, runner, factory, orchestrator, state_manager) -> None:
        orchestrator.apply()

        result = _invoke(runner, factory, "destroy", input="n\n")

        assert result.exit_code == 3
        assert len(state_manager.snapshot().resources) == 11

    def test_destroy_nothing_recorded(self, runner, factory) -> None:
        result = _invoke(runner, factory, "destroy")

        assert result.exit_code == 0

    def test_interrupt_exits_3(self, runner) -> None:
        def interrupted(settings, overrides, cancel_event):
            raise KeyboardInterrupt

        result = _invoke(runner, interrupted, "status")

        assert result.exit_code == 3


class TestValidateCommand:
    """Tests for validate."""

    def test_offline_with_config(self, runner, workdir) -> None:
        (workdir / "fargate.yaml").write_text(CONFIG, encoding="utf-8")

        result = runner.invoke(cli, ["--output", "json", "validate", "--offline"], obj={})

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["valid"] is True
        assert [c["check"] for c in data["checks"]] == ["configuration", "environment"]
        assert "production, staging" in data["checks"][0]["detail"]

    def test_undeclared_environment(self, runner, workdir) -> None:
        (workdir / "fargate.yaml").write_text(CONFIG, encoding="utf-8")

        result = runner.invoke(cli, ["--env", "qa", "--output", "json", "validate", "--offline"], obj={})

        assert result.exit_code == 1
        assert json.loads(result.stdout)["valid"] is False

    def test_invalid_config(self, runner, workdir) -> None:
        (workdir / "fargate.yaml").write_text("service:\n  cpu: lots\n", encoding="utf-8")

        result = runner.invoke(cli, ["validate", "--offline"], obj={})

        assert result.exit_code == 1

    def test_credentials_checked(self, runner, workdir) -> None:
        clients = MagicMock()
        clients.validate_credentials.return_value = MagicMock(
            user_arn="arn:aws:iam::123456789012:user/dev", account_id="123456789012"
        )
        factory = MagicMock(return_value=clients)

        result = runner.invoke(cli, ["--output", "json", "--region", "eu-west-1", "validate"],
                               obj={"clients_factory": factory})

        assert result.exit_code == 0
        factory.assert_called_once_with(profile=None, region="eu-west-1")
        checks = {c["check"]: c for c in json.loads(result.stdout)["checks"]}
        assert checks["credentials"]["detail"] == "arn:aws:iam::123456789012:user/dev"
        assert checks["account"]["ok"] is True

    def test_account_mismatch(self, runner, workdir) -> None:
        (workdir / "fargate.yaml").write_text(
            "project:\n  name: shop\n  account_id: '999999999999'\n", encoding="utf-8"
        )
        clients = MagicMock()
        clients.validate_credentials.return_value = MagicMock(user_arn="arn", account_id="123456789012")

        result = runner.invoke(cli, ["--output", "json", "validate"],
                               obj={"clients_factory": MagicMock(return_value=clients)})

        assert result.exit_code == 1
        checks = {c["check"]: c for c in json.loads(result.stdout)["checks"]}
        assert checks["account"]["ok"] is False

    def test_invalid_credentials(self, runner, workdir) -> None:
        clients = MagicMock()
        clients.validate_credentials.side_effect = CredentialError("No AWS credentials found")

        result = runner.invoke(cli, ["--output", "json", "validate"],
                               obj={"clients_factory": MagicMock(return_value=clients)})

        assert result.exit_code == 1
        checks = {c["check"]: c for c in json.loads(result.stdout)["checks"]}
        assert checks["credentials"]["detail"] == "No AWS credentials found"


class TestHelpers:
    """Tests for configuration loading helpers."""

    def test_missing_default_config_falls_back(self, workdir) -> None:
        config = load_config(None)

        assert config.environment_names() == []
        assert config.desired_state("staging").app_name == "appsmith"

    def test_explicit_config_must_exist(self, workdir) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config("missing.yaml")

    def test_state_path(self, workdir, desired_state) -> None:
        assert get_state_path(desired_state) == workdir / ".fargate" / "state" / "shop-staging.json"

    def test_settings_defaults(self) -> None:
        assert CliSettings(environment="staging").output == "table"

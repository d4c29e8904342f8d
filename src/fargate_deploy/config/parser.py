"""YAML configuration parser for fargate.yaml."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fargate_deploy.config.models import (
    DesiredState,
    HealthCheckPolicy,
    NetworkConfig,
    ReleaseSettings,
    RetrySettings,
)
from fargate_deploy.utils.errors import ConfigurationError
from fargate_deploy.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "fargate.yaml"


class ProjectConfig(BaseModel):
    """Project section."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field("appsmith", min_length=1)
    region: str = "us-east-1"
    account_id: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class ServiceConfig(BaseModel):
    """Service section; every field is also a per-environment override."""

    model_config = ConfigDict(extra="forbid")

    cpu: Optional[int] = None
    memory: Optional[int] = None
    desired_count: Optional[int] = None
    container_port: Optional[int] = None
    image: Optional[str] = None
    image_tag: Optional[str] = None
    log_retention_days: Optional[int] = None
    environment: Optional[Dict[str, str]] = None
    tags: Optional[Dict[str, str]] = None


class EnvironmentConfig(ServiceConfig):
    """Overrides for one environment."""

    region: Optional[str] = None
    account_id: Optional[str] = None
    network: Optional[Dict[str, Any]] = None
    health_check: Optional[Dict[str, Any]] = None
    retry: Optional[Dict[str, Any]] = None
    release: Optional[Dict[str, Any]] = None


# Sections validated by their own models before merging
SECTION_MODELS = {
    "project": ProjectConfig,
    "service": ServiceConfig,
    "network": NetworkConfig,
    "health_check": HealthCheckPolicy,
    "retry": RetrySettings,
    "release": ReleaseSettings,
}


class ConfigValidationError(ConfigurationError):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)

    def to_user_message(self) -> str:
        return str(self)


def _collect(errors: List[Dict], prefix: List[Any], error: ValidationError) -> None:
    for item in error.errors():
        errors.append({"loc": prefix + list(item["loc"]), "msg": item["msg"]})


def _service_fields(section: Dict[str, Any]) -> Dict[str, Any]:
    """Translate service/environment keys to DesiredState fields."""
    fields = {key: value for key, value in section.items() if value is not None}
    if "environment" in fields:
        fields["environment_variables"] = fields.pop("environment")
    return fields


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


class Config:
    """Configuration manager for fargate.yaml."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to the fargate.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict[str, Any] = {}
        self.project = ProjectConfig()
        self.environments: Dict[str, EnvironmentConfig] = {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: str = DEFAULT_CONFIG_FILE) -> "Config":
        """Build a validated configuration from an already-parsed mapping."""
        config = cls(config_path)
        config.data = data or {}
        config._validate_and_parse()
        return config

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigurationError: If the file is missing or unreadable
            ConfigValidationError: If configuration is invalid
        """
        if not self.config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.config_path}",
                suggestions=[f"Create {DEFAULT_CONFIG_FILE} or pass --config <path>"]
            )

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        self._validate_and_parse()
        logger.debug(f"Loaded configuration from {self.config_path}")
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[Dict] = []

        unknown = set(self.data) - set(SECTION_MODELS) - {"environments"}
        for key in sorted(unknown):
            errors.append({"loc": [key], "msg": "Unknown configuration section"})

        for section, model in SECTION_MODELS.items():
            value = self.data.get(section)
            if value is None:
                continue
            if not isinstance(value, dict):
                errors.append({"loc": [section], "msg": "Section must be a mapping"})
                continue
            try:
                model(**value)
            except ValidationError as e:
                _collect(errors, [section], e)

        environments = self.data.get("environments") or {}
        if not isinstance(environments, dict):
            errors.append({"loc": ["environments"], "msg": "Environments must be a dictionary"})
            return errors

        for env_name, env_data in environments.items():
            try:
                EnvironmentConfig(**(env_data or {}))
            except ValidationError as e:
                _collect(errors, ["environments", env_name], e)

        # Only build full states once every section is individually valid
        if not errors:
            for env_name in environments or ["staging"]:
                try:
                    self._build(env_name, {})
                except ValidationError as e:
                    _collect(errors, ["environments", env_name], e)

        return errors

    def _validate_and_parse(self) -> None:
        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**(self.data.get("project") or {}))
        self.environments = {
            name: EnvironmentConfig(**(env or {}))
            for name, env in (self.data.get("environments") or {}).items()
        }

    def environment_names(self) -> List[str]:
        return sorted(self.environments)

    def _build(self, environment: str, overrides: Dict[str, Any]) -> DesiredState:
        project = self.data.get("project") or {}
        fields: Dict[str, Any] = {
            "environment": environment,
            "app_name": project.get("name", "appsmith"),
            "region": project.get("region", "us-east-1"),
            "tags": dict(project.get("tags") or {}),
        }
        if project.get("account_id"):
            fields["account_id"] = project["account_id"]

        fields = _merge(fields, _service_fields(self.data.get("service") or {}))
        for section in ("network", "health_check", "retry", "release"):
            if self.data.get(section):
                fields[section] = dict(self.data[section])

        env_data = (self.data.get("environments") or {}).get(environment) or {}
        fields = _merge(fields, _service_fields(env_data))
        fields = _merge(fields, {k: v for k, v in overrides.items() if v is not None})

        return DesiredState.model_validate(fields)

    def desired_state(
        self,
        environment: str,
        region: Optional[str] = None,
        image_tag: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None
    ) -> DesiredState:
        """Build the DesiredState for an environment.

        Precedence, lowest first: defaults, top-level sections, the
        environment's overrides, then explicit overrides.

        Args:
            environment: Environment name
            region: Region override (e.g. from AWS_REGION)
            image_tag: Image tag override
            overrides: Additional DesiredState field overrides

        Returns:
            Validated DesiredState

        Raises:
            ConfigurationError: If the environment is not declared
            ConfigValidationError: If the merged state is invalid
        """
        if self.environments and environment not in self.environments:
            raise ConfigurationError(
                f"Environment '{environment}' not found in configuration",
                suggestions=[f"Declared environments: {', '.join(self.environment_names())}"]
            )

        merged = dict(overrides or {})
        if region:
            merged["region"] = region
        if image_tag:
            merged["image_tag"] = image_tag

        try:
            return self._build(environment, merged)
        except ValidationError as e:
            errors: List[Dict] = []
            _collect(errors, ["environments", environment], e)
            raise ConfigValidationError(
                f"Invalid desired state for environment '{environment}'", errors
            )

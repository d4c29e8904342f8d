"""Pydantic models for the desired state of a deployment."""

import ipaddress
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Valid Fargate memory sizes (MiB) per CPU unit
FARGATE_CPU_MEMORY = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4097, 1024)),
    1024: tuple(range(2048, 8193, 1024)),
    2048: tuple(range(4096, 16385, 1024)),
    4096: tuple(range(8192, 30721, 1024)),
    8192: tuple(range(16384, 61441, 4096)),
    16384: tuple(range(32768, 122881, 8192)),
}

# Retention values accepted by CloudWatch Logs
LOG_RETENTION_DAYS = (
    1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365, 400, 545, 731,
    1096, 1827, 2192, 2557, 2922, 3288, 3653,
)

REGION_PATTERN = re.compile(r"^(us|eu|ap|sa|ca|me|af|il|mx)(-gov)?-[a-z]+-\d$")

ACCOUNT_ID_PLACEHOLDER = "ACCOUNT_ID"
REGION_PLACEHOLDER = "REGION"


class NetworkConfig(BaseModel):
    """VPC layout for the service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    vpc_cidr: str = Field("10.0.0.0/16", description="VPC CIDR block")
    az_count: int = Field(2, ge=2, le=4, description="Number of public subnets, one per AZ")
    subnet_newbits: int = Field(8, ge=1, le=12, description="Bits added to the VPC prefix per subnet")

    @field_validator("vpc_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        """Validate the CIDR is an IPv4 network between /16 and /24."""
        try:
            network = ipaddress.IPv4Network(v)
        except ValueError as e:
            raise ValueError(f"Invalid VPC CIDR '{v}': {e}")
        if not 16 <= network.prefixlen <= 24:
            raise ValueError("VPC CIDR prefix must be between /16 and /24")
        return str(network)

    @model_validator(mode="after")
    def validate_subnets_fit(self):
        """Ensure one subnet per AZ fits in the VPC and is at most /28."""
        prefix = ipaddress.IPv4Network(self.vpc_cidr).prefixlen + self.subnet_newbits
        if prefix > 28:
            raise ValueError(f"Subnets would be /{prefix}; AWS allows at most /28")
        if 2 ** self.subnet_newbits < self.az_count:
            raise ValueError(f"{self.az_count} subnets do not fit with subnet_newbits={self.subnet_newbits}")
        return self

    def subnet_cidrs(self):
        """Return the CIDR of each public subnet, in AZ order."""
        network = ipaddress.IPv4Network(self.vpc_cidr)
        subnets = network.subnets(new_prefix=network.prefixlen + self.subnet_newbits)
        return [str(next(subnets)) for _ in range(self.az_count)]


class HealthCheckPolicy(BaseModel):
    """Health check parameters.

    The values are handed to the load balancer target group untouched; the
    release coordinator only consumes the resulting pass/fail signal and the
    two thresholds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field("/", pattern="^/")
    interval: int = Field(30, ge=5, le=300, description="Seconds between checks")
    timeout: int = Field(5, ge=2, le=120, description="Seconds before a check fails")
    healthy_threshold: int = Field(2, ge=2, le=10)
    unhealthy_threshold: int = Field(3, ge=2, le=10)
    grace_period: int = Field(60, ge=0, le=7200, description="Seconds ECS ignores failing checks after start")
    matcher: str = Field("200-399", pattern=r"^\d{3}(-\d{3})?(,\d{3}(-\d{3})?)*$")

    @model_validator(mode="after")
    def validate_timeout(self):
        if self.timeout >= self.interval:
            raise ValueError("health_check timeout must be less than interval")
        return self


class RetrySettings(BaseModel):
    """Bounded retry for transient provider errors."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(5, ge=1, le=20)
    base_delay: float = Field(1.0, gt=0, le=60)
    max_delay: float = Field(30.0, gt=0, le=600)

    @model_validator(mode="after")
    def validate_delays(self):
        if self.base_delay > self.max_delay:
            raise ValueError("retry base_delay must not exceed max_delay")
        return self


class ReleaseSettings(BaseModel):
    """Timeouts for rolling releases."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rollout_timeout: int = Field(900, ge=30, le=7200, description="Seconds to reach healthy")
    rollback_timeout: int = Field(600, ge=30, le=7200, description="Seconds to restore the old revision")
    container_name: Optional[str] = Field(None, pattern="^[a-zA-Z0-9_-]{1,255}$")


class DesiredState(BaseModel):
    """What the operator wants deployed in one environment.

    Instances are immutable. Every adjustment (placeholder substitution,
    CLI overrides) goes through ``with_overrides`` and returns a new,
    re-validated object.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    region: str = Field("us-east-1")
    environment: str = Field("staging", min_length=1, max_length=32, pattern="^[a-z][a-z0-9-]*$")
    app_name: str = Field("appsmith", min_length=1, max_length=24, pattern="^[a-z][a-z0-9-]*$")
    account_id: Optional[str] = Field(None, pattern=r"^\d{12}$")
    desired_count: int = Field(1, ge=0, le=100)
    cpu: int = Field(512)
    memory: int = Field(1024)
    image: Optional[str] = Field(None, description="Image URI; may contain ACCOUNT_ID and REGION placeholders")
    image_tag: str = Field("latest", pattern=r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
    container_port: int = Field(80, ge=1, le=65535)
    log_retention_days: int = Field(30)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    health_check: HealthCheckPolicy = Field(default_factory=HealthCheckPolicy)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    release: ReleaseSettings = Field(default_factory=ReleaseSettings)
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not REGION_PATTERN.match(v):
            raise ValueError(f"Unknown AWS region: {v}")
        return v

    @field_validator("log_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v not in LOG_RETENTION_DAYS:
            raise ValueError(f"log_retention_days must be one of {', '.join(map(str, LOG_RETENTION_DAYS))}")
        return v

    @field_validator("environment_variables")
    @classmethod
    def validate_environment_variables(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate environment variable names."""
        for key in v:
            if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", key):
                raise ValueError(f"Invalid environment variable name: {key}")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate tag keys and values."""
        for key, value in v.items():
            if not key:
                raise ValueError("Tag key must be a non-empty string")
            if key.startswith("aws:") or key.startswith("fargate:"):
                raise ValueError(f"Tag key uses a reserved prefix: {key}")
            if len(key) > 128:
                raise ValueError(f"Tag key exceeds 128 characters: {key}")
            if len(value) > 256:
                raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
        return v

    @model_validator(mode="after")
    def validate_cpu_memory(self):
        """Validate the CPU/memory pair is a supported Fargate size."""
        allowed = FARGATE_CPU_MEMORY.get(self.cpu)
        if allowed is None:
            raise ValueError(
                f"Invalid Fargate cpu {self.cpu}; valid values: {sorted(FARGATE_CPU_MEMORY)}"
            )
        if self.memory not in allowed:
            raise ValueError(
                f"Invalid memory {self.memory} for cpu {self.cpu}; valid values: {list(allowed)}"
            )
        return self

    @property
    def name_prefix(self) -> str:
        """Prefix used for every named AWS resource in this environment."""
        return f"{self.app_name}-{self.environment}"

    @property
    def container_name(self) -> str:
        return self.release.container_name or self.app_name

    @property
    def repository_name(self) -> str:
        return self.app_name

    @property
    def log_group_name(self) -> str:
        return f"/ecs/{self.name_prefix}"

    @property
    def service_id(self) -> str:
        """Identifier used for release bookkeeping."""
        return self.name_prefix

    def registry_uri(self) -> str:
        """ECR repository URI, with the ACCOUNT_ID placeholder when unresolved."""
        account = self.account_id or ACCOUNT_ID_PLACEHOLDER
        return f"{account}.dkr.ecr.{self.region}.amazonaws.com/{self.repository_name}"

    def image_uri(self) -> str:
        """Image the service runs when it is first created."""
        image = self.image or self.registry_uri()
        last = image.rsplit("/", 1)[-1]
        if "@" not in last and ":" not in last:
            image = f"{image}:{self.image_tag}"
        return image

    def with_overrides(self, **fields: Any) -> "DesiredState":
        """Return a new DesiredState with the given fields replaced.

        Args:
            **fields: Top-level field values; nested sections may be given as dicts

        Returns:
            A new, validated DesiredState
        """
        data = self.model_dump()
        for key, value in fields.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict) and key not in ("environment_variables", "tags"):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return type(self).model_validate(data)

    def has_placeholders(self) -> bool:
        values = [self.image or ""] + list(self.environment_variables.values())
        return any(ACCOUNT_ID_PLACEHOLDER in value or REGION_PLACEHOLDER in value for value in values)


def _substitute(value: str, account_id: str, region: str) -> str:
    return value.replace(ACCOUNT_ID_PLACEHOLDER, account_id).replace(REGION_PLACEHOLDER, region)


def resolve_placeholders(desired: DesiredState, account_id: str) -> DesiredState:
    """Substitute ACCOUNT_ID and REGION placeholders.

    Pure: ``desired`` is left untouched and a new DesiredState is returned.

    Args:
        desired: Desired state that may contain placeholders
        account_id: 12-digit AWS account id

    Returns:
        DesiredState with the account id recorded and placeholders replaced
    """
    updates: Dict[str, Any] = {
        "account_id": account_id,
        "environment_variables": {
            key: _substitute(value, account_id, desired.region)
            for key, value in desired.environment_variables.items()
        },
    }
    if desired.image:
        updates["image"] = _substitute(desired.image, account_id, desired.region)
    return desired.with_overrides(**updates)

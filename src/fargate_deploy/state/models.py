"""State file data models."""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fargate_deploy.utils.errors import ErrorContext, InvalidTransitionError

STATE_VERSION = "1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_config_hash(properties: Dict[str, Any]) -> str:
    """Compute a deterministic hash for a resource's desired properties."""
    payload = json.dumps(properties, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


class ResourceRecord(BaseModel):
    """A provisioned AWS resource as last applied."""

    id: str = Field(..., description="Logical resource ID")
    kind: str = Field(..., description="AWS resource type (e.g., AWS::EC2::VPC)")
    tier: int = Field(0, description="Dependency tier the resource was applied in")
    physical_id: str = Field(..., description="Physical AWS resource ID/ARN")
    properties: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved properties as last applied"
    )
    config_hash: str = Field(..., description="Hash of the desired properties that produced it")
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Provider attributes (ARNs, subnet ids, DNS names)"
    )
    dependencies: List[str] = Field(
        default_factory=list, description="List of resource IDs this resource depends on"
    )
    tags: Dict[str, str] = Field(default_factory=dict, description="Resource tags")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ReleaseStage(str, Enum):
    """Stages of a DeploymentAttempt."""

    PENDING = "pending"
    IMAGE_PUBLISHED = "image_published"
    TASK_REGISTERED = "task_registered"
    ROLLOUT_IN_PROGRESS = "rollout_in_progress"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({ReleaseStage.HEALTHY, ReleaseStage.ROLLED_BACK})

# Allowed stage transitions. Any stage before HEALTHY may fail;
# ROLLOUT_IN_PROGRESS -> ROLLED_BACK is reserved for operator aborts.
ALLOWED_TRANSITIONS: Dict[ReleaseStage, frozenset] = {
    ReleaseStage.PENDING: frozenset({ReleaseStage.IMAGE_PUBLISHED, ReleaseStage.FAILED}),
    ReleaseStage.IMAGE_PUBLISHED: frozenset({ReleaseStage.TASK_REGISTERED, ReleaseStage.FAILED}),
    ReleaseStage.TASK_REGISTERED: frozenset({ReleaseStage.ROLLOUT_IN_PROGRESS, ReleaseStage.FAILED}),
    ReleaseStage.ROLLOUT_IN_PROGRESS: frozenset(
        {ReleaseStage.HEALTHY, ReleaseStage.FAILED, ReleaseStage.ROLLED_BACK}
    ),
    ReleaseStage.FAILED: frozenset({ReleaseStage.ROLLED_BACK}),
    ReleaseStage.HEALTHY: frozenset(),
    ReleaseStage.ROLLED_BACK: frozenset(),
}


class StageTransition(BaseModel):
    """One entry in an attempt's history."""

    stage: ReleaseStage
    at: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class DeploymentAttempt(BaseModel):
    """One release (or operator rollback) of a service."""

    attempt_id: str
    service: str
    kind: str = Field("release", pattern="^(release|rollback)$")
    image_ref: Optional[str] = None
    image_uri: Optional[str] = Field(None, description="Digest-qualified image URI")
    task_revision: Optional[str] = Field(None, description="Task definition ARN being rolled out")
    previous_revision: Optional[str] = Field(None, description="Task definition ARN serving before")
    stage: ReleaseStage = ReleaseStage.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    reason: Optional[str] = None
    history: List[StageTransition] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        if not self.history:
            self.history.append(StageTransition(stage=self.stage, at=self.started_at))

    @property
    def is_active(self) -> bool:
        """True until the attempt reaches HEALTHY or ROLLED_BACK."""
        return not self.stage.is_terminal

    @property
    def outcome(self) -> str:
        if self.stage == ReleaseStage.HEALTHY:
            return "healthy"
        if self.stage == ReleaseStage.FAILED:
            return "failed"
        if self.stage == ReleaseStage.ROLLED_BACK:
            return "rolled-back"
        return "pending"

    @property
    def last_completed_step(self) -> str:
        """Last stage reached before the current one."""
        if len(self.history) < 2:
            return self.history[-1].stage.value
        return self.history[-2].stage.value

    def can_advance(self, stage: ReleaseStage) -> bool:
        return stage in ALLOWED_TRANSITIONS[self.stage]

    def advance(self, stage: ReleaseStage, reason: Optional[str] = None) -> "DeploymentAttempt":
        """Move the attempt to ``stage``.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if not self.can_advance(stage):
            raise InvalidTransitionError(
                f"Cannot move attempt {self.attempt_id} from {self.stage.value} to {stage.value}",
                context=ErrorContext(attempt_id=self.attempt_id, operation="release"),
            )
        self.stage = stage
        now = utcnow()
        self.history.append(StageTransition(stage=stage, at=now, reason=reason))
        if reason:
            self.reason = reason
        if stage.is_terminal:
            self.finished_at = now
        return self


class State(BaseModel):
    """Represents the complete deployment state of one environment."""

    version: str = Field(STATE_VERSION, description="State file format version")
    environment: str = Field(..., description="Environment name (staging, production)")
    region: str = Field(..., description="AWS region")
    app_name: str = Field(..., description="Application name")
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    attempts: List[DeploymentAttempt] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_resource(self, resource_id: str) -> Optional[ResourceRecord]:
        return self.resources.get(resource_id)

    def get_dependents(self, resource_id: str) -> List[str]:
        """Get recorded resources that depend on the given resource."""
        return sorted(
            record.id for record in self.resources.values() if resource_id in record.dependencies
        )

    def attempts_for(self, service: str) -> List[DeploymentAttempt]:
        return [attempt for attempt in self.attempts if attempt.service == service]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "State":
        """Create State from dictionary."""
        return cls.model_validate(data)

"""Deployment state: resource records and release attempts."""

from fargate_deploy.state.manager import StateLockError, StateManager
from fargate_deploy.state.models import (
    ALLOWED_TRANSITIONS,
    DeploymentAttempt,
    ReleaseStage,
    ResourceRecord,
    StageTransition,
    State,
    compute_config_hash,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "DeploymentAttempt",
    "ReleaseStage",
    "ResourceRecord",
    "StageTransition",
    "State",
    "StateLockError",
    "StateManager",
    "compute_config_hash",
]

"""Orchestrator module for deployment planning and execution."""

from fargate_deploy.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from fargate_deploy.orchestrator.resources import (
    DesiredResource,
    Tier,
    build_desired_resources,
    ref,
    resolve_references,
)
from fargate_deploy.orchestrator.planner import (
    Action,
    DriftReport,
    Operation,
    Plan,
    ResourcePlanner,
)
from fargate_deploy.orchestrator.executor import (
    ApplyEngine,
    ApplyResult,
    OperationResult,
    OperationStatus,
    ProgressCallback,
)
from fargate_deploy.orchestrator.orchestrator import DeploymentOrchestrator

__all__ = [
    # Dependency graph
    'DependencyGraph',
    'DependencyNode',

    # Desired resources
    'DesiredResource',
    'Tier',
    'build_desired_resources',
    'ref',
    'resolve_references',

    # Planning
    'Action',
    'DriftReport',
    'Operation',
    'Plan',
    'ResourcePlanner',

    # Execution
    'ApplyEngine',
    'ApplyResult',
    'OperationResult',
    'OperationStatus',
    'ProgressCallback',

    # Main orchestrator
    'DeploymentOrchestrator',
]

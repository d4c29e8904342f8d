"""Deployment orchestrator for containerised services on AWS ECS/Fargate."""

__version__ = "0.1.0"

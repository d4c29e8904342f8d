"""Command-line interface."""

from fargate_deploy.cli.main import cli, main

__all__ = ['cli', 'main']

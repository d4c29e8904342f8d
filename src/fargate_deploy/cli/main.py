"""Main CLI entry point."""

import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import click
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from fargate_deploy.cli.output import (
    console,
    emit_json,
    err_console,
    print_apply_result,
    print_error,
    print_outputs,
    print_plan,
    print_release_result,
    print_status,
)
from fargate_deploy.config.models import DesiredState, resolve_placeholders
from fargate_deploy.config.parser import DEFAULT_CONFIG_FILE, Config
from fargate_deploy.orchestrator.executor import OperationStatus
from fargate_deploy.orchestrator.orchestrator import DeploymentOrchestrator
from fargate_deploy.provisioners import default_provisioners
from fargate_deploy.release.platform import EcsServicePlatform
from fargate_deploy.state.manager import StateManager
from fargate_deploy.utils.aws_client import AWSClientManager
from fargate_deploy.utils.errors import (
    EXIT_ABORTED,
    EXIT_SUCCESS,
    EXIT_USER_ERROR,
    DeploymentError,
    OperatorAbortError,
    error_handler,
)
from fargate_deploy.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@dataclass
class CliSettings:
    """Global options shared by every command."""
    environment: str
    profile: Optional[str] = None
    region: Optional[str] = None
    app_name: Optional[str] = None
    config_path: Optional[str] = None
    output: str = 'table'


def load_config(config_path: Optional[str]) -> Config:
    """Load the configuration file.

    Without ``--config``, a missing ``fargate.yaml`` falls back to defaults
    plus environment variables. An explicit path must exist.
    """
    if config_path is None and not Path(DEFAULT_CONFIG_FILE).exists():
        logger.info(f"{DEFAULT_CONFIG_FILE} not found, using defaults and environment variables")
        return Config.from_dict({})
    return Config(config_path or DEFAULT_CONFIG_FILE).load()


def build_desired_state(settings: CliSettings, overrides: Optional[Dict[str, Any]] = None) -> DesiredState:
    config = load_config(settings.config_path)
    merged = dict(overrides or {})
    if settings.app_name:
        merged['app_name'] = settings.app_name
    return config.desired_state(settings.environment, region=settings.region, overrides=merged)


def get_state_path(desired: DesiredState) -> Path:
    """Get state file path for environment."""
    return Path.cwd() / '.fargate' / 'state' / f"{desired.app_name}-{desired.environment}.json"


def create_orchestrator(
    settings: CliSettings,
    overrides: Dict[str, Any],
    cancel_event: threading.Event
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies."""
    desired = build_desired_state(settings, overrides)
    clients = AWSClientManager(profile=settings.profile, region=desired.region)
    desired = resolve_placeholders(desired, desired.account_id or clients.get_account_id())

    state_manager = StateManager(
        str(get_state_path(desired)),
        environment=desired.environment,
        region=desired.region,
        app_name=desired.app_name,
    )
    platform = EcsServicePlatform(
        clients,
        cluster=desired.name_prefix,
        service_name=desired.service_id,
        container_name=desired.container_name,
        repository_uri=desired.registry_uri(),
    )
    return DeploymentOrchestrator(
        desired=desired,
        state_manager=state_manager,
        provisioners=default_provisioners(clients),
        platform=platform,
        cancel_event=cancel_event,
    )


@contextmanager
def interruptible(cancel_event: threading.Event) -> Iterator[None]:
    """First Ctrl-C sets ``cancel_event``; a second one interrupts immediately."""
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        err_console.print('[yellow]Interrupt received, stopping after in-flight operations '
                          '(Ctrl-C again to force)[/yellow]')

    # Handlers can only be installed from the main thread
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_command(ctx: click.Context, command: Callable[[DeploymentOrchestrator], int], overrides=None) -> None:
    """Build the orchestrator, run ``command`` and exit with its code.

    Errors are reported once, in the selected output format, and mapped to
    the documented exit codes.
    """
    settings: CliSettings = ctx.obj['settings']
    factory = ctx.obj['orchestrator_factory']
    cancel_event = threading.Event()

    try:
        with interruptible(cancel_event):
            orchestrator = factory(settings, {k: v for k, v in (overrides or {}).items() if v is not None},
                                   cancel_event)
            code = command(orchestrator)
    except DeploymentError as e:
        error_handler.log_error(e)
        print_error(e, settings.output)
        ctx.exit(e.exit_code)
    except KeyboardInterrupt:
        print_error(OperatorAbortError('Interrupted by operator'), settings.output)
        ctx.exit(EXIT_ABORTED)
    ctx.exit(code)


@click.group()
@click.option('--profile', envvar='AWS_PROFILE', help='AWS profile to use')
@click.option('--region', envvar='AWS_REGION', help='AWS region')
@click.option('--env', 'environment', envvar='ENVIRONMENT', default='staging', show_default=True,
              help='Environment name')
@click.option('--app-name', envvar='APP_NAME', help='Application name override')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help=f'Path to configuration file (default {DEFAULT_CONFIG_FILE})')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--output', 'output_format', default='table', type=click.Choice(['table', 'json']),
              help='Output format')
@click.pass_context
def cli(ctx, profile, region, environment, app_name, config_path, log_level, output_format):
    """Provision and release a containerised service on AWS ECS/Fargate."""
    ctx.ensure_object(dict)
    ctx.obj['settings'] = CliSettings(
        environment=environment,
        profile=profile,
        region=region,
        app_name=app_name,
        config_path=config_path,
        output=output_format,
    )
    ctx.obj.setdefault('orchestrator_factory', create_orchestrator)
    ctx.obj.setdefault('clients_factory', AWSClientManager)

    # Setup logging
    setup_logging(log_level)


@cli.command()
@click.option('--refresh/--no-refresh', default=True, help='Check recorded resources still exist in AWS')
@click.option('--desired-count', type=click.IntRange(min=0), help='Override the number of tasks')
@click.option('--image-tag', help='Override the initial image tag')
@click.pass_context
def plan(ctx, refresh, desired_count, image_tag):
    """Show the operations needed to converge the environment."""
    output = ctx.obj['settings'].output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        result = orchestrator.plan(refresh=refresh)
        if output == 'json':
            emit_json(result.to_dict())
        else:
            print_plan(result)
        return EXIT_USER_ERROR if result.drifted else EXIT_SUCCESS

    run_command(ctx, command, {'desired_count': desired_count, 'image_tag': image_tag})


class RichProgressCallback:
    """Progress callback that displays updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self._lock = threading.Lock()
        self.progress.update(task_id, total=total)

    def __call__(self, operation, status: OperationStatus, message: Optional[str]) -> None:
        with self._lock:
            if status == OperationStatus.IN_PROGRESS:
                self.progress.update(self.task_id, description=f"[cyan]{operation.label}[/cyan]")
                return
            self.completed += 1
            mark = "[green]✓[/green]" if status == OperationStatus.SUCCESS else "[red]✗[/red]"
            self.progress.update(self.task_id, completed=self.completed,
                                 description=f"{mark} {operation.label}")


@contextmanager
def progress_display(enabled: bool, total: int) -> Iterator[Optional[RichProgressCallback]]:
    if not enabled or total == 0:
        yield None
        return
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console
    ) as progress:
        task_id = progress.add_task("[cyan]Starting...", total=total)
        yield RichProgressCallback(progress, task_id, total)


@cli.command()
@click.option('--confirm-drift', multiple=True, metavar='RESOURCE_ID',
              help='Recreate a drifted resource (repeatable)')
@click.option('--parallel/--sequential', default=True, help='Run independent operations of a tier in parallel')
@click.option('--desired-count', type=click.IntRange(min=0), help='Override the number of tasks')
@click.option('--image-tag', help='Override the initial image tag')
@click.pass_context
def apply(ctx, confirm_drift, parallel, desired_count, image_tag):
    """Create or update the environment's infrastructure."""
    output = ctx.obj['settings'].output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        planned = orchestrator.plan(refresh=True, confirmed_drift=confirm_drift)
        if output != 'json':
            print_plan(planned)

        with progress_display(output != 'json', len(planned.operations)) as callback:
            result = orchestrator.apply(planned, parallel=parallel, progress_callback=callback)

        outputs = orchestrator.outputs()
        if output == 'json':
            emit_json({
                'plan': planned.to_dict(),
                'result': result.to_dict(),
                'outputs': outputs,
            })
        else:
            print_apply_result(result)
            if result.error is not None:
                print_error(result.error, output)
            if outputs.get('service'):
                print_outputs(outputs)
        return result.exit_code

    run_command(ctx, command, {'desired_count': desired_count, 'image_tag': image_tag})


@cli.command()
@click.argument('image_ref')
@click.pass_context
def release(ctx, image_ref):
    """Roll IMAGE_REF onto the service, rolling back if it is unhealthy.

    IMAGE_REF may be a tag, repo:tag, repo@sha256:<digest> or a full
    registry URI.
    """
    output = ctx.obj['settings'].output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        result = orchestrator.release(image_ref)
        _report_release(result, output)
        return result.exit_code

    run_command(ctx, command)


@cli.command()
@click.pass_context
def rollback(ctx):
    """Revert the service to its previous healthy revision."""
    output = ctx.obj['settings'].output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        result = orchestrator.rollback()
        _report_release(result, output)
        return result.exit_code

    run_command(ctx, command)


def _report_release(result, output: str) -> None:
    if output == 'json':
        emit_json(result.to_dict())
        return
    print_release_result(result)
    if result.error is not None:
        print_error(result.error, output)


@cli.command()
@click.pass_context
def status(ctx):
    """Show recorded resources, release attempts and live service status."""
    output = ctx.obj['settings'].output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        report = orchestrator.status()
        if output == 'json':
            emit_json(report)
        else:
            print_status(report)
        return EXIT_SUCCESS

    run_command(ctx, command)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Delete every recorded resource of the environment."""
    settings: CliSettings = ctx.obj['settings']
    output = settings.output

    def command(orchestrator: DeploymentOrchestrator) -> int:
        planned = orchestrator.plan_destruction()
        if not planned.operations:
            if output == 'json':
                emit_json({'plan': planned.to_dict(), 'result': None})
            else:
                console.print(f"[yellow]No resources recorded for environment:[/yellow] {settings.environment}")
            return EXIT_SUCCESS

        if output != 'json':
            print_plan(planned)
        if not yes and not click.confirm('Destroy these resources?', default=False, err=True):
            raise OperatorAbortError('Destruction cancelled')

        with progress_display(output != 'json', len(planned.operations)) as callback:
            result = orchestrator.destroy(progress_callback=callback)

        if output == 'json':
            emit_json({'plan': planned.to_dict(), 'result': result.to_dict()})
        else:
            print_apply_result(result, title='Destroy')
            if result.error is not None:
                print_error(result.error, output)
        return result.exit_code

    run_command(ctx, command)


@cli.command()
@click.option('--offline', is_flag=True, help='Skip the AWS credential check')
@click.pass_context
def validate(ctx, offline):
    """Check configuration, AWS credentials and account id."""
    settings: CliSettings = ctx.obj['settings']
    checks = []

    def record(name: str, ok: bool, detail: str) -> None:
        checks.append({'check': name, 'ok': ok, 'detail': detail})

    try:
        config = load_config(settings.config_path)
        environments = config.environment_names() or [settings.environment]
        record('configuration', True, f"{config.config_path} ({', '.join(environments)})")
        desired = build_desired_state(settings)
        record('environment', True, f"{desired.environment}: {desired.name_prefix} in {desired.region}")
    except DeploymentError as e:
        record('configuration', False, str(e))
        desired = None

    if desired is not None and not offline:
        try:
            clients = ctx.obj['clients_factory'](profile=settings.profile, region=desired.region)
            credentials = clients.validate_credentials()
            record('credentials', True, credentials.user_arn)
            if desired.account_id and desired.account_id != credentials.account_id:
                record('account', False, f"configured {desired.account_id}, credentials are for "
                                         f"{credentials.account_id}")
            else:
                record('account', True, credentials.account_id)
        except DeploymentError as e:
            record('credentials', False, e.message)

    failed = [c for c in checks if not c['ok']]
    if settings.output == 'json':
        emit_json({'valid': not failed, 'checks': checks})
    else:
        table = Table(show_header=True, header_style='bold', title='Validation')
        table.add_column('Check', style='cyan')
        table.add_column('Result')
        table.add_column('Detail')
        for check in checks:
            table.add_row(check['check'], '[green]✓[/green]' if check['ok'] else '[red]✗[/red]', check['detail'])
        console.print(table)
    ctx.exit(EXIT_USER_ERROR if failed else EXIT_SUCCESS)


def main() -> None:
    cli(obj={})


if __name__ == '__main__':
    sys.exit(main())

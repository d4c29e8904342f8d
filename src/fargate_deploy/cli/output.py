"""Rendering of plans, results and status for the CLI."""

from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from fargate_deploy.orchestrator.executor import ApplyResult
from fargate_deploy.orchestrator.planner import Action, Plan
from fargate_deploy.release.coordinator import ReleaseResult
from fargate_deploy.utils.errors import DeploymentError

console = Console()
err_console = Console(stderr=True)

ACTION_STYLES = {
    Action.CREATE: 'green',
    Action.UPDATE: 'yellow',
    Action.REPLACE: 'magenta',
    Action.DELETE: 'red',
    Action.NO_OP: 'dim',
}

OUTCOME_STYLES = {
    'healthy': 'green',
    'pending': 'cyan',
    'failed': 'red',
    'rolled-back': 'yellow',
}


def emit_json(data: Any) -> None:
    """Write machine-parseable output to stdout."""
    console.print_json(data=data, default=str)


def print_error(error: DeploymentError, output_format: str) -> None:
    if output_format == 'json':
        emit_json({'error': error.to_dict()})
    else:
        err_console.print(Panel(escape(error.to_user_message()), title=type(error).__name__, border_style='red'))


def print_plan(plan: Plan) -> None:
    """Output a plan as a table grouped by tier."""
    if not plan.operations and not plan.drifted:
        console.print(Panel.fit(
            f"[green]No changes.[/green] {len(plan.unchanged)} resources up to date.",
            title=f"Plan - {plan.environment}",
            border_style='green'
        ))
    else:
        table = Table(title=f"Plan - {plan.environment}", show_header=True, header_style='bold')
        table.add_column('Tier', style='cyan')
        table.add_column('Operation')
        table.add_column('Kind', style='dim')
        table.add_column('Reason')

        for tier, waves in plan.tiers():
            for wave in waves:
                for operation in wave:
                    style = ACTION_STYLES[operation.action]
                    table.add_row(
                        tier.label,
                        f"[{style}]{operation.label}[/{style}]",
                        operation.kind,
                        escape(operation.reason or ''),
                    )
        console.print(table)

        summary = plan.get_summary()
        console.print(
            f"\n[bold]{summary['create']}[/bold] to create, [bold]{summary['update']}[/bold] to update, "
            f"[bold]{summary['replace']}[/bold] to replace, {summary['no-op']} unchanged"
            + (f", {summary['delete']} to delete" if summary['delete'] else '')
        )

    for report in plan.drifted:
        blocked = f" (blocks {', '.join(report.blocked)})" if report.blocked else ''
        console.print(
            f"[red]Drift:[/red] {report.resource_id} ({report.physical_id}) no longer exists{blocked}. "
            f"Confirm with [cyan]--confirm-drift {report.resource_id}[/cyan]"
        )
    if plan.orphaned:
        console.print(f"[yellow]Recorded but no longer desired:[/yellow] {', '.join(plan.orphaned)}")


def print_apply_result(result: ApplyResult, title: str = 'Apply') -> None:
    if result.is_success():
        console.print(Panel.fit(
            f"[green]✓ {title} complete[/green]\n\n"
            f"Operations: {len(result.completed)}\n"
            f"Duration: {result.duration:.1f}s",
            title=title,
            border_style='green'
        ))
        return

    lines = [f"[red]✗ {title} stopped[/red]", ""]
    if result.completed:
        lines.append(f"Completed: {', '.join(result.completed)}")
    if result.skipped:
        lines.append(f"Skipped: {', '.join(result.skipped)}")
    lines.append(f"Duration: {result.duration:.1f}s")
    console.print(Panel.fit("\n".join(lines), title=title, border_style='red'))


def print_outputs(outputs: Dict[str, Optional[str]]) -> None:
    """Print endpoints and next steps after an apply."""
    table = Table(show_header=False, box=None)
    table.add_column('Name', style='cyan')
    table.add_column('Value')
    for name in ('url', 'load_balancer_dns', 'cluster', 'service', 'repository', 'log_group'):
        if outputs.get(name):
            table.add_row(name, outputs[name])
    console.print(Panel(table, title='Outputs', border_style='blue'))

    if outputs.get('cluster') and outputs.get('service'):
        console.print("\n[bold]Next steps:[/bold]")
        console.print(f"  Push an image to {outputs['repository']} and run "
                      f"[cyan]fargate-deploy release <tag>[/cyan]")
        console.print("  Scale: [cyan]fargate-deploy apply --desired-count <count>[/cyan]")
        console.print(f"  Logs: [cyan]aws logs tail {outputs['log_group']} --follow[/cyan]")


def print_release_result(result: ReleaseResult) -> None:
    attempt = result.attempt
    style = OUTCOME_STYLES.get(attempt.outcome, 'white')

    table = Table(show_header=True, header_style='bold', title=f"{attempt.kind.capitalize()} {attempt.attempt_id}")
    table.add_column('Stage')
    table.add_column('At', style='dim')
    table.add_column('Detail')
    for transition in attempt.history:
        table.add_row(transition.stage.value, transition.at.strftime('%H:%M:%S'), escape(transition.reason or ''))
    console.print(table)

    console.print(f"\nOutcome: [{style}]{attempt.outcome}[/{style}]")
    if attempt.task_revision:
        console.print(f"Revision: {attempt.task_revision}")
    if attempt.previous_revision:
        console.print(f"Previous revision: {attempt.previous_revision}")


def print_status(report: Dict[str, Any]) -> None:
    converged = '[green]converged[/green]' if report['converged'] else '[yellow]changes pending[/yellow]'
    console.print(Panel.fit(
        f"Environment: {report['environment']} ({report['region']})\n"
        f"Service: {report['service']}\n"
        f"Infrastructure: {converged}",
        title='Status',
        border_style='cyan'
    ))

    if report['resources']:
        table = Table(show_header=True, header_style='bold')
        table.add_column('Resource', style='cyan')
        table.add_column('Tier')
        table.add_column('Physical ID')
        table.add_column('Updated', style='dim')
        for resource in report['resources']:
            table.add_row(resource['id'], resource['tier'], resource['physical_id'], resource['updated_at'])
        console.print(table)
    else:
        console.print('[dim]No resources recorded[/dim]')

    if report['pending_operations']:
        console.print(f"Pending: {', '.join(report['pending_operations'])}")

    for label in ('active_attempt', 'latest_attempt'):
        attempt = report.get(label)
        if attempt:
            style = OUTCOME_STYLES.get(attempt['outcome'], 'white')
            console.print(
                f"{label.replace('_', ' ').capitalize()}: {attempt['kind']} {attempt['attempt_id']} "
                f"[{style}]{attempt['stage']}[/{style}]"
                + (f" - {escape(attempt['reason'])}" if attempt.get('reason') else '')
            )

    live = report.get('live')
    if live and 'error' not in live:
        console.print(
            f"Live: {live['running_count']}/{live['desired_count']} tasks running on {live['task_definition']}"
        )
    elif live:
        console.print(f"[yellow]Live status unavailable:[/yellow] {escape(live['error'])}")

"""Main CLI entry point."""

import json
import signal
import sys
from contextlib import contextmanager
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from stackforge.cli.output import (
    print_apply_result,
    print_outputs,
    print_outputs_json,
    print_plan,
)
from stackforge.config.parser import Config, load_var_file, parse_var_assignments
from stackforge.orchestrator.executor import ExecutionStatus
from stackforge.orchestrator.orchestrator import Orchestrator
from stackforge.provisioners.aws_provider import AwsProvider
from stackforge.state.manager import StateManager
from stackforge.utils.errors import ConfigValidationError, EngineError
from stackforge.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)


@click.group()
@click.option('--config', 'config_path', default='stack.yaml', show_default=True,
              envvar='STACKFORGE_CONFIG', help='Path to configuration file')
@click.option('--state', 'state_path', help='State file (defaults to engine.state_path)')
@click.option('--var', 'var_assignments', multiple=True, metavar='NAME=VALUE',
              help='Set a variable (repeatable)')
@click.option('--var-file', 'var_files', multiple=True, type=click.Path(dir_okay=False),
              help='YAML/JSON file of variable values (repeatable)')
@click.option('--parallelism', type=click.IntRange(1, 64), help='Maximum concurrent provider actions')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region (overrides provider.region)')
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, config_path, state_path, var_assignments, var_files, parallelism, profile, region, log_level):
    """stackforge: plan and apply declarative AWS stacks."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['state_path'] = state_path
    ctx.obj['var_assignments'] = list(var_assignments)
    ctx.obj['var_files'] = list(var_files)
    ctx.obj['parallelism'] = parallelism
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level

    # Setup logging
    setup_logging(log_level)


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(escape(str(e)))
        sys.exit(1)


def collect_variables(ctx) -> Dict[str, Any]:
    """Merge --var-file values, then --var assignments on top."""
    values: Dict[str, Any] = {}
    try:
        for path in ctx.obj['var_files']:
            values.update(load_var_file(path))
        values.update(parse_var_assignments(ctx.obj['var_assignments']))
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    return values


def build_provider(cfg: Config, profile: Optional[str] = None, region: Optional[str] = None) -> AwsProvider:
    """Create the AWS provider for the configured account and region."""
    provider_config = cfg.stack.provider
    return AwsProvider.from_settings(
        region=region or provider_config.region,
        profile=profile or provider_config.profile,
        max_pool_connections=max(10, cfg.stack.engine.parallelism * 2)
    )


def create_orchestrator(ctx, cfg: Config) -> Orchestrator:
    """Create orchestrator with all dependencies."""
    provider_factory = ctx.obj.get('provider_factory', build_provider)
    provider = provider_factory(cfg, ctx.obj.get('profile'), ctx.obj.get('region'))

    state_manager = StateManager(
        ctx.obj.get('state_path') or cfg.stack.engine.state_path,
        lock_timeout=cfg.stack.engine.lock_timeout
    )

    return Orchestrator(
        config=cfg,
        provider=provider,
        state_manager=state_manager,
        variables=collect_variables(ctx),
        parallelism=ctx.obj.get('parallelism'),
        environ=ctx.obj.get('environ'),
        retry_strategy=ctx.obj.get('retry_strategy')
    )


def fail(error: EngineError) -> None:
    """Report an engine error and exit non-zero."""
    console.print(f"[red]{escape(error.to_user_message())}[/red]")
    logger.debug(f"Error details: {error.to_dict()}")
    sys.exit(1)


class RichProgressCallback:
    """Progress callback that displays updates using Rich."""

    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0

    def __call__(self, address: str, status: ExecutionStatus, message: Optional[str]) -> None:
        if status == ExecutionStatus.IN_PROGRESS:
            self.progress.update(self.task_id, description=f"[cyan]{message}:[/cyan] {address}")
        elif status in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED):
            self.completed += 1
            mark = "[green]✓[/green]" if status == ExecutionStatus.SUCCESS else "[red]✗[/red]"
            self.progress.update(self.task_id, completed=self.completed, description=f"{mark} {address}")
            self.progress.console.print(f"{mark} {address}")


@contextmanager
def cancel_on_interrupt(orchestrator: Orchestrator):
    """Turn Ctrl-C into a graceful cancel while the plan is running."""
    def handler(signum, frame):
        console.print("\n[yellow]Interrupt received: finishing in-flight actions...[/yellow]")
        orchestrator.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_plan(orchestrator: Orchestrator, plan, title: str):
    """Execute a plan with a progress display."""
    with cancel_on_interrupt(orchestrator), Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True
    ) as progress:
        task_id = progress.add_task(f"[cyan]Starting {title.lower()}...", total=len(plan.actions) or None)
        callback = RichProgressCallback(progress, task_id)
        if plan.destroy:
            return orchestrator.destroy(plan, progress_callback=callback)
        return orchestrator.apply(plan, progress_callback=callback)


@cli.command()
@click.pass_context
def init(ctx):
    """Validate configuration, check credentials and create the state file."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        state = orchestrator.init()
    except EngineError as e:
        fail(e)

    console.print(Panel.fit(
        f"[green]✓ Initialized[/green]\n\n"
        f"Configuration: {ctx.obj['config_path']}\n"
        f"State: {orchestrator.state_manager.state_path}\n"
        f"Recorded resources: {len(state.resources)}",
        title="stackforge",
        border_style="green"
    ))


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate configuration and the resource graph without touching AWS."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        graph = orchestrator.build()
    except EngineError as e:
        fail(e)

    console.print(
        f"[green]✓ Configuration is valid[/green]: {len(graph)} resources, "
        f"{len(graph.outputs)} outputs"
    )


@cli.command()
@click.pass_context
def plan(ctx):
    """Show what apply would change."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        execution_plan = orchestrator.plan()
    except EngineError as e:
        fail(e)

    print_plan(execution_plan, out=console)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def apply(ctx, yes):
    """Create, update and delete resources to match the configuration."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        execution_plan = orchestrator.plan()
        print_plan(execution_plan, out=console)

        if not execution_plan.is_empty() and not yes:
            if not click.confirm("\nApply these changes?", default=False):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

        result = run_plan(orchestrator, execution_plan, "Apply")
    except EngineError as e:
        fail(e)

    console.print()
    print_apply_result(result, title="Apply", out=console)
    if not result.is_success():
        sys.exit(1)

    outputs = orchestrator.outputs()
    if outputs:
        console.print()
        print_outputs(outputs, sensitive=_sensitive_outputs(cfg), out=console)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Delete every resource recorded in state."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        execution_plan = orchestrator.plan_destroy()
        if execution_plan.is_empty():
            console.print("[yellow]No resources recorded in state; nothing to destroy[/yellow]")
            return

        print_plan(execution_plan, out=console)
        if not yes:
            confirm = click.confirm(
                "\nAre you sure you want to destroy these resources?",
                default=False
            )
            if not confirm:
                console.print("[yellow]Destruction cancelled[/yellow]")
                return

        result = run_plan(orchestrator, execution_plan, "Destroy")
    except EngineError as e:
        fail(e)

    console.print()
    print_apply_result(result, title="Destroy", out=console)
    if not result.is_success():
        console.print("\n[red]Resources may need manual cleanup[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def refresh(ctx):
    """Re-read recorded resources from AWS and record any drift."""
    cfg = load_config(ctx.obj['config_path'])
    orchestrator = create_orchestrator(ctx, cfg)
    try:
        report = orchestrator.refresh()
    except EngineError as e:
        fail(e)

    if not report.has_drift():
        console.print(f"[green]No drift[/green] across {len(report.unchanged)} resources")
        return
    for address in report.updated:
        console.print(f"  [yellow]~[/yellow] {address} updated")
    for address in report.removed:
        console.print(f"  [red]-[/red] {address} no longer exists; removed from state")


@cli.command()
@click.argument('name', required=False)
@click.option('--json', 'as_json', is_flag=True, help='Print as JSON')
@click.pass_context
def output(ctx, name, as_json):
    """Show stack outputs stored by the last apply."""
    cfg = load_config(ctx.obj['config_path'])
    state_manager = StateManager(
        ctx.obj.get('state_path') or cfg.stack.engine.state_path,
        lock_timeout=cfg.stack.engine.lock_timeout
    )
    try:
        outputs = state_manager.read().outputs
    except EngineError as e:
        fail(e)

    if name:
        if name not in outputs:
            console.print(f"[red]Output '{escape(name)}' not found[/red]")
            sys.exit(1)
        value = outputs[name]
        if as_json:
            print_outputs_json(value, out=console)
        else:
            click.echo(value if isinstance(value, str) else json.dumps(value))
        return

    if as_json:
        print_outputs_json(outputs, out=console)
    else:
        print_outputs(outputs, sensitive=_sensitive_outputs(cfg), out=console)


def _sensitive_outputs(cfg: Config) -> set:
    return {name for name, o in cfg.stack.outputs.items() if o.sensitive}


def main():
    cli(obj={})


if __name__ == '__main__':
    main()

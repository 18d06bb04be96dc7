"""Console rendering for plans, apply results and stack outputs."""

import json
from typing import Any, Dict, Optional, Set

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..orchestrator.executor import ApplyResult, ExecutionStatus
from ..orchestrator.planner import Plan
from ..orchestrator.references import UNKNOWN, contains_unknown
from ..provisioners.base import ChangeType

console = Console()

SYMBOLS = {
    ChangeType.CREATE: ("+", "green"),
    ChangeType.UPDATE: ("~", "yellow"),
    ChangeType.REPLACE: ("-/+", "magenta"),
    ChangeType.DELETE: ("-", "red"),
}


def format_value(value: Any) -> str:
    """Render an attribute value the way the plan shows it."""
    if value is UNKNOWN:
        return str(UNKNOWN)
    if contains_unknown(value):
        return json.dumps(value, default=str, sort_keys=True)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, str):
        return json.dumps(value)
    if value is None:
        return "null"
    return json.dumps(value)


def print_plan(plan: Plan, out: Optional[Console] = None) -> None:
    """Print every action with its attribute diffs."""
    out = out or console

    if plan.is_empty():
        out.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        return

    table = Table(show_header=True, header_style="bold", title="Execution Plan")
    table.add_column("", no_wrap=True)
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Action")
    table.add_column("Changes")

    for action in plan.actions:
        symbol, color = SYMBOLS[action.change_type]
        lines = []
        if action.change_type != ChangeType.DELETE:
            for diff in action.diffs:
                if action.change_type == ChangeType.CREATE:
                    line = escape(f"{diff.path} = {format_value(diff.after)}")
                else:
                    line = escape(f"{diff.path}: {format_value(diff.before)} -> {format_value(diff.after)}")
                if diff.forces_replacement:
                    line += " [red](forces replacement)[/red]"
                lines.append(line)
        table.add_row(
            f"[{color}]{symbol}[/{color}]",
            action.address,
            f"[{color}]{action.change_type.value}[/{color}]",
            "\n".join(lines) or (action.reason or ""),
            end_section=True
        )

    out.print(table)

    summary = plan.summary()
    out.print(
        f"\n[bold]Plan:[/bold] {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )


def print_apply_result(result: ApplyResult, title: str = "Apply", out: Optional[Console] = None) -> None:
    """Print the outcome, including the partial-completion report on failure."""
    out = out or console

    lines = [
        f"Completed: {len(result.completed)}",
        f"Failed: {len(result.failed)}",
        f"Skipped: {len(result.skipped)}",
        f"Duration: {result.duration:.2f}s",
    ]

    if result.status == ExecutionStatus.SUCCESS:
        out.print(Panel.fit(
            f"[green]✓ {title} complete[/green]\n\n" + "\n".join(lines),
            title=f"{title} Complete",
            border_style="green"
        ))
        return

    if result.status == ExecutionStatus.CANCELLED:
        header, border = f"[yellow]⚠ {title} cancelled[/yellow]", "yellow"
    else:
        header, border = f"[red]✗ {title} failed[/red]", "red"
    out.print(Panel.fit(header + "\n\n" + "\n".join(lines), title=f"{title} Incomplete", border_style=border))

    if result.completed:
        out.print("\n[bold]Completed:[/bold]")
        for action in result.completed:
            retries = f" ({action.attempts} attempts)" if action.attempts > 1 else ""
            out.print(f"  [green]✓[/green] {action.address} {action.change_type.value}{retries}")

    if result.failed:
        out.print("\n[bold]Failed:[/bold]")
        for action in result.failed:
            out.print(f"  [red]✗[/red] {action.address}: {escape(str(action.error))}", highlight=False)

    if result.skipped:
        out.print("\n[bold]Skipped:[/bold]")
        for address in result.skipped:
            out.print(f"  [dim]-[/dim] {address}")


def print_outputs(outputs: Dict[str, Any], sensitive: Optional[Set[str]] = None, out: Optional[Console] = None) -> None:
    """Output in table format."""
    out = out or console
    sensitive = sensitive or set()

    if not outputs:
        out.print("[dim]No outputs found[/dim]")
        return

    table = Table(show_header=True, header_style="bold", title="Outputs")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")

    for name, value in sorted(outputs.items()):
        shown = "<sensitive>" if name in sensitive else (value if isinstance(value, str) else json.dumps(value))
        table.add_row(name, escape(shown))

    out.print(table)


def print_outputs_json(outputs: Any, out: Optional[Console] = None) -> None:
    """Output in JSON format."""
    (out or console).print_json(data=outputs)

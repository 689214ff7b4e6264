"""Preflight check command."""
import typer
from rich.table import Table

from ..modules.preflight import check_nodes
from .common import console, load_targets


def check(
    ctx: typer.Context,
    check_all: bool = typer.Option(False, "--all", help="Check every node instead of stopping at the first failure"),
):
    """Run preflight health checks on every node."""
    config, nodes = load_targets(ctx)
    with console.status(f"Checking {len(nodes)} node(s)..."):
        errors, warnings = check_nodes(*nodes, config=config, check_all=check_all or None)

    if not errors and not warnings:
        console.print("✅ All checks passed")
        return

    table = Table(title="Preflight results")
    table.add_column("Level", style="bold")
    table.add_column("Message")
    table.add_column("Suggestion")
    for item in errors:
        table.add_row("[red]ERROR[/red]", item.message, item.suggestion)
    for item in warnings:
        table.add_row("[yellow]WARNING[/yellow]", item.message, item.suggestion)
    console.print(table)

    if errors:
        console.print(f"❌ {len(errors)} blocking problem(s) found")
        raise typer.Exit(code=1)
    console.print(f"⚠️  {len(warnings)} warning(s)")

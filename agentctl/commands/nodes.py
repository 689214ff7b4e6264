"""Install, start, stop and clean commands."""
from pathlib import Path
from typing import List

import typer

from ..modules.installer import initialize_nodes, install_package
from ..modules.lifecycle import clean_nodes, start_nodes, stop_nodes
from .common import console, load_targets, run_operation


def install(
    ctx: typer.Context,
    package: Path = typer.Argument(..., exists=True, dir_okay=False, help="Local RPM package"),
):
    """Install a package into every node's (empty) work directory."""
    config, nodes = load_targets(ctx)
    run_operation(f"Installing {package.name} on {len(nodes)} node(s)",
                  install_package, str(package), *nodes, config=config)


def init(
    ctx: typer.Context,
    packages: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Local RPM packages"),
    force_clean: bool = typer.Option(False, "--force-clean", help="Stop and wipe existing work directories"),
):
    """Prepare work directories and install packages on every node."""
    config, nodes = load_targets(ctx)
    run_operation(f"Initializing {len(nodes)} node(s)",
                  initialize_nodes, [str(p) for p in packages], force_clean, *nodes, config=config)


def start(ctx: typer.Context):
    """Start the agent on every node."""
    config, nodes = load_targets(ctx)
    run_operation(f"Starting {len(nodes)} node(s)", start_nodes, *nodes, config=config)


def stop(ctx: typer.Context):
    """Stop the agent daemon on every node."""
    config, nodes = load_targets(ctx)
    run_operation(f"Stopping {len(nodes)} node(s)", stop_nodes, *nodes, config=config)


def clean(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Stop all managed processes and delete every node's work directory."""
    config, nodes = load_targets(ctx)
    if not yes:
        for node in nodes:
            console.print(f"  • {node}")
        typer.confirm("Remove the work directories above?", abort=True)
    run_operation(f"Cleaning {len(nodes)} node(s)", clean_nodes, *nodes, config=config)

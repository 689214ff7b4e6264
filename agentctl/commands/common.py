"""Helpers shared by the CLI commands."""
import logging
from typing import List, Tuple

import typer
from rich.console import Console

from ..config import ProvisionConfig, get_config
from ..modules.errors import ProvisionError
from ..modules.inventory import load_inventory
from ..modules.models import NodeDescriptor

console = Console()
logger = logging.getLogger("agentctl.cli")


def load_targets(ctx: typer.Context) -> Tuple[ProvisionConfig, List[NodeDescriptor]]:
    """Resolve the configuration and inventory chosen by the global options."""
    obj = ctx.obj or {}
    config = obj.get('config') or get_config()
    inventory = obj.get('inventory')
    try:
        nodes = load_inventory(inventory)
    except FileNotFoundError:
        console.print(f"❌ Inventory not found: {inventory}")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(code=1)
    if not nodes:
        console.print(f"❌ No nodes defined in {inventory}")
        raise typer.Exit(code=1)
    return config, nodes


def run_operation(description: str, operation, *args, **kwargs):
    """Run an engine operation, turning provisioning errors into exit code 1."""
    try:
        with console.status(f"{description}..."):
            result = operation(*args, **kwargs)
    except ProvisionError as e:
        logger.debug(f"{description} failed", exc_info=True)
        console.print(f"❌ {description} failed: {e}")
        raise typer.Exit(code=1)
    console.print(f"✅ {description} succeeded")
    return result

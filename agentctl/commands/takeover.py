"""Takeover command."""
import typer

from ..modules.lifecycle import takeover as takeover_nodes
from .common import load_targets, run_operation


def takeover(
    ctx: typer.Context,
    password: str = typer.Option(..., prompt=True, hide_input=True, envvar="AGENTCTL_TAKEOVER_PASSWORD",
                                 help="Root password of the cluster being taken over"),
):
    """Restart every node with the cluster password and wait for the takeover.

    The management API is queried without authentication, so progress is
    judged by every node reporting CLUSTER AGENT; the maintenance task of a
    takeover master cannot be followed.
    """
    config, nodes = load_targets(ctx)
    run_operation(f"Taking over {len(nodes)} node(s)", takeover_nodes, password, *nodes, config=config)

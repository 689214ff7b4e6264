import logging
import sys
from typing import Optional

import typer

from agentctl import __version__
from agentctl.commands import check, nodes, takeover
from agentctl.config import ProvisionConfig, get_config, set_config
from agentctl.logging import configure_logging

app = typer.Typer(help="Provision, start and validate agent nodes over SSH.")

app.command("install")(nodes.install)
app.command("init")(nodes.init)
app.command("start")(nodes.start)
app.command("stop")(nodes.stop)
app.command("clean")(nodes.clean)
app.command("check")(check.check)
app.command("takeover")(takeover.takeover)


def _version(value: bool):
    if value:
        typer.echo(f"agentctl {__version__}")
        raise typer.Exit()


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Configuration file"),
    inventory: str = typer.Option("inventory.yaml", "--inventory", "-i", envvar="AGENTCTL_INVENTORY",
                                  help="YAML file listing the target nodes"),
    version: bool = typer.Option(False, "--version", callback=_version, is_eager=True,
                                 help="Show the version and exit"),
):
    """agentctl - agent node provisioning CLI."""
    try:
        config = ProvisionConfig.load(config_path) if config_path else get_config()
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    set_config(config)
    configure_logging(config.logging, debug)
    if debug:
        logging.getLogger("agentctl").debug("Debug mode enabled")
    ctx.obj = {'config': config, 'inventory': inventory, 'debug': debug}


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        logging.getLogger("agentctl").error(f"Error: {e}")
        sys.exit(1)

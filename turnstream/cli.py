"""Click CLI definitions - main entry point."""

from __future__ import annotations

import logging
import sys

import click

from turnstream.commands.agent_cmd import agent_group
from turnstream.commands.config_cmd import config_group
from turnstream.commands.server_cmd import server_group
from turnstream.commands.session_cmd import run_command, session_group


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug: bool) -> None:
    """turnstream - stream coding agent turns to HTTP clients."""
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


cli.add_command(server_group, "server")
cli.add_command(config_group, "config")
cli.add_command(session_group, "session")
cli.add_command(agent_group, "agent")
cli.add_command(run_command, "run")


if __name__ == "__main__":
    cli()

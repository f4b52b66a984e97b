"""CLI handlers for the global agent settings."""

from __future__ import annotations

import asyncio

import click

from turnstream.commands._helpers import get_base_url
from turnstream.remote_client import RemoteClient


def _run(coro):
    return asyncio.run(coro)


def _echo_meta(meta: dict) -> None:
    click.echo(f"  Provider: {meta['provider']}")
    click.echo(f"  Model: {meta['model'] or '(backend default)'}")
    click.echo(f"  Reasoning effort: {meta['reasoningEffort'] or '(none)'}")


@click.group("agent")
def agent_group():
    """Show or change which backend serves turns."""
    pass


@agent_group.command("show")
def agent_show():
    """Show the active backend settings."""

    async def _show():
        async with RemoteClient(get_base_url()) as client:
            _echo_meta(await client.get_meta())

    _run(_show())


@agent_group.command("set")
@click.option("--provider", "-p", default=None, help="anthropic_sdk or droid_cli")
@click.option("--model", "-m", default=None, help="Model name, empty for the backend default")
@click.option("--effort", "-e", "reasoning_effort", default=None, help="low, medium or high")
def agent_set(provider: str | None, model: str | None, reasoning_effort: str | None):
    """Change backend settings. A backend or model switch resets resumable sessions."""
    changes = {
        key: value
        for key, value in (
            ("provider", provider), ("model", model), ("reasoningEffort", reasoning_effort),
        )
        if value is not None
    }
    if not changes:
        click.echo("Nothing to change.", err=True)
        return

    async def _set():
        async with RemoteClient(get_base_url()) as client:
            meta = await client.update_meta(**changes)
        _echo_meta(meta)
        if meta.get("sessionsReset"):
            click.echo("  Existing sessions will start fresh threads.")

    _run(_set())

"""CLI handlers for server commands: start, stop, status."""

from __future__ import annotations

import asyncio
import os
import signal

import click
import httpx

from turnstream.commands._helpers import get_base_url, get_pid_path


def _run(coro):
    return asyncio.run(coro)


@click.group("server")
def server_group():
    """Manage the HTTP server."""
    pass


@server_group.command("start")
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Port (overrides config)")
def server_start(host: str | None, port: int | None):
    """Start the turnstream HTTP server in the foreground."""
    import uvicorn

    from turnstream.api import create_app
    from turnstream.context import AppContext

    ctx = AppContext()
    pid_path = get_pid_path()

    with open(pid_path, "w") as f:
        f.write(str(os.getpid()))

    bind_host = host or ctx.config.server.host
    bind_port = port or ctx.config.server.port
    click.echo(f"Starting server on http://{bind_host}:{bind_port} (pid={os.getpid()})")
    try:
        uvicorn.run(create_app(ctx), host=bind_host, port=bind_port, log_config=None)
    finally:
        try:
            os.unlink(pid_path)
        except FileNotFoundError:
            pass
        click.echo("Server stopped")


@server_group.command("stop")
def server_stop():
    """Stop the running server."""
    pid_path = get_pid_path()

    try:
        with open(pid_path) as f:
            pid = int(f.read().strip())
    except FileNotFoundError:
        click.echo("Server not running (no PID file found)")
        return
    except ValueError:
        click.echo("Invalid PID file", err=True)
        return

    try:
        os.kill(pid, signal.SIGTERM)
        click.echo(f"Sent SIGTERM to server (pid={pid})")
    except ProcessLookupError:
        click.echo("Server process not found (stale PID file)")
        try:
            os.unlink(pid_path)
        except FileNotFoundError:
            pass


@server_group.command("status")
def server_status():
    """Check if the server is running."""

    async def _status():
        base_url = get_base_url()
        async with httpx.AsyncClient(base_url=base_url, timeout=5.0) as client:
            try:
                response = await client.get("/api/health")
                response.raise_for_status()
            except httpx.HTTPError:
                click.echo(f"Server: not running at {base_url}")
                return
        click.echo(f"Server: running at {base_url}")
        for key, value in response.json().items():
            click.echo(f"  {key}: {value}")

    _run(_status())

"""CLI handlers for session commands."""

from __future__ import annotations

import asyncio
import sys

import click

from turnstream.commands._helpers import get_base_url
from turnstream.remote_client import RemoteClient


def _run(coro):
    return asyncio.run(coro)


@click.group("session")
def session_group():
    """Manage conversation sessions."""
    pass


@session_group.command("new")
@click.option("--title", "-t", default="", help="Initial session title")
def session_new(title: str):
    """Create a new session."""

    async def _new():
        async with RemoteClient(get_base_url()) as client:
            session = await client.create_session(title)
        click.echo(f"Created session: {session['id']}")
        click.echo(f"  Workspace: {session['workspacePath']}")

    _run(_new())


@session_group.command("list")
def session_list():
    """List sessions, most recent first."""

    async def _list():
        async with RemoteClient(get_base_url()) as client:
            sessions = await client.list_sessions()
        if not sessions:
            click.echo("No sessions found.")
            return
        for s in sessions:
            resumable = "resumable" if s.get("threadId") else "fresh"
            click.echo(f"  {s['id']}  {s['title']:<40} [{resumable}] {s['updatedAt']}")

    _run(_list())


@session_group.command("title")
@click.argument("session_id")
def session_title(session_id: str):
    """Regenerate a session's title from its messages."""

    async def _title():
        async with RemoteClient(get_base_url()) as client:
            session = await client.auto_title(session_id)
        click.echo(f"Title: {session['title']}")

    _run(_title())


async def stream_turn_to_terminal(client: RemoteClient, session_id: str, prompt: str) -> bool:
    """Print assistant text as it streams. Returns False if the turn reported an error."""
    shown = ""
    ok = True
    async for event in client.send_message(session_id, prompt):
        kind = event.get("type")
        if kind in ("assistant_message_snapshot", "assistant_message_final"):
            content = event["message"].get("content") or ""
            # Text that rewinds (a replaced item) is not reprinted
            if content.startswith(shown) and len(content) > len(shown):
                click.echo(content[len(shown):], nl=False)
                shown = content
        if kind == "assistant_message_final":
            click.echo()
            usage = event.get("usage")
            if usage:
                click.echo(
                    f"[tokens in={usage['input_tokens']} cached={usage['cached_input_tokens']} "
                    f"out={usage['output_tokens']}]",
                    err=True,
                )
        elif kind == "error":
            ok = False
            click.echo(f"Error: {event.get('message')}", err=True)
    return ok


@click.command("run")
@click.argument("prompt")
@click.option("--session", "-s", "session_id", default="", help="Continue an existing session")
def run_command(prompt: str, session_id: str):
    """Send PROMPT to the agent and stream the reply."""

    async def _send() -> bool:
        async with RemoteClient(get_base_url()) as client:
            target = session_id
            if not target:
                target = (await client.create_session())["id"]
                click.echo(f"Session: {target}", err=True)
            return await stream_turn_to_terminal(client, target, prompt)

    try:
        ok = _run(_send())
    except RuntimeError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    if not ok:
        sys.exit(1)

"""CLI handlers for config commands."""

from __future__ import annotations

import json
import tomllib

import click
import tomli_w

from turnstream.config import DEFAULT_CONFIG_PATH, init_config, load_config


@click.group("config")
def config_group():
    """Manage configuration."""
    pass


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def config_init(force: bool):
    """Create default configuration file."""
    if DEFAULT_CONFIG_PATH.exists() and not force:
        click.echo(f"Config already exists at {DEFAULT_CONFIG_PATH} (use --force to overwrite)")
        return
    path = init_config()
    click.echo(f"Configuration created at: {path}")


@config_group.command("show")
def config_show():
    """Show current configuration."""
    config = load_config()
    click.echo(f"Config file: {config.config_path}")
    click.echo(f"  Workspace root: {config.resolved_workspace_root}")
    click.echo(
        f"  Agent: {config.agent.provider} "
        f"model={config.agent.model or '-'} effort={config.agent.reasoning_effort or '-'}"
    )
    click.echo(f"  MongoDB: {config.mongodb.uri}/{config.mongodb.database}")
    click.echo(f"  Server: {config.server.base_url} (pid file {config.server.resolved_pid_file})")
    click.echo(
        f"  Stream: event_timeout={config.stream.event_timeout:g}s "
        f"post_response={config.stream.resolved_post_response_timeout:g}s "
        f"debug_log={'on' if config.stream.debug_log else 'off'}"
    )

    click.echo("\n  Backends:")
    sdk = config.anthropic_sdk
    has_key = "configured" if sdk.api_key else "not set"
    click.echo(f"    anthropic_sdk: model={sdk.default_model}, key={has_key}")
    click.echo(f"    droid_cli: binary={config.droid_cli.binary_path or 'droid (PATH)'}")


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Modifies the TOML config file. Key uses dot notation, e.g.:
    agent.provider, mongodb.uri, stream.event_timeout
    """
    path = DEFAULT_CONFIG_PATH
    if not path.exists():
        click.echo("No config file found. Run 'turnstream config init' first.", err=True)
        return

    with open(path, "rb") as f:
        data = tomllib.load(f)

    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})

    final_key = parts[-1]
    if value.lower() in ("true", "false"):
        target[final_key] = value.lower() == "true"
    elif value.isdigit():
        target[final_key] = int(value)
    elif value.startswith("[") or value.startswith("{"):
        try:
            target[final_key] = json.loads(value)
        except json.JSONDecodeError:
            target[final_key] = value
    else:
        try:
            target[final_key] = float(value)
        except ValueError:
            target[final_key] = value

    with open(path, "wb") as f:
        tomli_w.dump(data, f)

    click.echo(f"Set {key} = {value}")

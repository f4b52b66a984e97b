"""CLI helpers for talking to the HTTP server."""

from __future__ import annotations

from turnstream.config import load_config


def get_base_url() -> str:
    """Return the server base URL from config."""
    return load_config().server.base_url


def get_pid_path() -> str:
    """Return the PID file path from config or default."""
    return load_config().server.resolved_pid_file

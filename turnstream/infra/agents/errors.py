"""Agent backend exceptions."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for agent backend failures."""


class AgentUnavailable(AgentError):
    """The backend cannot be reached (SDK not configured, no credentials)."""


class AgentExecutionFailed(AgentError):
    """A turn ran but ended in failure."""


class SpawnError(AgentError):
    """The agent executable is missing or cannot be started."""


class ProtocolError(AgentError):
    """The agent reported an explicit error record."""


class ProcessExitError(AgentError):
    """The agent process exited nonzero or was killed by a signal."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class StallTimeout(AgentError):
    """No event arrived within the liveness window before any response."""

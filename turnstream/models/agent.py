"""Agent backend domain models."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum

from turnstream.models.usage import Usage


class AgentBackendType(str, Enum):
    ANTHROPIC_SDK = "anthropic_sdk"
    DROID_CLI = "droid_cli"


@dataclass(frozen=True)
class CommandSpec:
    """Specification for launching an agent subprocess."""

    program: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None

    @property
    def full_command(self) -> str:
        """Return the full command string for shell execution."""
        parts = [self.program, *self.args]
        return " ".join(shlex.quote(p) for p in parts)


@dataclass(frozen=True)
class RunOptions:
    """Per-call options for a turn.

    ``env`` holds environment-variable overrides that apply to this call
    only. Backends pass them explicitly (child env, call-scoped client)
    and never write them into ``os.environ``.
    """

    env: dict[str, str] | None = None


@dataclass(frozen=True)
class AgentMeta:
    """The globally configured backend, model and reasoning effort."""

    provider: AgentBackendType = AgentBackendType.DROID_CLI
    model: str = ""
    reasoning_effort: str = ""

    def to_dict(self) -> dict:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "reasoningEffort": self.reasoning_effort,
        }


@dataclass(frozen=True)
class TurnResult:
    """Outcome of a non-streamed turn."""

    items: list[dict] = field(default_factory=list)
    final_response: str = ""
    usage: Usage | None = None
    thread_id: str | None = None


@dataclass
class ExecutionSummary:
    """Terminal record of one turn, produced once after its event stream ends."""

    final_text: str = ""
    items: list[dict] = field(default_factory=list)
    usage: Usage | None = None
    session_id: str | None = None
    error: Exception | None = None

"""Agent backend protocol definition."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from turnstream.models.agent import AgentBackendType, RunOptions, TurnResult
from turnstream.models.event import TurnEvent
from turnstream.models.session import SessionRecord

TITLE_INSTRUCTIONS = (
    "You generate short, descriptive titles for conversations.",
    "Respond with a concise title (3-5 words), no quotation marks, no extra commentary.",
)


def build_title_prompt(conversation_json: str) -> str:
    """Prompt used for throwaway title-suggestion turns."""
    return "\n\n".join([*TITLE_INSTRUCTIONS, "Conversation JSON:", conversation_json])


def clean_title(text: str) -> str | None:
    """First non-empty line of a model reply, without surrounding quotes."""
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    cleaned = first_line.strip().strip("'\"").strip()
    return cleaned or None


@runtime_checkable
class EventStream(Protocol):
    """Pull-based stream of turn events.

    ``aclose()`` is the cancellation primitive: it stops the producer and
    releases any pending waiters. At most one consumer may await
    ``__anext__`` at a time.
    """

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        ...

    async def __anext__(self) -> TurnEvent:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class AgentBackend(Protocol):
    """Protocol every coding-agent backend implements.

    Failures after a stream has started are delivered as ``turn.failed`` /
    ``error`` events; only setup failures raise from ``run_turn_streamed``.
    """

    backend_type: AgentBackendType

    async def run_turn(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> TurnResult:
        """Run a turn to completion.

        Raises AgentUnavailable or AgentExecutionFailed.
        """
        ...

    async def run_turn_streamed(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> EventStream:
        """Start a turn and return its event stream."""
        ...

    def forget_session(self, session_id: str) -> None:
        """Drop any cached resumable handle for a session."""
        ...

    def clear_sessions(self) -> None:
        """Drop every cached resumable handle."""
        ...

    async def suggest_title(
        self, session: SessionRecord, conversation_json: str
    ) -> str | None:
        """Best-effort title suggestion. Never raises."""
        ...

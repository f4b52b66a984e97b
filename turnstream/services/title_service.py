"""Session titles: ask the active backend, fall back to a heuristic."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable

from turnstream.infra.agents.registry import AgentRegistry
from turnstream.infra.db.messages import MessageRepo
from turnstream.infra.db.sessions import SessionRepo
from turnstream.models.agent import AgentMeta
from turnstream.models.message import MessageRecord
from turnstream.models.session import DEFAULT_SESSION_TITLE, SessionRecord

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 80
MAX_TITLE_WORDS = 12

_LEADING_MARKUP = re.compile(r"^[\s>*#\-\d.()]+")
_INLINE_MARKUP = re.compile(r"[`*_~]")
_LINK = re.compile(r"\[(.*?)\]\((.*?)\)")
_USER_PREFIX = re.compile(r"^user:\s*", re.IGNORECASE)


def _clamp_length(value: str) -> str:
    if len(value) <= MAX_TITLE_LENGTH:
        return value
    return f"{value[:MAX_TITLE_LENGTH].rstrip()}…"


def _clamp_words(value: str) -> str:
    words = value.split()
    if len(words) <= MAX_TITLE_WORDS:
        return value
    return " ".join(words[:MAX_TITLE_WORDS]) + "…"


def _sanitize(line: str) -> str:
    line = _LEADING_MARKUP.sub("", line)
    line = _INLINE_MARKUP.sub("", line)
    line = _LINK.sub(r"\1", line)
    return " ".join(line.split())


def clamp_title(value: str, fallback: str) -> str:
    trimmed = value.strip()
    return _clamp_length(trimmed) if trimmed else fallback


def transcript_lines(messages: list[MessageRecord]) -> list[str]:
    """Flatten messages into ``role: text`` lines, including item text and attachment names."""
    lines: list[str] = []
    for message in messages:
        role = message.role.value
        if message.content.strip():
            lines.append(f"{role}: {message.content.strip()}")
        for item in message.items:
            text = item.get("text") if isinstance(item.get("text"), str) else item.get("summary")
            if isinstance(text, str) and text.strip():
                lines.append(f"{role} {item.get('type') or 'item'}: {text.strip()}")
        names = [a.filename for a in message.attachments if a.filename]
        if names:
            lines.append(f"{role} attachments: {', '.join(names)}")
    return lines


def heuristic_title(messages: list[MessageRecord], fallback: str) -> str:
    """Title-cased last user line, clamped to a dozen words."""
    lines = [line for line in (_sanitize(raw) for raw in transcript_lines(messages)) if line]
    if not lines:
        return fallback

    user_lines = [line for line in lines if _USER_PREFIX.match(line)]
    candidate = _sanitize(_USER_PREFIX.sub("", user_lines[-1])) if user_lines else lines[-1]
    normalized = " ".join(_clamp_length(_clamp_words(candidate)).split())
    if not normalized:
        return fallback
    return " ".join(word[:1].upper() + word[1:] for word in normalized.split(" "))


class TitleService:
    def __init__(
        self,
        session_repo: SessionRepo,
        message_repo: MessageRepo,
        agents: AgentRegistry,
        meta_provider: Callable[[], AgentMeta],
    ) -> None:
        self._sessions = session_repo
        self._messages = message_repo
        self._agents = agents
        self._meta_provider = meta_provider

    async def generate_title(self, session: SessionRecord, messages: list[MessageRecord]) -> str:
        """Ask the active backend for a title; use the heuristic when it has none."""
        fallback = session.title or DEFAULT_SESSION_TITLE
        if messages:
            transcript = json.dumps([m.to_response() for m in messages], indent=2, default=str)
            backend = self._agents.get(self._meta_provider().provider)
            suggestion = await backend.suggest_title(session, transcript)
            if suggestion and suggestion.strip():
                return clamp_title(suggestion, fallback)
            logger.debug("No title suggestion for session %s, using heuristic", session.id)

        return clamp_title(heuristic_title(messages, fallback), fallback)

    async def update_title_from_messages(self, session_id: str) -> SessionRecord | None:
        """Regenerate and store a session's title. Locked titles are left alone.

        Returns the (possibly unchanged) session, or None when it does not exist.
        """
        session = await self._sessions.find_by_id(session_id)
        if session is None:
            return None
        if session.title_locked:
            return session

        messages = await self._messages.list_by_session(session_id)
        title = await self.generate_title(session, messages)
        if title == session.title:
            return session

        logger.info("Retitled session %s: %r", session_id, title)
        return await self._sessions.update_title(session_id, title) or session

"""Per-backend map from conversation session id to a resumable handle."""

from __future__ import annotations

import logging
from typing import Generic, TypeVar

from turnstream.models.agent import AgentBackendType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionCache(Generic[T]):
    """Resumable handles for one backend type.

    Each backend owns its own instance, so a handle is never offered to a
    different backend. Mutated only from the event loop thread.
    """

    def __init__(self, backend_type: AgentBackendType) -> None:
        self.backend_type = backend_type
        self._entries: dict[str, T] = {}

    def get(self, session_id: str) -> T | None:
        return self._entries.get(session_id)

    def set(self, session_id: str, handle: T) -> None:
        self._entries[session_id] = handle

    def forget(self, session_id: str) -> None:
        """Drop one entry. Missing entries are ignored."""
        if self._entries.pop(session_id, None) is not None:
            logger.debug("Forgot %s session for %s", self.backend_type.value, session_id)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.info("Cleared %d cached %s sessions", count, self.backend_type.value)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

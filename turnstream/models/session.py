"""Conversation session domain model."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

DEFAULT_SESSION_TITLE = "New chat"


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


@dataclass(frozen=True)
class SessionRecord:
    """A conversation with one coding agent, bound to a workspace directory."""

    user_id: str
    title: str = DEFAULT_SESSION_TITLE
    title_locked: bool = False
    thread_id: str | None = None
    workspace_path: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("Session must have a user_id")

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_SESSION_TITLE

    def with_thread_id(self, thread_id: str | None) -> SessionRecord:
        """Return a copy with updated thread id and timestamp."""
        return replace(self, thread_id=thread_id, updated_at=datetime.now(timezone.utc))

    def with_title(self, title: str) -> SessionRecord:
        """Return a copy with updated title and timestamp."""
        return replace(self, title=title, updated_at=datetime.now(timezone.utc))

    def with_workspace_path(self, path: str) -> SessionRecord:
        return replace(self, workspace_path=path)

    def to_doc(self) -> dict:
        doc: dict = {
            "user_id": self.user_id,
            "title": self.title,
            "title_locked": self.title_locked,
            "thread_id": self.thread_id,
            "workspace_path": self.workspace_path,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> SessionRecord:
        return cls(
            id=str(doc["_id"]),
            user_id=doc["user_id"],
            title=doc.get("title", DEFAULT_SESSION_TITLE),
            title_locked=doc.get("title_locked", False),
            thread_id=doc.get("thread_id"),
            workspace_path=doc.get("workspace_path", ""),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
            updated_at=doc.get("updated_at", datetime.now(timezone.utc)),
        )

    def to_response(self) -> dict:
        """Serialize for HTTP clients."""
        return {
            "id": self.id,
            "title": self.title,
            "threadId": self.thread_id,
            "createdAt": _dt_to_str(self.created_at),
            "updatedAt": _dt_to_str(self.updated_at),
            "workspacePath": self.workspace_path,
            "titleLocked": self.title_locked,
        }

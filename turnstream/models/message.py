"""Conversation message domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class AttachmentInput:
    """An uploaded attachment as received from the client (base64 payload)."""

    filename: str
    mime_type: str
    size: int
    base64: str


@dataclass(frozen=True)
class AttachmentRecord:
    """An attachment saved inside the session workspace."""

    filename: str
    mime_type: str
    size: int
    relative_path: str
    id: str = ""

    def to_doc(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "size": self.size,
            "relative_path": self.relative_path,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> AttachmentRecord:
        return cls(
            id=doc.get("id", ""),
            filename=doc["filename"],
            mime_type=doc.get("mime_type", ""),
            size=doc.get("size", 0),
            relative_path=doc.get("relative_path", ""),
        )


@dataclass(frozen=True)
class Responder:
    """Which backend/model produced an assistant message."""

    provider: str | None = None
    model: str | None = None
    reasoning_effort: str | None = None

    def to_doc(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "reasoning_effort": self.reasoning_effort,
        }

    @classmethod
    def from_doc(cls, doc: dict | None) -> Responder:
        if not doc:
            return cls()
        return cls(
            provider=doc.get("provider"),
            model=doc.get("model"),
            reasoning_effort=doc.get("reasoning_effort"),
        )


@dataclass(frozen=True)
class MessageRecord:
    """A persisted user or assistant message."""

    session_id: str
    role: MessageRole
    content: str = ""
    attachments: tuple[AttachmentRecord, ...] = ()
    items: tuple[dict, ...] = ()
    responder: Responder = field(default_factory=Responder)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str | None = None

    def to_doc(self) -> dict:
        doc: dict = {
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "attachments": [a.to_doc() for a in self.attachments],
            "items": list(self.items),
            "responder": self.responder.to_doc(),
            "created_at": self.created_at,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> MessageRecord:
        return cls(
            id=str(doc["_id"]),
            session_id=doc["session_id"],
            role=MessageRole(doc["role"]),
            content=doc.get("content", ""),
            attachments=tuple(AttachmentRecord.from_doc(a) for a in doc.get("attachments", [])),
            items=tuple(doc.get("items", [])),
            responder=Responder.from_doc(doc.get("responder")),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
        )

    def to_response(self) -> dict:
        """Serialize for HTTP clients."""
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
            "attachments": [
                {
                    "id": a.id,
                    "filename": a.filename,
                    "mimeType": a.mime_type,
                    "size": a.size,
                    "url": f"/api/sessions/{self.session_id}/attachments/{a.id}",
                }
                for a in self.attachments
            ],
            "items": list(self.items),
            "responderProvider": self.responder.provider,
            "responderModel": self.responder.model,
            "responderReasoningEffort": self.responder.reasoning_effort,
        }

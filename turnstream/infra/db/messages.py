"""Message repository - MongoDB CRUD for conversation messages."""

from __future__ import annotations

import logging
from dataclasses import replace

from turnstream.models.message import AttachmentRecord, MessageRecord, MessageRole, Responder

logger = logging.getLogger(__name__)


class MessageRepo:
    """Append-only message log per session."""

    COLLECTION = "messages"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def add(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        attachments: list[AttachmentRecord] | None = None,
        items: list[dict] | None = None,
        responder: Responder | None = None,
    ) -> MessageRecord:
        """Append a message. Returns it with its assigned id."""
        message = MessageRecord(
            session_id=session_id,
            role=role,
            content=content,
            attachments=tuple(attachments or ()),
            items=tuple(items or ()),
            responder=responder or Responder(),
        )
        doc = message.to_doc()
        doc.pop("_id", None)
        result = await self._col.insert_one(doc)
        logger.debug("Added %s message to session %s", role.value, session_id)
        return replace(message, id=str(result.inserted_id))

    async def list_by_session(self, session_id: str) -> list[MessageRecord]:
        """All messages of a session in chronological order."""
        cursor = self._col.find({"session_id": session_id}).sort("created_at", 1)
        return [MessageRecord.from_doc(doc) async for doc in cursor]

    async def find_attachment(self, session_id: str, attachment_id: str) -> AttachmentRecord | None:
        """Look up one stored attachment of a session by its id."""
        doc = await self._col.find_one(
            {"session_id": session_id, "attachments.id": attachment_id},
            {"attachments": 1},
        )
        if not doc:
            return None
        for raw in doc.get("attachments", []):
            if raw.get("id") == attachment_id:
                return AttachmentRecord.from_doc(raw)
        return None

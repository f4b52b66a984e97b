"""Session repository - MongoDB CRUD for conversation sessions."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from turnstream.models.session import SessionRecord

logger = logging.getLogger(__name__)


class SessionRepo:
    """CRUD operations for sessions in MongoDB."""

    COLLECTION = "sessions"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]

    async def insert(self, session: SessionRecord) -> SessionRecord:
        """Insert a new session. Returns session with assigned id."""
        doc = session.to_doc()
        doc.pop("_id", None)
        result = await self._col.insert_one(doc)
        return replace(session, id=str(result.inserted_id))

    async def find_by_id(self, session_id: str) -> SessionRecord | None:
        """Find a session by ID."""
        try:
            doc = await self._col.find_one({"_id": ObjectId(session_id)})
            return SessionRecord.from_doc(doc) if doc else None
        except InvalidId:
            logger.debug("Invalid ObjectId: %s", session_id)
            return None

    async def list_by_user(self, user_id: str) -> list[SessionRecord]:
        """List a user's sessions, most recently updated first."""
        cursor = self._col.find({"user_id": user_id}).sort("updated_at", -1)
        return [SessionRecord.from_doc(doc) async for doc in cursor]

    async def _update(self, session_id: str, updates: dict) -> SessionRecord | None:
        try:
            updates = {**updates, "updated_at": datetime.now(timezone.utc)}
            result = await self._col.find_one_and_update(
                {"_id": ObjectId(session_id)},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
            return SessionRecord.from_doc(result) if result else None
        except InvalidId:
            logger.debug("Invalid ObjectId: %s", session_id)
            return None

    async def update_thread_id(
        self, session_id: str, thread_id: str | None
    ) -> SessionRecord | None:
        """Store (or clear) the backend's resumable session id."""
        return await self._update(session_id, {"thread_id": thread_id})

    async def update_title(self, session_id: str, title: str) -> SessionRecord | None:
        return await self._update(session_id, {"title": title})

    async def update_title_locked(self, session_id: str, locked: bool) -> SessionRecord | None:
        return await self._update(session_id, {"title_locked": locked})

    async def update_workspace_path(self, session_id: str, path: str) -> SessionRecord | None:
        return await self._update(session_id, {"workspace_path": path})

    async def touch(self, session_id: str) -> SessionRecord | None:
        """Refresh ``updated_at``."""
        return await self._update(session_id, {})

    async def reset_all_thread_ids(self) -> int:
        """Clear every stored thread id. Returns the number of sessions changed."""
        result = await self._col.update_many(
            {"thread_id": {"$ne": None}},
            {"$set": {"thread_id": None}},
        )
        if result.modified_count:
            logger.info("Reset thread ids on %d sessions", result.modified_count)
        return result.modified_count

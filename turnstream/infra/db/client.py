"""Motor async MongoDB wrapper."""

from __future__ import annotations

import logging

import motor.motor_asyncio

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 5000


class MongoClient:
    """Owns the Motor client for the conversation store.

    Documents come back timezone-aware so ``created_at``/``updated_at``
    round-trip as UTC datetimes.
    """

    def __init__(self, uri: str = "mongodb://localhost:27017", database: str = "turnstream"):
        self._client = motor.motor_asyncio.AsyncIOMotorClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS,
        )
        self._db = self._client[database]
        logger.info("MongoDB client created for database %s", database)

    @property
    def db(self) -> motor.motor_asyncio.AsyncIOMotorDatabase:
        return self._db

    def close(self) -> None:
        self._client.close()
        logger.info("MongoDB client closed")

    async def ping(self) -> bool:
        """Health check used by the HTTP surface."""
        try:
            await self._client.admin.command("ping")
            return True
        except Exception:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False

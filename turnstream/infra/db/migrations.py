"""MongoDB index creation."""

from __future__ import annotations

import logging

import pymongo

logger = logging.getLogger(__name__)


async def run_migrations(db) -> None:
    """Create indexes on startup."""
    logger.info("Running MongoDB migrations...")

    # Sessions indexes
    sessions = db["sessions"]
    await sessions.create_index(
        [("user_id", pymongo.ASCENDING), ("updated_at", pymongo.DESCENDING)]
    )
    await sessions.create_index([("thread_id", pymongo.ASCENDING)], sparse=True)

    # Messages indexes
    messages = db["messages"]
    await messages.create_index(
        [("session_id", pymongo.ASCENDING), ("created_at", pymongo.ASCENDING)]
    )

    logger.info("MongoDB migrations complete")

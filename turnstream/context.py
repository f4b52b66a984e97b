"""AppContext: wires DB, config, agent backends and services together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from turnstream.config import AppConfig, load_config
from turnstream.infra.db.client import MongoClient

if TYPE_CHECKING:
    from pathlib import Path

    from turnstream.infra.agents.registry import AgentRegistry
    from turnstream.infra.db.messages import MessageRepo
    from turnstream.infra.db.sessions import SessionRepo
    from turnstream.services.settings_service import SettingsService
    from turnstream.services.title_service import TitleService
    from turnstream.services.turn_service import TurnService

logger = logging.getLogger(__name__)


class AppContext:
    """Central wiring for all application dependencies.

    Lazily initializes services on first access. Call `initialize()` to
    set up the database connection and run migrations.
    """

    def __init__(self, config: AppConfig | None = None, config_path: Path | None = None) -> None:
        self.config = config or load_config(config_path)
        self._mongo: MongoClient | None = None
        self._session_repo: SessionRepo | None = None
        self._message_repo: MessageRepo | None = None
        self._agent_registry: AgentRegistry | None = None
        self._settings_service: SettingsService | None = None
        self._turn_service: TurnService | None = None
        self._title_service: TitleService | None = None

    async def initialize(self) -> None:
        """Initialize the database connection and run migrations."""
        from turnstream.infra.db.migrations import run_migrations

        self._mongo = MongoClient(
            uri=self.config.mongodb.uri,
            database=self.config.mongodb.database,
        )
        await run_migrations(self._mongo.db)
        self.config.resolved_workspace_root.mkdir(parents=True, exist_ok=True)
        logger.info("AppContext initialized")

    async def close(self) -> None:
        """Let orphaned turns finish, then close connections."""
        if self._turn_service is not None:
            await self._turn_service.wait_idle()
        if self._mongo:
            self._mongo.close()
        logger.info("AppContext closed")

    @property
    def mongo(self) -> MongoClient:
        if self._mongo is None:
            raise RuntimeError("AppContext not initialized. Call initialize() first.")
        return self._mongo

    @property
    def session_repo(self) -> SessionRepo:
        if self._session_repo is None:
            from turnstream.infra.db.sessions import SessionRepo

            self._session_repo = SessionRepo(self.mongo.db)
        return self._session_repo

    @property
    def message_repo(self) -> MessageRepo:
        if self._message_repo is None:
            from turnstream.infra.db.messages import MessageRepo

            self._message_repo = MessageRepo(self.mongo.db)
        return self._message_repo

    @property
    def agent_registry(self) -> AgentRegistry:
        if self._agent_registry is None:
            from turnstream.infra.agents.registry import AgentRegistry

            self._agent_registry = AgentRegistry(
                config=self.config,
                meta_provider=lambda: self.settings_service.current,
            )
        return self._agent_registry

    @property
    def settings_service(self) -> SettingsService:
        if self._settings_service is None:
            from turnstream.services.settings_service import SettingsService

            self._settings_service = SettingsService(
                config=self.config,
                session_repo=self.session_repo,
                agents=self.agent_registry,
            )
        return self._settings_service

    @property
    def turn_service(self) -> TurnService:
        if self._turn_service is None:
            from turnstream.services.turn_service import TurnService

            self._turn_service = TurnService(
                session_repo=self.session_repo,
                message_repo=self.message_repo,
                agents=self.agent_registry,
                meta_provider=lambda: self.settings_service.current,
                workspace_root=self.config.resolved_workspace_root,
                stream_config=self.config.stream,
            )
        return self._turn_service

    @property
    def title_service(self) -> TitleService:
        if self._title_service is None:
            from turnstream.services.title_service import TitleService

            self._title_service = TitleService(
                session_repo=self.session_repo,
                message_repo=self.message_repo,
                agents=self.agent_registry,
                meta_provider=lambda: self.settings_service.current,
            )
        return self._title_service

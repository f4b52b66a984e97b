"""Global agent settings: which backend, model and reasoning effort serve turns."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from turnstream.config import AppConfig
from turnstream.infra.agents.registry import AgentRegistry
from turnstream.infra.db.sessions import SessionRepo
from turnstream.models.agent import AgentBackendType, AgentMeta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetaUpdate:
    meta: AgentMeta
    provider_changed: bool = False
    model_changed: bool = False

    @property
    def invalidates_sessions(self) -> bool:
        return self.provider_changed or self.model_changed


class SettingsService:
    """Holds the live AgentMeta, seeded from config."""

    def __init__(
        self,
        config: AppConfig,
        session_repo: SessionRepo,
        agents: AgentRegistry,
    ) -> None:
        self._session_repo = session_repo
        self._agents = agents
        self._meta = AgentMeta(
            provider=AgentBackendType(config.agent.provider),
            model=config.agent.model,
            reasoning_effort=config.agent.reasoning_effort,
        )

    @property
    def current(self) -> AgentMeta:
        return self._meta

    async def update(
        self,
        provider: str | None = None,
        model: str | None = None,
        reasoning_effort: str | None = None,
    ) -> MetaUpdate:
        """Change settings.

        A backend or model switch invalidates every resumable handle: the
        in-process caches are cleared and stored thread ids are reset.
        Raises ValueError for an unknown backend name.
        """
        previous = self._meta
        updated = previous
        if provider is not None:
            try:
                updated = replace(updated, provider=AgentBackendType(provider))
            except ValueError:
                raise ValueError(f"Unknown agent backend: {provider}") from None
        if model is not None:
            updated = replace(updated, model=model.strip())
        if reasoning_effort is not None:
            updated = replace(updated, reasoning_effort=reasoning_effort.strip())

        self._meta = updated
        result = MetaUpdate(
            meta=updated,
            provider_changed=updated.provider != previous.provider,
            model_changed=updated.model != previous.model,
        )

        if result.invalidates_sessions:
            logger.info(
                "Agent settings changed (%s/%s -> %s/%s), resetting sessions",
                previous.provider.value, previous.model or "-",
                updated.provider.value, updated.model or "-",
            )
            self._agents.clear_all()
            await self._session_repo.reset_all_thread_ids()

        return result

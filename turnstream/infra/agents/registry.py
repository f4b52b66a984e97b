"""Agent backend registry: one long-lived adapter per backend type."""

from __future__ import annotations

import logging
from collections.abc import Callable

from turnstream.config import AppConfig
from turnstream.infra.agents.anthropic_sdk import AnthropicAgent
from turnstream.infra.agents.base import AgentBackend
from turnstream.infra.agents.droid_cli import DroidCliAgent
from turnstream.models.agent import AgentBackendType, AgentMeta

logger = logging.getLogger(__name__)


def _build_backend(
    backend_type: AgentBackendType,
    config: AppConfig,
    meta_provider: Callable[[], AgentMeta],
) -> AgentBackend:
    """Build a single backend instance."""
    if backend_type == AgentBackendType.ANTHROPIC_SDK:
        return AnthropicAgent(
            config=config.anthropic_sdk,
            workspace_root=config.resolved_workspace_root,
            meta_provider=meta_provider,
        )
    elif backend_type == AgentBackendType.DROID_CLI:
        return DroidCliAgent(
            config=config.droid_cli,
            workspace_root=config.resolved_workspace_root,
            meta_provider=meta_provider,
        )
    else:
        raise ValueError(f"Unknown agent backend type: {backend_type}")


class AgentRegistry:
    """Holds the process-wide backend instances and their session caches.

    Constructed once at startup and passed to the services that run turns.
    """

    def __init__(
        self,
        config: AppConfig,
        meta_provider: Callable[[], AgentMeta],
        backends: dict[AgentBackendType, AgentBackend] | None = None,
    ) -> None:
        self._backends: dict[AgentBackendType, AgentBackend] = backends or {
            backend_type: _build_backend(backend_type, config, meta_provider)
            for backend_type in AgentBackendType
        }

    def get(self, backend_type: AgentBackendType | str) -> AgentBackend:
        """Get the backend instance for a type."""
        if isinstance(backend_type, str):
            backend_type = AgentBackendType(backend_type)

        backend = self._backends.get(backend_type)
        if backend is None:
            raise ValueError(f"Unknown agent backend type: {backend_type}")
        return backend

    def clear_all(self) -> None:
        """Drop every cached resumable handle, e.g. after a model or backend switch."""
        for backend in self._backends.values():
            backend.clear_sessions()
        logger.info("Cleared session caches for all agent backends")

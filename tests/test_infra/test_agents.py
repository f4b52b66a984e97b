"""Tests for the backend registry and per-backend session caches."""

from unittest.mock import MagicMock

import pytest

from turnstream.config import AppConfig
from turnstream.infra.agents.anthropic_sdk import AnthropicAgent
from turnstream.infra.agents.base import AgentBackend, build_title_prompt, clean_title
from turnstream.infra.agents.droid_cli import DroidCliAgent
from turnstream.infra.agents.registry import AgentRegistry
from turnstream.infra.agents.session_cache import SessionCache
from turnstream.models.agent import AgentBackendType, AgentMeta


class TestSessionCache:
    def test_set_get_forget(self):
        cache: SessionCache[str] = SessionCache(AgentBackendType.DROID_CLI)
        cache.set("s1", "h1")
        assert cache.get("s1") == "h1"
        assert "s1" in cache
        cache.forget("s1")
        assert cache.get("s1") is None
        cache.forget("never-set")

    def test_clear(self):
        cache: SessionCache[str] = SessionCache(AgentBackendType.ANTHROPIC_SDK)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.clear()
        assert len(cache) == 0


class TestAgentRegistry:
    def test_builds_every_backend(self, tmp_path):
        registry = AgentRegistry(AppConfig(workspace_root=str(tmp_path)), lambda: AgentMeta())
        assert isinstance(registry.get(AgentBackendType.DROID_CLI), DroidCliAgent)
        assert isinstance(registry.get("anthropic_sdk"), AnthropicAgent)
        assert isinstance(registry.get("droid_cli"), AgentBackend)

    def test_caches_are_per_backend(self, tmp_path):
        registry = AgentRegistry(AppConfig(workspace_root=str(tmp_path)), lambda: AgentMeta())
        droid = registry.get(AgentBackendType.DROID_CLI)
        sdk = registry.get(AgentBackendType.ANTHROPIC_SDK)
        droid.sessions.set("s1", "cli-session")
        assert sdk.sessions.get("s1") is None

    def test_unknown_backend(self, tmp_path):
        registry = AgentRegistry(AppConfig(workspace_root=str(tmp_path)), lambda: AgentMeta())
        with pytest.raises(ValueError):
            registry.get("codex")

    def test_clear_all(self):
        droid, sdk = MagicMock(), MagicMock()
        registry = AgentRegistry(
            AppConfig(), lambda: AgentMeta(),
            backends={AgentBackendType.DROID_CLI: droid, AgentBackendType.ANTHROPIC_SDK: sdk},
        )
        registry.clear_all()
        droid.clear_sessions.assert_called_once()
        sdk.clear_sessions.assert_called_once()


class TestTitleHelpers:
    def test_build_title_prompt(self):
        prompt = build_title_prompt('[{"role": "user"}]')
        assert "Conversation JSON:" in prompt
        assert prompt.endswith('[{"role": "user"}]')

    def test_clean_title(self):
        assert clean_title('  "Refactor Parser"\nmore text') == "Refactor Parser"
        assert clean_title("   ") is None
        assert clean_title("''") is None

"""Anthropic SDK backend: turns run in-process through the Messages API."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path

import anthropic

from turnstream.config import AnthropicSdkConfig
from turnstream.infra.agents.base import build_title_prompt, clean_title
from turnstream.infra.agents.errors import AgentExecutionFailed, AgentUnavailable
from turnstream.infra.agents.session_cache import SessionCache
from turnstream.infra.workspaces import ensure_workspace_directory
from turnstream.models.agent import AgentBackendType, AgentMeta, RunOptions, TurnResult
from turnstream.models.event import (
    ItemCompleted,
    ItemStarted,
    ItemUpdated,
    ResponseCompleted,
    TextDelta,
    ThreadStarted,
    TurnCompleted,
    TurnEvent,
    TurnFailed,
    TurnStarted,
)
from turnstream.models.session import SessionRecord
from turnstream.models.usage import Usage

logger = logging.getLogger(__name__)

API_KEY_VAR = "ANTHROPIC_API_KEY"
BASE_URL_VAR = "ANTHROPIC_BASE_URL"

THINKING_BUDGETS = {
    "low": 2048,
    "medium": 8192,
    "high": 16384,
}

SYSTEM_PROMPT = (
    "You are a coding agent working inside a single workspace directory. "
    "Workspace: {workspace}"
)


@dataclass
class SdkThread:
    """Resumable conversation state for the Messages API (history is client-side)."""

    id: str
    workspace: str
    messages: list[dict] = field(default_factory=list)


def _usage_from(sdk_usage) -> Usage | None:
    if sdk_usage is None:
        return None
    return Usage(
        input_tokens=getattr(sdk_usage, "input_tokens", 0) or 0,
        cached_input_tokens=getattr(sdk_usage, "cache_read_input_tokens", 0) or 0,
        output_tokens=getattr(sdk_usage, "output_tokens", 0) or 0,
    )


class AnthropicAgent:
    """Coding agent backed by ``anthropic.AsyncAnthropic``."""

    backend_type = AgentBackendType.ANTHROPIC_SDK

    def __init__(
        self,
        config: AnthropicSdkConfig,
        workspace_root: Path,
        meta_provider: Callable[[], AgentMeta],
        client_factory: Callable[..., anthropic.AsyncAnthropic] | None = None,
    ) -> None:
        self._config = config
        self._workspace_root = workspace_root
        self._meta_provider = meta_provider
        self._client_factory = client_factory or anthropic.AsyncAnthropic
        self._client: anthropic.AsyncAnthropic | None = None
        self.sessions: SessionCache[SdkThread] = SessionCache(self.backend_type)

    def _client_for(self, env: dict[str, str] | None) -> anthropic.AsyncAnthropic:
        """Shared client, or a call-scoped one when credentials are overridden."""
        env = env or {}
        api_key = env.get(API_KEY_VAR) or self._config.api_key
        base_url = env.get(BASE_URL_VAR) or self._config.base_url or None
        if not api_key:
            raise AgentUnavailable(
                f"Anthropic API key is not configured. Set {self._config.api_key_env or API_KEY_VAR}."
            )

        if API_KEY_VAR in env or BASE_URL_VAR in env:
            return self._client_factory(api_key=api_key, base_url=base_url)

        if self._client is None:
            self._client = self._client_factory(api_key=api_key, base_url=base_url)
        return self._client

    def _ensure_thread(self, session: SessionRecord) -> tuple[SdkThread, bool]:
        """Return the cached thread, or a new one and whether it is new to the session."""
        session_key = str(session.id)
        cached = self.sessions.get(session_key)
        if cached is not None:
            return cached, False

        workspace = ensure_workspace_directory(self._workspace_root, session)
        thread = SdkThread(id=session.thread_id or str(uuid.uuid4()), workspace=str(workspace))
        self.sessions.set(session_key, thread)
        return thread, thread.id != session.thread_id

    def _request_kwargs(self, thread: SdkThread, messages: list[dict]) -> dict:
        meta = self._meta_provider()
        kwargs: dict = {
            "model": meta.model or self._config.default_model,
            "max_tokens": self._config.max_tokens,
            "system": SYSTEM_PROMPT.format(workspace=thread.workspace),
            "messages": messages,
        }
        budget = THINKING_BUDGETS.get(meta.reasoning_effort.lower())
        if budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            kwargs["max_tokens"] = max(self._config.max_tokens, budget + 1024)
        return kwargs

    async def _stream_events(
        self,
        client: anthropic.AsyncAnthropic,
        thread: SdkThread,
        prompt: str,
        announce: bool,
    ) -> AsyncIterator[TurnEvent]:
        if announce:
            yield ThreadStarted(thread_id=thread.id)
        yield TurnStarted()

        user_message = {"role": "user", "content": prompt}
        kwargs = self._request_kwargs(thread, [*thread.messages, user_message])
        item = {"id": f"msg_{uuid.uuid4().hex}", "type": "agent_message", "text": ""}
        started = False
        text = ""

        try:
            async with client.messages.stream(**kwargs) as stream:
                async for chunk in stream.text_stream:
                    if not chunk:
                        continue
                    text += chunk
                    item["text"] = text
                    if not started:
                        started = True
                        yield ItemStarted(item=item)
                    else:
                        yield ItemUpdated(item=item)
                    yield TextDelta(delta=chunk)
                final = await stream.get_final_message()
        except Exception as e:
            logger.warning("Anthropic stream failed for thread %s: %s", thread.id, e)
            yield TurnFailed(message=str(e) or type(e).__name__)
            return

        if started:
            yield ItemCompleted(item=item)
        yield ResponseCompleted(text=text)

        if text:
            thread.messages.extend([user_message, {"role": "assistant", "content": text}])
        yield TurnCompleted(usage=_usage_from(getattr(final, "usage", None)))

    async def run_turn_streamed(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> AsyncIterator[TurnEvent]:
        options = options or RunOptions()
        client = self._client_for(options.env)
        thread, is_new = self._ensure_thread(session)
        logger.info("Starting Anthropic turn for session %s (thread=%s)", session.id, thread.id)
        return self._stream_events(client, thread, prompt, announce=is_new)

    async def run_turn(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> TurnResult:
        events = await self.run_turn_streamed(session, prompt, options)
        thread_id = self.sessions.get(str(session.id)).id
        items: list[dict] = []
        text = ""
        usage = None
        try:
            async for event in events:
                if isinstance(event, TurnFailed):
                    raise AgentExecutionFailed(event.message)
                if isinstance(event, ItemCompleted):
                    items.append(event.item)
                elif isinstance(event, ResponseCompleted):
                    text = event.text
                elif isinstance(event, TurnCompleted):
                    usage = event.usage
        finally:
            await events.aclose()
        return TurnResult(items=items, final_response=text, usage=usage, thread_id=thread_id)

    def forget_session(self, session_id: str) -> None:
        self.sessions.forget(session_id)

    def clear_sessions(self) -> None:
        self.sessions.clear()

    async def suggest_title(
        self, session: SessionRecord, conversation_json: str
    ) -> str | None:
        """One-off request outside any cached thread."""
        try:
            client = self._client_for(None)
            response = await client.messages.create(
                model=self._meta_provider().model or self._config.default_model,
                max_tokens=64,
                messages=[{"role": "user", "content": build_title_prompt(conversation_json)}],
            )
            text = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )
            return clean_title(text)
        except Exception as e:
            logger.warning(
                "Failed to generate title suggestion for session %s: %s", session.id, e,
            )
            return None

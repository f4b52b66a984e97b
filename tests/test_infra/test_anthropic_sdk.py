"""Tests for the Anthropic SDK backend with a fake client."""

from types import SimpleNamespace

import pytest

from turnstream.config import AnthropicSdkConfig
from turnstream.infra.agents.anthropic_sdk import AnthropicAgent
from turnstream.infra.agents.errors import AgentExecutionFailed, AgentUnavailable
from turnstream.models.agent import AgentMeta, RunOptions
from turnstream.models.event import (
    ItemCompleted,
    ItemStarted,
    ItemUpdated,
    ResponseCompleted,
    TextDelta,
    ThreadStarted,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from turnstream.models.session import SessionRecord
from turnstream.models.usage import Usage


class FakeStream:
    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    def text_stream(self):
        return self._text()

    async def _text(self):
        for chunk in self._chunks:
            yield chunk
        if self._error:
            raise self._error

    async def get_final_message(self):
        return SimpleNamespace(
            usage=SimpleNamespace(input_tokens=10, cache_read_input_tokens=4, output_tokens=5),
        )


class FakeMessages:
    def __init__(self, streams=None, title_text="Title"):
        self.streams = list(streams or [])
        self.stream_calls = []
        self.create_calls = []
        self.title_text = title_text

    def stream(self, **kwargs):
        self.stream_calls.append(kwargs)
        return self.streams.pop(0)

    async def create(self, **kwargs):
        self.create_calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.title_text)])


class FakeClientFactory:
    def __init__(self, messages: FakeMessages):
        self.messages = messages
        self.created = []

    def __call__(self, **kwargs):
        client = SimpleNamespace(messages=self.messages, kwargs=kwargs)
        self.created.append(client)
        return client


def _agent(tmp_path, factory, api_key="sk-test", meta=None):
    return AnthropicAgent(
        AnthropicSdkConfig(api_key=api_key, default_model="claude-test", max_tokens=1000),
        tmp_path / "workspaces",
        lambda: meta or AgentMeta(),
        client_factory=factory,
    )


def _session(tmp_path, thread_id=None):
    return SessionRecord(user_id="u1", id="s1", thread_id=thread_id, workspace_path=str(tmp_path / "ws"))


async def _collect(stream):
    return [event async for event in stream]


class TestAnthropicAgent:
    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self, tmp_path):
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages()), api_key="")
        with pytest.raises(AgentUnavailable):
            await agent.run_turn_streamed(_session(tmp_path), "hi")

    @pytest.mark.asyncio
    async def test_event_order_for_new_thread(self, tmp_path):
        factory = FakeClientFactory(FakeMessages([FakeStream(["Hel", "", "lo"])]))
        agent = _agent(tmp_path, factory)
        events = await _collect(await agent.run_turn_streamed(_session(tmp_path), "hi"))

        assert [type(e) for e in events] == [
            ThreadStarted, TurnStarted,
            ItemStarted, TextDelta,
            ItemUpdated, TextDelta,
            ItemCompleted, ResponseCompleted, TurnCompleted,
        ]
        assert events[6].item["text"] == "Hello"
        assert events[7].text == "Hello"
        assert events[-1].usage == Usage(input_tokens=10, cached_input_tokens=4, output_tokens=5)
        assert agent.sessions.get("s1").id == events[0].thread_id

    @pytest.mark.asyncio
    async def test_second_turn_resumes_history(self, tmp_path):
        messages = FakeMessages([FakeStream(["one"]), FakeStream(["two"])])
        agent = _agent(tmp_path, FakeClientFactory(messages))
        await _collect(await agent.run_turn_streamed(_session(tmp_path), "first"))
        events = await _collect(await agent.run_turn_streamed(_session(tmp_path), "second"))

        assert not any(isinstance(e, ThreadStarted) for e in events)
        sent = messages.stream_calls[1]["messages"]
        assert [m["role"] for m in sent] == ["user", "assistant", "user"]
        assert sent[1]["content"] == "one"
        assert sent[2]["content"] == "second"

    @pytest.mark.asyncio
    async def test_empty_reply_not_added_to_history(self, tmp_path):
        messages = FakeMessages([FakeStream([]), FakeStream(["ok"])])
        agent = _agent(tmp_path, FakeClientFactory(messages))
        events = await _collect(await agent.run_turn_streamed(_session(tmp_path), "first"))
        assert isinstance(events[-1], TurnCompleted)
        assert agent.sessions.get("s1").messages == []

        await _collect(await agent.run_turn_streamed(_session(tmp_path), "second"))
        sent = messages.stream_calls[1]["messages"]
        assert [m["role"] for m in sent] == ["user"]
        assert all(m["content"] for m in sent)

    @pytest.mark.asyncio
    async def test_persisted_thread_id_is_reused(self, tmp_path):
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages([FakeStream(["x"])])))
        events = await _collect(
            await agent.run_turn_streamed(_session(tmp_path, thread_id="thr-1"), "hi")
        )
        assert not any(isinstance(e, ThreadStarted) for e in events)
        assert agent.sessions.get("s1").id == "thr-1"

    @pytest.mark.asyncio
    async def test_stream_error_becomes_turn_failed(self, tmp_path):
        stream = FakeStream(["partial"], error=RuntimeError("overloaded"))
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages([stream])))
        events = await _collect(await agent.run_turn_streamed(_session(tmp_path), "hi"))

        assert isinstance(events[-1], TurnFailed)
        assert events[-1].message == "overloaded"
        assert not any(isinstance(e, TurnCompleted) for e in events)
        assert agent.sessions.get("s1").messages == []

    @pytest.mark.asyncio
    async def test_env_override_uses_call_scoped_client(self, tmp_path):
        factory = FakeClientFactory(FakeMessages([FakeStream(["a"]), FakeStream(["b"])]))
        agent = _agent(tmp_path, factory)
        await _collect(await agent.run_turn_streamed(_session(tmp_path), "hi"))
        await _collect(await agent.run_turn_streamed(
            _session(tmp_path), "hi", RunOptions(env={"ANTHROPIC_API_KEY": "sk-user"}),
        ))

        assert len(factory.created) == 2
        assert factory.created[0].kwargs["api_key"] == "sk-test"
        assert factory.created[1].kwargs["api_key"] == "sk-user"

    @pytest.mark.asyncio
    async def test_reasoning_effort_enables_thinking(self, tmp_path):
        messages = FakeMessages([FakeStream(["a"])])
        meta = AgentMeta(model="claude-big", reasoning_effort="high")
        agent = _agent(tmp_path, FakeClientFactory(messages), meta=meta)
        await _collect(await agent.run_turn_streamed(_session(tmp_path), "hi"))

        kwargs = messages.stream_calls[0]
        assert kwargs["model"] == "claude-big"
        assert kwargs["thinking"] == {"type": "enabled", "budget_tokens": 16384}
        assert kwargs["max_tokens"] > 16384

    @pytest.mark.asyncio
    async def test_run_turn(self, tmp_path):
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages([FakeStream(["Done"])])))
        result = await agent.run_turn(_session(tmp_path), "hi")
        assert result.final_response == "Done"
        assert result.items[0]["type"] == "agent_message"
        assert result.thread_id == agent.sessions.get("s1").id
        assert result.usage.output_tokens == 5

    @pytest.mark.asyncio
    async def test_run_turn_raises_on_failure(self, tmp_path):
        stream = FakeStream([], error=RuntimeError("bad request"))
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages([stream])))
        with pytest.raises(AgentExecutionFailed, match="bad request"):
            await agent.run_turn(_session(tmp_path), "hi")

    @pytest.mark.asyncio
    async def test_suggest_title(self, tmp_path):
        messages = FakeMessages(title_text='"Fix Login Bug"\nsecond line')
        agent = _agent(tmp_path, FakeClientFactory(messages))
        assert await agent.suggest_title(_session(tmp_path), "[]") == "Fix Login Bug"
        assert messages.create_calls[0]["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_suggest_title_without_key_returns_none(self, tmp_path):
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages()), api_key="")
        assert await agent.suggest_title(_session(tmp_path), "[]") is None

    def test_forget_session(self, tmp_path):
        agent = _agent(tmp_path, FakeClientFactory(FakeMessages()))
        agent._ensure_thread(_session(tmp_path))
        agent.forget_session("s1")
        assert agent.sessions.get("s1") is None

"""Tests for the droid CLI backend, driven by fake agent scripts."""

import asyncio
import os
import sys

import pytest

from turnstream.config import DroidCliConfig
from turnstream.infra.agents.droid_cli import DroidCliAgent
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
)
from turnstream.models.session import SessionRecord
from turnstream.models.usage import Usage

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh agent scripts")


def _script(tmp_path, body: str) -> str:
    path = tmp_path / "fake-droid"
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return str(path)


def _agent(tmp_path, binary: str, meta: AgentMeta | None = None) -> DroidCliAgent:
    return DroidCliAgent(
        DroidCliConfig(binary_path=binary, terminate_grace=1.0),
        tmp_path / "workspaces",
        lambda: meta or AgentMeta(),
    )


def _session(tmp_path, thread_id: str | None = None) -> SessionRecord:
    return SessionRecord(
        user_id="u1", id="s1", thread_id=thread_id, workspace_path=str(tmp_path / "ws"),
    )


async def _collect(stream) -> list:
    return [event async for event in stream]


SUCCESS_SCRIPT = """\
cat <<'EOF'
{"type": "session", "id": "sess-1"}
{"type": "message", "role": "assistant", "text": "Hel"}
not json at all
{"type": "message", "role": "assistant", "text": "Hello  "}
{"type": "result", "text": "Hello", "usage": {"input_tokens": 3, "output_tokens": "2"}}
EOF
"""


class TestBuildCommand:
    def test_fresh_turn(self, tmp_path):
        agent = _agent(tmp_path, "/opt/droid")
        cmd = agent.build_command(tmp_path, "fix the bug")
        assert cmd.program == "/opt/droid"
        assert cmd.args == (
            "exec", "--output-format", "debug",
            "--skip-permissions-unsafe", "--cwd", str(tmp_path), "fix the bug",
        )
        assert cmd.cwd == str(tmp_path)

    def test_resume_model_and_effort(self, tmp_path):
        meta = AgentMeta(model="m-large", reasoning_effort="high")
        agent = _agent(tmp_path, "/opt/droid", meta)
        cmd = agent.build_command(tmp_path, "go", resume_session_id="prev-1")
        assert cmd.args == (
            "exec", "--output-format", "debug",
            "--session-id", "prev-1",
            "--model", "m-large",
            "--reasoning-effort", "high",
            "--skip-permissions-unsafe", "--cwd", str(tmp_path), "go",
        )

    def test_env_overrides_carried(self, tmp_path):
        agent = _agent(tmp_path, "/opt/droid")
        cmd = agent.build_command(tmp_path, "go", env={"FACTORY_API_KEY": "k"})
        assert cmd.env == {"FACTORY_API_KEY": "k"}


class TestCliExecution:
    @pytest.mark.asyncio
    async def test_successful_turn_event_order(self, tmp_path):
        agent = _agent(tmp_path, _script(tmp_path, SUCCESS_SCRIPT))
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")
        events = await _collect(stream)

        assert [type(e) for e in events] == [
            ThreadStarted,
            ItemStarted, TextDelta,
            ItemUpdated, TextDelta,
            ItemCompleted, ResponseCompleted,
            TurnCompleted,
        ]
        assert events[0].thread_id == "sess-1"
        assert [e.delta for e in events if isinstance(e, TextDelta)] == ["Hel", "lo"]
        assert events[5].item["text"] == "Hello"
        assert events[5].item["type"] == "agent_message"
        assert events[1].item_id == events[5].item_id
        assert events[-1].usage == Usage(input_tokens=3, cached_input_tokens=0, output_tokens=2)

        summary = await stream.collect_summary()
        assert summary.final_text == "Hello"
        assert summary.session_id == "sess-1"
        assert summary.error is None
        assert len(summary.items) == 1

        assert agent.sessions.get("s1") == "sess-1"

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_stderr_and_code(self, tmp_path):
        script = _script(tmp_path, "echo 'auth expired' >&2\nexit 3\n")
        agent = _agent(tmp_path, script)
        events = await _collect(await agent.run_turn_streamed(_session(tmp_path), "hi"))

        assert len(events) == 1
        assert isinstance(events[0], TurnFailed)
        assert "auth expired" in events[0].message
        assert "fake-droid exec exited with code 3" in events[0].message

    @pytest.mark.asyncio
    async def test_error_record_fails_once(self, tmp_path):
        script = _script(tmp_path, """\
cat <<'EOF'
{"type": "message", "role": "assistant", "text": "Working"}
{"type": "error", "message": "rate limited"}
{"type": "error", "message": "second failure"}
EOF
exit 1
""")
        agent = _agent(tmp_path, script)
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")
        events = await _collect(stream)

        failures = [e for e in events if isinstance(e, TurnFailed)]
        assert len(failures) == 1
        assert failures[0].message == "rate limited"
        assert not any(isinstance(e, TurnCompleted) for e in events)
        summary = await stream.collect_summary()
        assert summary.error is not None

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path):
        agent = _agent(tmp_path, str(tmp_path / "missing-droid"))
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")
        events = await _collect(stream)

        assert len(events) == 1
        assert isinstance(events[0], TurnFailed)
        assert "Failed to start" in events[0].message
        summary = await stream.collect_summary()
        assert summary.error is not None

    @pytest.mark.asyncio
    async def test_resumes_from_session_thread_id(self, tmp_path):
        script = _script(tmp_path, """\
printf '{"type": "response", "text": "%s"}\\n' "$*"
""")
        agent = _agent(tmp_path, script)
        result = await agent.run_turn(_session(tmp_path, thread_id="prev-9"), "hi")
        assert "--session-id prev-9" in result.final_response

    @pytest.mark.asyncio
    async def test_env_overrides_reach_child_only(self, tmp_path):
        script = _script(tmp_path, """\
printf '{"type": "response", "text": "%s"}\\n' "$TURN_TOKEN"
""")
        agent = _agent(tmp_path, script)
        result = await agent.run_turn(
            _session(tmp_path), "hi", RunOptions(env={"TURN_TOKEN": "abc123"}),
        )
        assert result.final_response == "abc123"
        assert "TURN_TOKEN" not in os.environ

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self, tmp_path):
        script = _script(tmp_path, """\
echo '{"type": "message", "role": "assistant", "text": "Thinking"}'
exec sleep 30
""")
        agent = _agent(tmp_path, script)
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")

        first = await asyncio.wait_for(stream.__anext__(), timeout=5)
        assert isinstance(first, ItemStarted)
        await asyncio.wait_for(stream.aclose(), timeout=5)

        assert stream.process.returncode is not None
        summary = await asyncio.wait_for(stream.collect_summary(), timeout=1)
        assert summary.items == []
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_repeated_session_id_announced_once(self, tmp_path):
        script = _script(tmp_path, """\
cat <<'EOF'
{"type": "message", "role": "assistant", "text": "a", "session_id": "sess-1"}
{"type": "message", "role": "assistant", "text": "ab", "session_id": "sess-1"}
{"type": "result", "text": "abc", "session_id": "sess-1"}
EOF
""")
        agent = _agent(tmp_path, script)
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")
        events = await _collect(stream)

        started = [e.thread_id for e in events if isinstance(e, ThreadStarted)]
        assert started == ["sess-1"]
        assert (await stream.collect_summary()).session_id == "sess-1"

    @pytest.mark.asyncio
    async def test_session_id_flip_back_keeps_last_announced(self, tmp_path):
        script = _script(tmp_path, """\
cat <<'EOF'
{"type": "message", "role": "assistant", "text": "one", "session_id": "A"}
{"type": "message", "role": "assistant", "text": "one two", "session_id": "B"}
{"type": "message", "role": "assistant", "text": "one two three", "session_id": "A"}
EOF
""")
        agent = _agent(tmp_path, script)
        stream = await agent.run_turn_streamed(_session(tmp_path), "hi")
        events = await _collect(stream)

        started = [e.thread_id for e in events if isinstance(e, ThreadStarted)]
        assert started == ["A", "B"]
        summary = await stream.collect_summary()
        assert summary.session_id == started[-1]
        assert agent.sessions.get("s1") == started[-1]


class TestDroidCliAgent:
    @pytest.mark.asyncio
    async def test_run_turn_result(self, tmp_path):
        agent = _agent(tmp_path, _script(tmp_path, SUCCESS_SCRIPT))
        result = await agent.run_turn(_session(tmp_path), "hi")
        assert result.final_response == "Hello"
        assert result.thread_id == "sess-1"
        assert result.items[0]["text"] == "Hello"
        assert result.usage.input_tokens == 3

    @pytest.mark.asyncio
    async def test_run_turn_raises_on_failure(self, tmp_path):
        agent = _agent(tmp_path, _script(tmp_path, "exit 2\n"))
        with pytest.raises(AgentExecutionFailed, match="exited with code 2"):
            await agent.run_turn(_session(tmp_path), "hi")

    @pytest.mark.asyncio
    async def test_run_turn_missing_binary_is_unavailable(self, tmp_path):
        agent = _agent(tmp_path, str(tmp_path / "missing-droid"))
        with pytest.raises(AgentUnavailable, match="Failed to start"):
            await agent.run_turn(_session(tmp_path), "hi")

    @pytest.mark.asyncio
    async def test_suggest_title_does_not_touch_cache(self, tmp_path):
        script = _script(tmp_path, """\
cat <<'EOF'
{"type": "session", "id": "throwaway"}
{"type": "response", "text": "\\"Fix Login Bug\\""}
EOF
""")
        agent = _agent(tmp_path, script)
        title = await agent.suggest_title(_session(tmp_path), "[]")
        assert title == "Fix Login Bug"
        assert "s1" not in agent.sessions

    @pytest.mark.asyncio
    async def test_suggest_title_failure_returns_none(self, tmp_path):
        agent = _agent(tmp_path, _script(tmp_path, "exit 1\n"))
        assert await agent.suggest_title(_session(tmp_path), "[]") is None

    def test_forget_and_clear(self, tmp_path):
        agent = _agent(tmp_path, "/opt/droid")
        agent.sessions.set("s1", "a")
        agent.sessions.set("s2", "b")
        agent.forget_session("s1")
        assert "s1" not in agent.sessions
        agent.clear_sessions()
        assert len(agent.sessions) == 0

"""Droid CLI backend: one ``droid exec`` process per turn.

The CLI only prints whole-message snapshots as JSON lines. ``CliExecution``
turns that output into the ordered event stream the turn service consumes,
synthesizing a single ``agent_message`` item whose text grows with each
snapshot.
"""

from __future__ import annotations

import asyncio
import codecs
import copy
import logging
import shutil
import sys
import uuid
from collections.abc import Callable
from pathlib import Path

from turnstream.config import DroidCliConfig
from turnstream.infra.agents.base import build_title_prompt, clean_title
from turnstream.infra.agents.cli_protocol import (
    FAILURE_TYPES,
    assistant_text,
    extract_session_id,
    parse_record,
    record_type,
)
from turnstream.infra.agents.errors import (
    AgentError,
    AgentExecutionFailed,
    AgentUnavailable,
    ProcessExitError,
    ProtocolError,
    SpawnError,
)
from turnstream.infra.agents.session_cache import SessionCache
from turnstream.infra.subprocess_mgr import SubprocessManager, describe_exit
from turnstream.infra.workspaces import ensure_workspace_directory
from turnstream.models.agent import (
    AgentBackendType,
    AgentMeta,
    CommandSpec,
    ExecutionSummary,
    RunOptions,
    TurnResult,
)
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
)
from turnstream.models.session import SessionRecord
from turnstream.models.usage import Usage, normalize_usage

logger = logging.getLogger(__name__)

_END = object()

DEFAULT_PROGRAM = "droid"
_WINDOWS_SUFFIXES = (".cmd", ".exe", ".ps1")


class CliExecution:
    """A single agent process and the event stream reconstructed from it.

    Lifecycle: ``start()`` spawns the process and begins reading stdout;
    the stream ends after ``turn.completed`` or ``turn.failed``, or when
    the consumer calls ``aclose()``. ``collect_summary()`` resolves once
    the stream has ended, on every path.
    """

    def __init__(
        self,
        command: CommandSpec,
        subprocess_mgr: SubprocessManager,
        session_key: str,
        resume_session_id: str | None = None,
        cache: SessionCache[str] | None = None,
    ) -> None:
        self._command = command
        self._subprocess_mgr = subprocess_mgr
        self._session_key = session_key
        # None for throwaway runs that must not persist a session
        self._cache = cache

        self._queue: asyncio.Queue = asyncio.Queue()
        self._ended = False
        self._summary: asyncio.Future[ExecutionSummary] = (
            asyncio.get_running_loop().create_future()
        )
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None

        self._completed_items: list[dict] = []
        self._assistant_text = ""
        self._agent_item: dict | None = None
        self._agent_item_started = False
        self._agent_item_completed = False
        self._usage: Usage | None = None
        self._failure: AgentError | None = None
        self._error_text = ""
        self._session_id = resume_session_id
        self._announced: set[str] = set()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._proc

    async def start(self) -> None:
        try:
            self._proc = await self._subprocess_mgr.spawn(self._command)
        except OSError as e:
            message = f"Failed to start {self._command.program}: {e}"
            logger.error(message)
            self._fail(SpawnError(message))
            self._end_stream()
            return
        self._reader_task = asyncio.create_task(self._read_output(self._proc))

    # -- async iterator ---------------------------------------------------

    def __aiter__(self) -> CliExecution:
        return self

    async def __anext__(self) -> TurnEvent:
        if self._ended and self._queue.empty():
            raise StopAsyncIteration
        entry = await self._queue.get()
        if entry is _END:
            raise StopAsyncIteration
        return entry

    async def aclose(self) -> None:
        """Stop reading, drop undelivered events and terminate the process."""
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            self._queue.get_nowait()
        self._end_stream()

        if self._proc is not None and self._proc.returncode is None:
            logger.info("Terminating %s (pid=%s)", self._command.program, self._proc.pid)
            await self._subprocess_mgr.terminate(self._proc)

    async def collect_summary(self) -> ExecutionSummary:
        return await self._summary

    # -- output handling --------------------------------------------------

    async def _read_output(self, proc: asyncio.subprocess.Process) -> None:
        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                self._handle_line(line.decode("utf-8", errors="replace"))
            await stderr_task
            returncode = await proc.wait()
            logger.debug("%s exited with %s", self._command.program, returncode)
            self._on_exit(returncode)
        except ValueError as e:
            # StreamReader raises ValueError when a line exceeds its limit
            self._fail(ProtocolError(f"Unreadable agent output: {e}"))
            await self._subprocess_mgr.terminate(proc)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error reading %s output", self._command.program)
            self._fail(AgentError(str(e)))
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            self._end_stream()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while chunk := await proc.stderr.read(4096):
            self._error_text += decoder.decode(chunk)
        self._error_text += decoder.decode(b"", final=True)

    def _handle_line(self, line: str) -> None:
        try:
            record = parse_record(line)
        except ValueError:
            self._error_text += f"{line.strip()}\n"
            return
        if record is None:
            return

        self._apply_session_id(extract_session_id(record))

        kind = record_type(record)
        text = assistant_text(record)
        if text is not None:
            self._emit_agent_update(text)

        if kind == "result":
            usage = normalize_usage(record.get("usage"))
            if usage:
                self._usage = usage
        elif kind == "usage":
            usage = normalize_usage(record)
            if usage:
                self._usage = usage
        elif kind in FAILURE_TYPES:
            message = record.get("message")
            if not isinstance(message, str) or not message:
                message = self._error_text.strip() or "Agent CLI reported an error."
            if self._failure is not None:
                self._error_text += f"{message}\n"
            else:
                self._fail(ProtocolError(message))

    def _on_exit(self, returncode: int) -> None:
        if returncode == 0 and self._failure is None:
            self._finalize_agent_item()
            self._push(TurnCompleted(usage=self._usage))
        elif self._failure is None:
            exit_reason = describe_exit(self._command.program, returncode)
            diagnostics = self._error_text.strip()
            reason = f"{diagnostics}\n{exit_reason}" if diagnostics else exit_reason
            self._fail(ProcessExitError(reason, returncode))

    # -- event synthesis --------------------------------------------------

    def _push(self, event: TurnEvent) -> None:
        if self._ended:
            return
        if isinstance(event, ItemCompleted):
            self._completed_items.append(copy.deepcopy(event.item))
        elif isinstance(event, TurnCompleted):
            self._usage = event.usage
        elif isinstance(event, ResponseCompleted) and event.text:
            self._assistant_text = event.text
        self._queue.put_nowait(event)

    def _fail(self, error: AgentError) -> None:
        if self._failure is not None:
            return
        self._failure = error
        self._push(TurnFailed(message=str(error)))

    def _end_stream(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._queue.put_nowait(_END)

        if self._completed_items:
            items = self._completed_items
        elif self._agent_item is not None and self._agent_item_completed:
            items = [copy.deepcopy(self._agent_item)]
        else:
            items = []

        if not self._summary.done():
            self._summary.set_result(
                ExecutionSummary(
                    final_text=self._assistant_text,
                    items=items,
                    usage=self._usage,
                    session_id=self._session_id,
                    error=self._failure,
                )
            )

    def _apply_session_id(self, candidate: str | None) -> None:
        # The stored id always matches the last announced thread.started.
        if not candidate or candidate == self._session_id or candidate in self._announced:
            return
        self._announced.add(candidate)
        self._session_id = candidate
        if self._cache is not None:
            self._cache.set(self._session_key, candidate)
        self._push(ThreadStarted(thread_id=candidate))

    def _emit_agent_update(self, text: str) -> None:
        trimmed = text.rstrip()
        if trimmed == self._assistant_text:
            return

        delta = trimmed[len(self._assistant_text):]
        self._assistant_text = trimmed

        if self._agent_item is None:
            self._agent_item = {"id": str(uuid.uuid4()), "type": "agent_message", "text": ""}
        self._agent_item["text"] = trimmed

        if not self._agent_item_started:
            self._agent_item_started = True
            self._push(ItemStarted(item=self._agent_item))
        else:
            self._push(ItemUpdated(item=self._agent_item))

        if delta:
            self._push(TextDelta(delta=delta))

    def _finalize_agent_item(self) -> None:
        if self._agent_item is None or not self._assistant_text:
            return
        if not self._agent_item_completed:
            self._agent_item_completed = True
            self._push(ItemCompleted(item=self._agent_item))
        self._push(ResponseCompleted(text=self._assistant_text))


class DroidCliAgent:
    """Coding agent backed by the ``droid`` command-line tool."""

    backend_type = AgentBackendType.DROID_CLI

    def __init__(
        self,
        config: DroidCliConfig,
        workspace_root: Path,
        meta_provider: Callable[[], AgentMeta],
        subprocess_mgr: SubprocessManager | None = None,
    ) -> None:
        self._config = config
        self._workspace_root = workspace_root
        self._meta_provider = meta_provider
        self._subprocess_mgr = subprocess_mgr or SubprocessManager(
            terminate_grace=config.terminate_grace,
        )
        self.sessions: SessionCache[str] = SessionCache(self.backend_type)

    def binary_path(self) -> str:
        """Explicit override, else whatever ``droid`` resolves to on PATH."""
        override = self._config.binary_path.strip()
        if override:
            if sys.platform == "win32" and not override.lower().endswith(_WINDOWS_SUFFIXES):
                override += ".cmd"
            return override
        return shutil.which(DEFAULT_PROGRAM) or DEFAULT_PROGRAM

    def build_command(
        self,
        workspace: Path,
        prompt: str,
        resume_session_id: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandSpec:
        """Generate the ``droid exec`` invocation for one turn."""
        meta = self._meta_provider()
        args: list[str] = ["exec", "--output-format", "debug"]

        if resume_session_id:
            args.extend(["--session-id", resume_session_id])

        if meta.model:
            args.extend(["--model", meta.model])

        if meta.reasoning_effort:
            args.extend(["--reasoning-effort", meta.reasoning_effort])

        # Lets the agent modify files inside the workspace
        args.append("--skip-permissions-unsafe")
        args.extend(["--cwd", str(workspace)])

        args.append(prompt)

        return CommandSpec(
            program=self.binary_path(),
            args=tuple(args),
            env=dict(env) if env else None,
            cwd=str(workspace),
        )

    async def start_execution(
        self,
        session: SessionRecord,
        prompt: str,
        reuse_session: bool,
        env: dict[str, str] | None = None,
    ) -> CliExecution:
        """Spawn the CLI for one turn.

        Only turns that reuse the session resume from, and write back to,
        the session cache.
        """
        workspace = ensure_workspace_directory(self._workspace_root, session)
        session_key = str(session.id)
        resume_session_id = None
        if reuse_session:
            resume_session_id = session.thread_id or self.sessions.get(session_key)
            if resume_session_id:
                self.sessions.set(session_key, resume_session_id)

        command = self.build_command(workspace, prompt, resume_session_id, env)
        logger.info(
            "Starting %s for session %s (resume=%s)",
            command.program, session_key, resume_session_id or "-",
        )
        logger.debug("Command: %s", command.full_command)
        execution = CliExecution(
            command,
            self._subprocess_mgr,
            session_key=session_key,
            resume_session_id=resume_session_id,
            cache=self.sessions if reuse_session else None,
        )
        await execution.start()
        return execution

    async def run_turn(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> TurnResult:
        options = options or RunOptions()
        execution = await self.start_execution(session, prompt, True, options.env)
        async for _event in execution:
            pass

        summary = await execution.collect_summary()
        if isinstance(summary.error, SpawnError):
            raise AgentUnavailable(str(summary.error)) from summary.error
        if summary.error:
            raise AgentExecutionFailed(str(summary.error)) from summary.error

        if summary.session_id and summary.session_id != self.sessions.get(str(session.id)):
            self.sessions.set(str(session.id), summary.session_id)

        items = summary.items
        if not items and summary.final_text:
            items = [{"id": str(uuid.uuid4()), "type": "agent_message", "text": summary.final_text}]

        return TurnResult(
            items=items,
            final_response=summary.final_text,
            usage=summary.usage,
            thread_id=summary.session_id,
        )

    async def run_turn_streamed(
        self, session: SessionRecord, prompt: str, options: RunOptions | None = None
    ) -> CliExecution:
        options = options or RunOptions()
        return await self.start_execution(session, prompt, True, options.env)

    def forget_session(self, session_id: str) -> None:
        self.sessions.forget(session_id)

    def clear_sessions(self) -> None:
        self.sessions.clear()

    async def suggest_title(
        self, session: SessionRecord, conversation_json: str
    ) -> str | None:
        """Ask the CLI for a title in a throwaway run that never touches the session cache."""
        try:
            execution = await self.start_execution(
                session, build_title_prompt(conversation_json), reuse_session=False,
            )
            async for _event in execution:
                pass
            summary = await execution.collect_summary()
            if summary.error:
                raise summary.error
            return clean_title(summary.final_text)
        except Exception as e:
            logger.warning(
                "Droid CLI unavailable for title suggestion in session %s: %s", session.id, e,
            )
            return None

"""Turn orchestration: drive one agent turn and stream its progress as NDJSON.

A turn is split in two phases. ``prepare_turn`` validates the request,
stores the user message and builds the prompt; its ValueErrors are meant
to become HTTP 400s before any body is sent. ``execute`` then consumes the
backend's event stream, emitting snapshots through a ``write`` callback,
and persists the assistant message. Every executed turn emits a final
``{"type": "done"}`` line.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from turnstream.config import StreamConfig
from turnstream.infra.agents.base import AgentBackend, EventStream
from turnstream.infra.agents.errors import AgentExecutionFailed, StallTimeout
from turnstream.infra.agents.registry import AgentRegistry
from turnstream.infra.db.messages import MessageRepo
from turnstream.infra.db.sessions import SessionRepo
from turnstream.infra.workspaces import ensure_workspace_directory, save_attachments
from turnstream.models.agent import AgentMeta, RunOptions
from turnstream.models.event import (
    ItemCompleted,
    ItemStarted,
    ItemUpdated,
    ResponseCompleted,
    StreamError,
    TextDelta,
    ThreadStarted,
    TurnCompleted,
    TurnFailed,
)
from turnstream.models.message import AttachmentInput, AttachmentRecord, MessageRecord, MessageRole, Responder
from turnstream.models.session import SessionRecord
from turnstream.models.usage import Usage

logger = logging.getLogger(__name__)

CODING_AGENT_INSTRUCTIONS = "\n".join([
    "You are a coding agent working inside a dedicated workspace directory for this conversation.",
    "Prefer editing files directly over describing the changes you would make.",
    "Only run shell commands when they are needed to complete the request.",
    "Use workspace-relative paths unless an absolute path is provided.",
])

MAX_ATTACHMENTS_PER_MESSAGE = 4
MAX_ATTACHMENT_SIZE_BYTES = 5 * 1024 * 1024
ALLOWED_IMAGE_MIME_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})
TITLE_PREVIEW_LENGTH = 60

_END = object()
_TIMEOUT = object()
_CANCELLED = object()

Writer = Callable[[dict], None]


@dataclass(frozen=True)
class TurnRequest:
    """User input for one turn."""

    content: str = ""
    attachments: tuple[AttachmentInput, ...] = ()
    env: dict[str, str] | None = None


@dataclass(frozen=True)
class PreparedTurn:
    session: SessionRecord
    user_message: MessageRecord
    prompt: str
    meta: AgentMeta
    workspace: Path
    env: dict[str, str] | None = None


@dataclass
class TurnOutcome:
    message: MessageRecord | None = None
    session: SessionRecord | None = None
    usage: Usage | None = None
    error: Exception | None = None
    cancelled: bool = False


def validate_request(request: TurnRequest) -> None:
    """Reject empty or oversized requests. Raises ValueError."""
    if not request.content.strip() and not request.attachments:
        raise ValueError("Provide a message or at least one image attachment.")

    if len(request.attachments) > MAX_ATTACHMENTS_PER_MESSAGE:
        raise ValueError(
            f"You can attach up to {MAX_ATTACHMENTS_PER_MESSAGE} images per message."
        )

    for attachment in request.attachments:
        if attachment.mime_type not in ALLOWED_IMAGE_MIME_TYPES:
            raise ValueError(f"Unsupported image type: {attachment.mime_type}")
        if attachment.size > MAX_ATTACHMENT_SIZE_BYTES:
            limit_mb = MAX_ATTACHMENT_SIZE_BYTES // (1024 * 1024)
            raise ValueError(
                f"Attachment {attachment.filename} exceeds the {limit_mb}MB size limit"
            )


def build_prompt(workspace: Path, user_request: str, attachments: list[AttachmentRecord]) -> str:
    """Operating instructions + workspace + user text + attachment manifest."""
    workspace_display = workspace.as_posix()
    prompt = (
        f"{CODING_AGENT_INSTRUCTIONS}\n\n"
        f"Current workspace directory: {workspace_display}\n\n"
        f"User request:\n{user_request}"
    ).rstrip()

    if attachments:
        lines = [
            f"{index}. {a.filename} (workspace path: {a.relative_path}; "
            f"absolute path: {(workspace / a.relative_path).as_posix()})"
            for index, a in enumerate(attachments, start=1)
        ]
        prompt += "\n\nAttachments:\n" + "\n".join(lines)
    return prompt


def infer_title(content: str) -> str:
    if len(content) > TITLE_PREVIEW_LENGTH:
        return f"{content[:TITLE_PREVIEW_LENGTH].strip()}…"
    return content


class _TurnState:
    """Snapshot aggregation for the assistant message being streamed."""

    def __init__(self, session: SessionRecord, responder: Responder) -> None:
        self.session = session
        self.responder = responder
        self.temporary_id = f"temp-{uuid.uuid4()}"
        self.created_at = datetime.now(timezone.utc)
        # dicts keep first-insertion order while values are overwritten
        self.items: dict[str, dict] = {}
        self.completed: dict[str, dict] = {}
        self.assistant_text = ""
        self._delta_text = ""
        self._text_from_items = False
        self.usage: Usage | None = None
        self.error: Exception | None = None
        self.response_observed = False

    @property
    def has_content(self) -> bool:
        return bool(self.assistant_text.strip()) or bool(self.completed)

    def apply_item(self, item: dict, completed: bool) -> None:
        item_id = item.get("id")
        if not item_id:
            return
        self.items[item_id] = item
        if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
            self.assistant_text = item["text"]
            self._text_from_items = True
        if completed:
            self.completed[item_id] = item
            if item.get("type") == "agent_message":
                self.response_observed = True

    def apply_delta(self, delta: str) -> None:
        self._delta_text += delta
        if not self._text_from_items:
            self.assistant_text = self._delta_text

    def apply_response(self, text: str) -> None:
        if text:
            self.assistant_text = text
        self.response_observed = True

    def snapshot(self) -> dict:
        return {
            "type": "assistant_message_snapshot",
            "message": {
                "id": self.temporary_id,
                "role": MessageRole.ASSISTANT.value,
                "content": self.assistant_text,
                "createdAt": self.created_at.isoformat(),
                "attachments": [],
                "items": list(self.items.values()),
                "responderProvider": self.responder.provider,
                "responderModel": self.responder.model,
                "responderReasoningEffort": self.responder.reasoning_effort,
            },
        }


class _StreamDebugLog:
    """Appends every written line to a per-session file inside the workspace."""

    def __init__(self, path: Path, session_id: str) -> None:
        self._path = path
        self._session_id = session_id
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, entry: dict) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(f"[{stamp}] {self._session_id} {json.dumps(entry, default=str)}\n")
        except OSError:
            logger.warning("Failed to write stream debug log %s", self._path, exc_info=True)


async def _pull(iterator: EventStream):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class TurnService:
    """Runs agent turns for HTTP clients and persists their outcome."""

    def __init__(
        self,
        session_repo: SessionRepo,
        message_repo: MessageRepo,
        agents: AgentRegistry,
        meta_provider: Callable[[], AgentMeta],
        workspace_root: Path,
        stream_config: StreamConfig | None = None,
    ) -> None:
        self._sessions = session_repo
        self._messages = message_repo
        self._agents = agents
        self._meta_provider = meta_provider
        self._workspace_root = workspace_root
        self._stream_config = stream_config or StreamConfig()
        self._running: set[asyncio.Task] = set()

    async def prepare_turn(self, session: SessionRecord, request: TurnRequest) -> PreparedTurn:
        """Validate input, store the user message and build the agent prompt."""
        validate_request(request)

        workspace = ensure_workspace_directory(self._workspace_root, session)
        attachments = save_attachments(
            workspace, list(request.attachments), max_size=MAX_ATTACHMENT_SIZE_BYTES,
        )

        content = request.content.strip()
        stored_content = content or ("(Image attachment)" if attachments else "")
        user_message = await self._messages.add(
            str(session.id), MessageRole.USER, stored_content, attachments,
        )

        if not session.title_locked and session.has_default_title and stored_content:
            updated = await self._sessions.update_title(str(session.id), infer_title(stored_content))
            if updated:
                session = updated

        user_request = content or (
            "The user provided image attachments." if attachments else ""
        )
        return PreparedTurn(
            session=session,
            user_message=user_message,
            prompt=build_prompt(workspace, user_request, attachments),
            meta=self._meta_provider(),
            workspace=workspace,
            env=request.env,
        )

    async def execute(
        self,
        turn: PreparedTurn,
        write: Writer,
        cancelled: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Run a prepared turn, writing NDJSON-ready dicts. Always ends with ``done``."""
        debug_log = None
        if self._stream_config.debug_log:
            debug_log = _StreamDebugLog(
                turn.workspace / ".turnstream" / "logs"
                / f"{turn.session.id}-stream-debug.log",
                str(turn.session.id),
            )

        def emit(entry: dict) -> None:
            if debug_log is not None:
                debug_log.append(entry)
            write(entry)

        try:
            return await self._execute(turn, emit, cancelled or asyncio.Event())
        except Exception as e:
            logger.exception("Turn failed for session %s", turn.session.id)
            emit({"type": "error", "message": str(e) or type(e).__name__})
            return TurnOutcome(session=turn.session, error=e)
        finally:
            emit({"type": "done"})

    async def _execute(
        self, turn: PreparedTurn, write: Writer, cancelled: asyncio.Event
    ) -> TurnOutcome:
        backend = self._agents.get(turn.meta.provider)
        responder = Responder(
            provider=turn.meta.provider.value,
            model=turn.meta.model or None,
            reasoning_effort=turn.meta.reasoning_effort or None,
        )
        state = _TurnState(turn.session, responder)

        write({"type": "user_message", "message": turn.user_message.to_response()})
        write(state.snapshot())

        events: EventStream | None = None
        try:
            events = await backend.run_turn_streamed(
                turn.session, turn.prompt, RunOptions(env=turn.env),
            )
            await self._consume(events, state, write, cancelled)
        except Exception as e:
            logger.warning("Agent turn for session %s failed to run: %s", turn.session.id, e)
            state.error = e
        finally:
            if events is not None:
                await self._close_stream(events)

        return await self._finish(backend, state, write, cancelled.is_set())

    async def _consume(
        self,
        events: EventStream,
        state: _TurnState,
        write: Writer,
        cancelled: asyncio.Event,
    ) -> None:
        base_timeout = self._stream_config.event_timeout
        post_response_timeout = self._stream_config.resolved_post_response_timeout

        while not cancelled.is_set():
            timeout = post_response_timeout if state.response_observed else base_timeout
            result = await self._next_event(events, cancelled, timeout)

            if result is _CANCELLED:
                logger.info("Client cancelled turn for session %s", state.session.id)
                break
            if result is _TIMEOUT:
                if state.response_observed:
                    # Quiet after a response counts as the end of the turn
                    break
                state.error = StallTimeout(
                    f"Agent stream stalled after {base_timeout:g}s without new events."
                )
                logger.warning("Stall in session %s: %s", state.session.id, state.error)
                break
            if result is _END:
                break

            event = result
            if isinstance(event, ThreadStarted):
                await self._record_thread_id(state, event.thread_id)
            elif isinstance(event, (ItemStarted, ItemUpdated, ItemCompleted)):
                state.apply_item(event.item, completed=isinstance(event, ItemCompleted))
                write(state.snapshot())
            elif isinstance(event, TurnCompleted):
                state.usage = event.usage
                state.response_observed = True
            elif isinstance(event, TurnFailed):
                state.error = AgentExecutionFailed(event.message or "Agent turn failed")
                break
            elif isinstance(event, StreamError):
                state.error = AgentExecutionFailed(event.message or "Agent stream error")
                break
            elif isinstance(event, TextDelta):
                state.apply_delta(event.delta)
                write(state.snapshot())
            elif isinstance(event, ResponseCompleted):
                state.apply_response(event.text)
                write(state.snapshot())
            else:
                write(event.to_dict())

    async def _next_event(self, events: EventStream, cancelled: asyncio.Event, timeout: float):
        """Race the next event against the liveness timer and client cancellation."""
        next_task = asyncio.ensure_future(_pull(events))
        cancel_task = asyncio.ensure_future(cancelled.wait())
        try:
            done, _pending = await asyncio.wait(
                {next_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            next_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if next_task in done:
            return next_task.result()

        next_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await next_task
        return _CANCELLED if cancelled.is_set() else _TIMEOUT

    async def _close_stream(self, events: EventStream) -> None:
        try:
            await events.aclose()
        except Exception:
            logger.warning("Failed to stop agent event stream", exc_info=True)

    async def _record_thread_id(self, state: _TurnState, thread_id: str) -> None:
        if not thread_id or thread_id == state.session.thread_id:
            return
        updated = await self._sessions.update_thread_id(str(state.session.id), thread_id)
        state.session = updated or state.session.with_thread_id(thread_id)

    async def _finish(
        self,
        backend: AgentBackend,
        state: _TurnState,
        write: Writer,
        cancelled: bool,
    ) -> TurnOutcome:
        session_id = str(state.session.id)

        if state.error is not None:
            # Never resume a session whose last turn broke
            backend.forget_session(session_id)
            if state.session.thread_id:
                updated = await self._sessions.update_thread_id(session_id, None)
                state.session = updated or state.session.with_thread_id(None)

        if not state.has_content and (state.error is not None or cancelled):
            if state.error is not None:
                write({
                    "type": "error",
                    "message": str(state.error),
                    "temporaryId": state.temporary_id,
                })
            return TurnOutcome(
                session=state.session, usage=state.usage, error=state.error, cancelled=cancelled,
            )

        message = await self._messages.add(
            session_id,
            MessageRole.ASSISTANT,
            state.assistant_text,
            [],
            list(state.completed.values()),
            state.responder,
        )
        latest = await self._sessions.touch(session_id) or state.session

        write({
            "type": "assistant_message_final",
            "temporaryId": state.temporary_id,
            "message": message.to_response(),
            "session": latest.to_response(),
            "usage": state.usage.to_dict() if state.usage else None,
        })

        if state.error is not None:
            write({
                "type": "error",
                "message": str(state.error),
                "temporaryId": state.temporary_id,
            })

        return TurnOutcome(
            message=message,
            session=latest,
            usage=state.usage,
            error=state.error,
            cancelled=cancelled,
        )

    async def stream_turn(self, turn: PreparedTurn) -> AsyncIterator[bytes]:
        """NDJSON body for an HTTP response.

        The turn runs in its own task so it still persists its result when
        the client goes away; leaving this iterator early cancels the turn.
        """
        queue: asyncio.Queue = asyncio.Queue()
        cancelled = asyncio.Event()
        task = asyncio.create_task(self.execute(turn, queue.put_nowait, cancelled))
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        task.add_done_callback(lambda _t: queue.put_nowait(_END))

        finished = False
        try:
            while True:
                entry = await queue.get()
                if entry is _END:
                    finished = True
                    break
                yield (json.dumps(entry, default=str) + "\n").encode()
        finally:
            if not finished:
                logger.info("Client left session %s mid-turn, cancelling", turn.session.id)
                cancelled.set()

    async def wait_idle(self) -> None:
        """Wait for turns whose clients disconnected to finish persisting."""
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

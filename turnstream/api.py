"""FastAPI surface: sessions, streamed turns, titles and agent settings."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Header, HTTPException
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from turnstream.context import AppContext
from turnstream.infra.workspaces import ensure_workspace_directory
from turnstream.models.message import AttachmentInput
from turnstream.models.session import DEFAULT_SESSION_TITLE, SessionRecord
from turnstream.services.turn_service import TurnRequest

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
DEFAULT_USER_ID = "local"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateSessionRequest(_CamelModel):
    title: str | None = None


class UpdateSessionRequest(_CamelModel):
    title: str | None = None
    title_locked: bool | None = Field(default=None, alias="titleLocked")


class AttachmentPayload(_CamelModel):
    filename: str
    mime_type: str = Field(alias="mimeType")
    size: int
    base64: str


class PostMessageRequest(_CamelModel):
    content: str = ""
    attachments: list[AttachmentPayload] = Field(default_factory=list)


class UpdateMetaRequest(_CamelModel):
    provider: str | None = None
    model: str | None = None
    reasoning_effort: str | None = Field(default=None, alias="reasoningEffort")


def _build_router(ctx: AppContext) -> APIRouter:
    router = APIRouter(prefix="/api")

    async def load_session(session_id: str, user_id: str) -> SessionRecord:
        session = await ctx.session_repo.find_by_id(session_id)
        if session is None or session.user_id != user_id:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @router.get("/health")
    async def health():
        database = await ctx.mongo.ping()
        return {"status": "ok" if database else "degraded", "database": database}

    @router.get("/sessions")
    async def list_sessions(x_user_id: str = Header(default=DEFAULT_USER_ID)):
        sessions = await ctx.session_repo.list_by_user(x_user_id)
        return {"sessions": [s.to_response() for s in sessions]}

    @router.post("/sessions", status_code=201)
    async def create_session(
        body: CreateSessionRequest | None = None,
        x_user_id: str = Header(default=DEFAULT_USER_ID),
    ):
        title = (body.title or "").strip() if body else ""
        session = await ctx.session_repo.insert(
            SessionRecord(user_id=x_user_id, title=title or DEFAULT_SESSION_TITLE)
        )
        workspace = ensure_workspace_directory(ctx.config.resolved_workspace_root, session)
        session = await ctx.session_repo.update_workspace_path(session.id, str(workspace)) or session
        logger.info("Created session %s for user %s", session.id, x_user_id)
        return {"session": session.to_response()}

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str, x_user_id: str = Header(default=DEFAULT_USER_ID)):
        session = await load_session(session_id, x_user_id)
        return {"session": session.to_response()}

    @router.patch("/sessions/{session_id}")
    async def update_session(
        session_id: str,
        body: UpdateSessionRequest,
        x_user_id: str = Header(default=DEFAULT_USER_ID),
    ):
        session = await load_session(session_id, x_user_id)
        if body.title is not None:
            title = body.title.strip()
            if not title:
                raise HTTPException(status_code=400, detail="Title must not be empty")
            session = await ctx.session_repo.update_title(session_id, title) or session
        if body.title_locked is not None:
            session = await ctx.session_repo.update_title_locked(session_id, body.title_locked) or session
        return {"session": session.to_response()}

    @router.get("/sessions/{session_id}/messages")
    async def list_messages(session_id: str, x_user_id: str = Header(default=DEFAULT_USER_ID)):
        await load_session(session_id, x_user_id)
        messages = await ctx.message_repo.list_by_session(session_id)
        return {"messages": [m.to_response() for m in messages]}

    @router.post("/sessions/{session_id}/messages")
    async def post_message(
        session_id: str,
        body: PostMessageRequest,
        x_user_id: str = Header(default=DEFAULT_USER_ID),
    ):
        session = await load_session(session_id, x_user_id)
        request = TurnRequest(
            content=body.content,
            attachments=tuple(
                AttachmentInput(
                    filename=a.filename,
                    mime_type=a.mime_type,
                    size=a.size,
                    base64=a.base64,
                )
                for a in body.attachments
            ),
        )
        try:
            turn = await ctx.turn_service.prepare_turn(session, request)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        return StreamingResponse(
            ctx.turn_service.stream_turn(turn),
            status_code=201,
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache"},
        )

    @router.get("/sessions/{session_id}/attachments/{attachment_id}")
    async def get_attachment(
        session_id: str,
        attachment_id: str,
        x_user_id: str = Header(default=DEFAULT_USER_ID),
    ):
        session = await load_session(session_id, x_user_id)
        attachment = await ctx.message_repo.find_attachment(session_id, attachment_id)
        if attachment is None:
            raise HTTPException(status_code=404, detail="Attachment not found")

        workspace = ensure_workspace_directory(ctx.config.resolved_workspace_root, session)
        path = (workspace / attachment.relative_path).resolve()
        if not path.is_relative_to(workspace) or not path.is_file():
            raise HTTPException(status_code=404, detail="Attachment not found")
        return FileResponse(path, media_type=attachment.mime_type, filename=attachment.filename)

    @router.post("/sessions/{session_id}/title/auto")
    async def auto_title(session_id: str, x_user_id: str = Header(default=DEFAULT_USER_ID)):
        await load_session(session_id, x_user_id)
        session = await ctx.title_service.update_title_from_messages(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session": session.to_response()}

    @router.get("/meta")
    async def get_meta():
        return ctx.settings_service.current.to_dict()

    @router.patch("/meta")
    async def update_meta(body: UpdateMetaRequest):
        try:
            update = await ctx.settings_service.update(
                provider=body.provider,
                model=body.model,
                reasoning_effort=body.reasoning_effort,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {**update.meta.to_dict(), "sessionsReset": update.invalidates_sessions}

    return router


def create_app(ctx: AppContext | None = None, manage_lifecycle: bool = True) -> FastAPI:
    """Build the FastAPI app around an AppContext.

    With ``manage_lifecycle`` the app opens the context on startup and
    closes it (after in-flight turns settle) on shutdown.
    """
    ctx = ctx or AppContext()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if manage_lifecycle:
            await ctx.initialize()
        try:
            yield
        finally:
            if manage_lifecycle:
                await ctx.close()

    app = FastAPI(title="turnstream", lifespan=lifespan)
    app.state.ctx = ctx
    app.include_router(_build_router(ctx))
    return app

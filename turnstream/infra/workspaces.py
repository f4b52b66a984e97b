"""Session workspace directories and attachment files."""

from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from pathlib import Path

from turnstream.models.message import AttachmentInput, AttachmentRecord
from turnstream.models.session import SessionRecord

logger = logging.getLogger(__name__)

ATTACHMENTS_DIR = "attachments"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def ensure_workspace_directory(root: Path, session: SessionRecord) -> Path:
    """Return the session's workspace, creating it on first use.

    A workspace path stored on the session wins over the default
    ``<root>/<session id>`` location.
    """
    if session.workspace_path:
        path = Path(session.workspace_path).expanduser()
    else:
        path = root / str(session.id)
    path.mkdir(parents=True, exist_ok=True)
    return path.resolve()


def _safe_filename(filename: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(filename).name).strip("._")
    return name or "attachment"


def save_attachments(
    workspace: Path, attachments: list[AttachmentInput], max_size: int | None = None
) -> list[AttachmentRecord]:
    """Decode uploaded attachments into ``<workspace>/attachments``.

    Every attachment is decoded and size-checked before any file is written,
    so a ValueError leaves the workspace untouched.
    """
    if not attachments:
        return []

    decoded: list[tuple[AttachmentInput, bytes]] = []
    for attachment in attachments:
        try:
            data = base64.b64decode(attachment.base64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Attachment {attachment.filename} is not valid base64") from e
        if max_size is not None and len(data) > max_size:
            limit_mb = max_size // (1024 * 1024)
            raise ValueError(f"Attachment {attachment.filename} exceeds the {limit_mb}MB size limit")
        decoded.append((attachment, data))

    target_dir = workspace / ATTACHMENTS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)

    records = []
    for attachment, data in decoded:
        attachment_id = uuid.uuid4().hex
        filename = f"{attachment_id[:8]}-{_safe_filename(attachment.filename)}"
        (target_dir / filename).write_bytes(data)
        records.append(
            AttachmentRecord(
                id=attachment_id,
                filename=attachment.filename,
                mime_type=attachment.mime_type,
                size=len(data),
                relative_path=f"{ATTACHMENTS_DIR}/{filename}",
            )
        )
        logger.debug("Saved attachment %s to %s", attachment.filename, filename)
    return records

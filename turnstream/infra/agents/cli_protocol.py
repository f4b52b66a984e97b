"""Line protocol helpers for agent CLIs that print one JSON record per line."""

from __future__ import annotations

import json

FAILURE_TYPES = frozenset({"error", "exception", "failure"})


def parse_record(line: str) -> dict | None:
    """Parse one stdout line.

    Returns None for blank lines and for JSON that is not an object.
    Raises ValueError for malformed JSON.
    """
    stripped = line.strip()
    if not stripped:
        return None
    parsed = json.loads(stripped)
    return parsed if isinstance(parsed, dict) else None


def _non_empty(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_present(record: dict, *keys: str) -> object:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def extract_session_id(record: dict) -> str | None:
    """Best-effort resumable session id from an arbitrary record.

    Looks at top-level ``session_id``/``sessionId``/``thread_id``/``threadId``,
    then a nested ``session`` object, then the record's own ``id`` when its
    ``type`` mentions "session".
    """
    direct = _non_empty(_first_present(record, "session_id", "sessionId", "thread_id", "threadId"))
    if direct:
        return direct

    session = record.get("session")
    if isinstance(session, dict):
        nested = _non_empty(_first_present(session, "id", "session_id", "sessionId"))
        if nested:
            return nested

    record_type = record.get("type")
    if isinstance(record_type, str) and "session" in record_type.lower():
        return _non_empty(record.get("id"))

    return None


def record_type(record: dict) -> str:
    value = record.get("type")
    return value.lower() if isinstance(value, str) else ""


def assistant_text(record: dict) -> str | None:
    """Text carried by a message/response/result record, if any.

    ``message`` records only count when their role is assistant.
    """
    kind = record_type(record)
    text = record.get("text")
    if not isinstance(text, str):
        return None
    if kind == "message":
        role = record.get("role")
        return text if isinstance(role, str) and role.lower() == "assistant" else None
    if kind in ("response", "result"):
        return text
    return None

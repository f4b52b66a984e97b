"""RemoteClient: talks to a running turnstream server over HTTP."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

logger = logging.getLogger(__name__)

# Turns can stay silent for minutes while the agent works
STREAM_READ_TIMEOUT = 600.0


class RemoteClient:
    """Thin async wrapper around the server's JSON and NDJSON routes."""

    def __init__(
        self,
        base_url: str,
        user_id: str = "local",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-User-Id": user_id},
            timeout=httpx.Timeout(30.0, read=STREAM_READ_TIMEOUT),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RemoteClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            raise RuntimeError(f"{method} {path} failed ({response.status_code}): {_detail(response)}")
        return response.json()

    async def create_session(self, title: str = "") -> dict:
        data = await self._json("POST", "/api/sessions", json={"title": title or None})
        return data["session"]

    async def list_sessions(self) -> list[dict]:
        data = await self._json("GET", "/api/sessions")
        return data["sessions"]

    async def get_meta(self) -> dict:
        return await self._json("GET", "/api/meta")

    async def update_meta(self, **changes: str) -> dict:
        return await self._json("PATCH", "/api/meta", json=changes)

    async def auto_title(self, session_id: str) -> dict:
        data = await self._json("POST", f"/api/sessions/{session_id}/title/auto")
        return data["session"]

    async def send_message(self, session_id: str, content: str) -> AsyncIterator[dict]:
        """Post a message and yield each NDJSON line of the turn as a dict."""
        async with self._client.stream(
            "POST", f"/api/sessions/{session_id}/messages", json={"content": content},
        ) as response:
            if response.is_error:
                await response.aread()
                raise RuntimeError(f"Turn rejected ({response.status_code}): {_detail(response)}")
            async for line in response.aiter_lines():
                if line.strip():
                    yield json.loads(line)


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text

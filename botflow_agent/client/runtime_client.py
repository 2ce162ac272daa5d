"""Async client for the conversation runtime (Engagement API).

Used by the post-deploy health probe to open an anonymous session against
a deployed widget and read the bot's opening messages.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from botflow_agent.agent.ports import RuntimeMessage, RuntimeSession, SessionRuntime

logger = logging.getLogger("botflow_agent.client.runtime")


class RuntimeClient(SessionRuntime):
    def __init__(self, endpoint: str, timeout: float = 30.0) -> None:
        self._client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict | None = None, token: str | None = None) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            r = await self._client.post(path, json=payload or {}, headers=headers)
            r.raise_for_status()
            return r.json() if r.text.strip() else {"success": True}
        except httpx.HTTPStatusError as e:
            logger.error("POST %s -> %s", path, e.response.status_code)
            return {"error": f"HTTP {e.response.status_code}", "detail": e.response.text}
        except Exception as e:
            logger.error("POST %s failed: %s", path, e)
            return {"error": str(e) or type(e).__name__}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(self, widget_id: str) -> RuntimeSession | dict:
        data = await self._post("/messaging/v1/consumers/anonymous_session", {
            "app_id": widget_id,
            "app_type": "consumer",
            "device_id": f"botflow-health-{int(time.time() * 1000)}",
            "device_type": "web",
            "platform": "Mac OS X",
            "browser_language": "en-US",
            "user_browser": "botflow health probe",
        })
        if "error" in data:
            return data
        if not data.get("chat_id") or not data.get("access_token"):
            return {"error": "anonymous_session response missing chat_id/access_token"}
        return RuntimeSession(
            chat_id=str(data["chat_id"]),
            user_id=str(data.get("id", "")),
            access_token=data["access_token"],
            pype_id=data.get("web_chat_pype_id"),
            stream_id=data.get("web_chat_stream_id"),
        )

    async def start_conversation(self, session: RuntimeSession, widget_id: str) -> dict:
        return await self._post(
            f"/messaging/v1/chats/{session.chat_id}/start",
            {
                "app_id": widget_id,
                "consumer": f"consumer_{session.user_id}",
                "gateway": "pypestream_widget",
                "pype_id": session.pype_id,
                "stream_id": session.stream_id,
                "user_id": session.user_id,
                "version": "1",
            },
            token=session.access_token,
        )

    async def snapshot(self, session: RuntimeSession) -> list[RuntimeMessage] | dict:
        data = await self._post(
            f"/messaging/v1/chats/{session.chat_id}/snapshot", {}, token=session.access_token
        )
        if "error" in data:
            return data
        raw = (data.get("result") or {}).get("messages") or []
        return [
            RuntimeMessage(
                text=str(m.get("msg") or m.get("message") or ""),
                from_bot=m.get("side") == "bot" or m.get("type") == "bot",
            )
            for m in raw
            if isinstance(m, dict)
        ]

    async def end_conversation(self, session: RuntimeSession) -> dict:
        return await self._post(
            f"/messaging/v1/chats/{session.chat_id}/end", {}, token=session.access_token
        )

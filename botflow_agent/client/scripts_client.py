"""Async client for the remote action-script store."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from botflow_agent.agent.ports import ScriptSource

logger = logging.getLogger("botflow_agent.client.scripts")


class ScriptFetchError(Exception):
    """The script store could not answer (as opposed to not having the script)."""


class ScriptStoreClient(ScriptSource):
    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 15.0) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> Any:
        try:
            r = await self._client.get(path)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as e:
            logger.error("GET %s -> %s", path, e.response.status_code)
            return {"error": f"HTTP {e.response.status_code}", "status_code": e.response.status_code}
        except Exception as e:
            logger.error("GET %s failed: %s", path, e)
            return {"error": str(e) or type(e).__name__}

    async def fetch_script(self, name: str) -> str | None:
        data = await self._get(f"/{quote(name, safe='')}")
        if data.get("status_code") == 404:
            return None
        if "error" in data:
            raise ScriptFetchError(f"{name}: {data['error']}")
        script = data.get("script") or {}
        content = script.get("content") if isinstance(script, dict) else None
        return content or None

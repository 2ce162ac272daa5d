"""Best-effort flow export.

WebhookExporter POSTs the final CSV to a configured URL (a spreadsheet
bridge, a document store) and returns whatever links the receiver reports.
Exporters may raise; the pipeline records failures as warnings.
"""

from __future__ import annotations

import logging
import time

import httpx

from botflow_agent.agent.ports import Exporter

logger = logging.getLogger("botflow_agent.agent.export")


class ExportError(Exception):
    pass


class NullExporter(Exporter):
    """Used when no export target is configured."""

    async def export(self, graph_text: str, bot_id: str) -> dict[str, str]:
        return {}


class WebhookExporter(Exporter):
    def __init__(self, url: str, timeout: float = 30.0) -> None:
        self.url = url
        self.timeout = timeout

    async def export(self, graph_text: str, bot_id: str) -> dict[str, str]:
        payload = {
            "bot_id": bot_id,
            "filename": f"{bot_id.replace('.', '_')}_{int(time.time())}.csv",
            "content_type": "text/csv",
            "content": graph_text,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(self.url, json=payload)
                r.raise_for_status()
                data = r.json() if r.text.strip() else {}
        except httpx.HTTPStatusError as e:
            raise ExportError(f"export webhook returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ExportError(f"export webhook unreachable: {e}") from e

        links = data.get("links") if isinstance(data, dict) else None
        if isinstance(links, dict):
            result = {str(k): str(v) for k, v in links.items() if v}
        elif isinstance(data, dict) and data.get("url"):
            result = {"export": str(data["url"])}
        else:
            result = {}
        logger.info("Exported %s (%d link(s))", bot_id, len(result))
        return result

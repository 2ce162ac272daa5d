"""Async Bot Manager gateway client (validate, upload/deploy, channel + widget)."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from botflow_agent.agent.ports import (
    DeployOutcome,
    FlowDeployer,
    FlowValidator,
    ValidationOutcome,
    WidgetOutcome,
)
from botflow_agent.client.config import Settings
from botflow_agent.learning.signatures import ValidationError

logger = logging.getLogger("botflow_agent.client.botmanager")

_AUTH_TEXT = re.compile(r"invalid or expired|token (has )?expired|unauthori[sz]ed|invalid token", re.IGNORECASE)

AUTH_ERROR_MESSAGE = "API token is invalid or expired. Provide a fresh Bot Manager token and retry."


def is_auth_failure(body: dict[str, Any]) -> bool:
    """True when a gateway response describes a credential problem rather than a flow problem."""
    if body.get("authError"):
        return True
    if body.get("status_code") in (401, 403):
        return True
    message = str(body.get("error") or body.get("message") or "")
    return bool(_AUTH_TEXT.search(message))


class BotManagerClient(FlowValidator, FlowDeployer):
    """Thin async wrapper around the Bot Manager gateway."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.botmanager_endpoint,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: dict) -> dict[str, Any]:
        """POST and return the JSON body.

        Unlike a plain raise_for_status() the body of a 4xx is kept: the
        gateway reports validation errors and auth failures in it.
        Transport failures come back as ``{"error": ..., "transport_error": True}``.
        """
        try:
            r = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error("POST %s failed: %s", path, e)
            return {"error": str(e) or type(e).__name__, "transport_error": True}

        try:
            body = r.json() if r.text.strip() else {}
        except ValueError:
            body = {"error": r.text[:500]}
        if not isinstance(body, dict):
            body = {"result": body}
        if r.is_error:
            logger.error("POST %s -> %s", path, r.status_code)
            body.setdefault("error", f"HTTP {r.status_code}")
            body["status_code"] = r.status_code
        return body

    # ==================================================================
    # VALIDATE
    # ==================================================================

    async def validate(self, graph_text: str, bot_id: str) -> ValidationOutcome:
        body = await self._post("/validate", {
            "csv": graph_text,
            "botId": bot_id,
            "token": self._settings.api_token,
        })
        if is_auth_failure(body):
            return ValidationOutcome(valid=False, auth_error=True)
        errors = ValidationError.from_payloads(body.get("errors"))
        if body.get("transport_error") or (body.get("status_code", 0) >= 500 and not errors):
            return ValidationOutcome(valid=False, transport_error=str(body.get("error")))
        if body.get("valid") and not errors:
            return ValidationOutcome(valid=True, version_id=_str(body.get("versionId")))
        if not errors:
            errors = [ValidationError(description=str(body.get("error") or body.get("message") or "Validation failed"))]
        return ValidationOutcome(valid=False, errors=errors, version_id=_str(body.get("versionId")))

    # ==================================================================
    # DEPLOY
    # ==================================================================

    async def deploy(
        self,
        graph_text: str,
        bot_id: str,
        environment: str,
        scripts: dict[str, str],
    ) -> DeployOutcome:
        body = await self._post("/upload", {
            "csv": graph_text,
            "botId": bot_id,
            "token": self._settings.api_token,
            "scripts": [{"name": name, "content": content} for name, content in scripts.items()],
            "environment": environment,
        })
        if is_auth_failure(body):
            return DeployOutcome(success=False, auth_error=True, message=AUTH_ERROR_MESSAGE)

        errors = ValidationError.from_payloads(body.get("errors"))
        deploy_result = body.get("deployResult") or {}
        if body.get("success") and deploy_result.get("success", True) is not False:
            return DeployOutcome(
                success=True,
                version_id=_str(body.get("versionId")),
                preview_url=body.get("previewUrl"),
                message=str(body.get("message") or "Deployed"),
            )
        message = (
            deploy_result.get("error")
            or body.get("error")
            or body.get("message")
            or "Upload failed"
        )
        return DeployOutcome(
            success=False,
            version_id=_str(body.get("versionId")),
            errors=errors,
            message=str(message),
        )

    # ==================================================================
    # CHANNEL + WIDGET
    # ==================================================================

    async def create_widget(self, bot_id: str, environment: str, widget_name: str | None = None) -> WidgetOutcome:
        body = await self._post("/create-channel", {
            "botId": bot_id,
            "environment": environment,
            "token": self._settings.api_token,
            "widgetName": widget_name or f"{bot_id} Widget",
        })
        if body.get("success") and body.get("widgetId"):
            return WidgetOutcome(
                success=True,
                widget_id=str(body["widgetId"]),
                widget_url=body.get("widgetUrl"),
            )
        return WidgetOutcome(success=False, error=str(body.get("error") or "Channel creation failed"))


def _str(value: Any) -> str | None:
    return None if value is None else str(value)

"""PipelineSettings, phase metrics and the webhook exporter."""

from __future__ import annotations

import json

import httpx
import pytest

from botflow_agent.agent.export import ExportError, NullExporter, WebhookExporter
from botflow_agent.agent.metrics import MetricsCollector, format_phase_table, skipped_phase
from botflow_agent.agent.settings import PipelineSettings


# ---------------------------------------------------------------------------
# PipelineSettings
# ---------------------------------------------------------------------------


class TestPipelineSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("REFINE_MAX_ATTEMPTS", raising=False)
        s = PipelineSettings()
        assert s.refine_max_attempts == 5
        assert s.proven_min_confidence == 0.7
        assert s.proven_min_applied == 3
        assert s.known_min_confidence == 0.5

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REFINE_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("LEARNING_BACKEND", " Memory ")
        monkeypatch.setenv("DEPLOY_ENVIRONMENT", "PRODUCTION")
        s = PipelineSettings.from_env()
        assert s.refine_max_attempts == 3
        assert s.learning_backend == "memory"
        assert s.deploy_environment == "production"

    def test_probabilities_clamped(self, monkeypatch):
        monkeypatch.setenv("LEARNING_BACKOFF_ATTEMPT_PROBABILITY", "1.7")
        assert PipelineSettings().backoff_attempt_probability == 1.0


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    @pytest.mark.asyncio
    async def test_collector_ok(self):
        async with MetricsCollector("generate") as m:
            m.input_tokens = 10
        assert m.result.status == "ok"
        assert m.result.input_tokens == 10
        assert m.result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_collector_marks_failure_and_reraises(self):
        m = MetricsCollector("deploy")
        with pytest.raises(RuntimeError):
            async with m:
                raise RuntimeError("boom")
        assert m.result.status == "failed"

    def test_phase_table(self):
        table = format_phase_table([skipped_phase("generate", "reused cached generation")])
        assert "generate" in table
        assert "skipped" in table
        assert table.splitlines()[-1].startswith("total")


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _patch_transport(monkeypatch, handler) -> None:
    real = httpx.AsyncClient
    monkeypatch.setattr(
        "botflow_agent.agent.export.httpx.AsyncClient",
        lambda **kwargs: real(transport=httpx.MockTransport(handler), **kwargs),
    )


class TestWebhookExporter:
    @pytest.mark.asyncio
    async def test_links_returned(self, monkeypatch):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"links": {"sheet": "https://sheets.test/1", "empty": ""}})

        _patch_transport(monkeypatch, handler)
        links = await WebhookExporter("https://export.test/hook").export("Node Number\n1\n", "Acme.Bot")
        assert links == {"sheet": "https://sheets.test/1"}
        assert seen["body"]["bot_id"] == "Acme.Bot"
        assert seen["body"]["filename"].startswith("Acme_Bot_")
        assert seen["body"]["content"] == "Node Number\n1\n"

    @pytest.mark.asyncio
    async def test_single_url(self, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={"url": "https://docs.test/x"}))
        assert await WebhookExporter("https://export.test/hook").export("x", "Acme.Bot") == {"export": "https://docs.test/x"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self, monkeypatch):
        _patch_transport(monkeypatch, lambda request: httpx.Response(500))
        with pytest.raises(ExportError, match="HTTP 500"):
            await WebhookExporter("https://export.test/hook").export("x", "Acme.Bot")

    @pytest.mark.asyncio
    async def test_null_exporter(self):
        assert await NullExporter().export("x", "Acme.Bot") == {}

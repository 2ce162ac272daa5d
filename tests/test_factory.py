"""Orchestrator wiring from configuration."""

from __future__ import annotations

import pytest

from botflow_agent.agent.export import NullExporter, WebhookExporter
from botflow_agent.agent.factory import create_fix_store, create_orchestrator
from botflow_agent.agent.settings import PipelineSettings
from botflow_agent.client.botmanager_client import BotManagerClient
from botflow_agent.client.config import Settings
from botflow_agent.learning.store import HttpFixStore, InMemoryFixStore, SqliteFixStore
from botflow_agent.reasoning import EngineResponse, ReasoningEngine


class IdleEngine(ReasoningEngine):
    async def complete(self, messages, system=None, temperature=0.2, max_tokens=16000):
        return EngineResponse(content="")

    @property
    def model_id(self) -> str:
        return "idle/test"


_SETTINGS = Settings(api_token="bm-test-token-0123456789abcdef", learning_endpoint="http://learn.test")


class TestFixStoreSelection:
    @pytest.mark.asyncio
    async def test_memory(self):
        store = await create_fix_store(_SETTINGS, PipelineSettings(learning_backend="memory"))
        assert isinstance(store, InMemoryFixStore)

    @pytest.mark.asyncio
    async def test_sqlite(self, tmp_path):
        store = await create_fix_store(
            _SETTINGS,
            PipelineSettings(learning_backend="sqlite", learning_db_path=str(tmp_path / "fixes.db")),
        )
        assert isinstance(store, SqliteFixStore)
        await store.close()

    @pytest.mark.asyncio
    async def test_http(self):
        store = await create_fix_store(_SETTINGS, PipelineSettings(learning_backend="http"))
        assert isinstance(store, HttpFixStore)
        await store.close()

    @pytest.mark.asyncio
    async def test_http_requires_endpoint(self):
        with pytest.raises(ValueError, match="ERROR_LEARNING_ENDPOINT"):
            await create_fix_store(Settings(api_token="x"), PipelineSettings(learning_backend="http"))


@pytest.mark.asyncio
async def test_create_orchestrator_without_health():
    components = await create_orchestrator(
        settings=_SETTINGS,
        pipeline=PipelineSettings(learning_backend="memory"),
        engine=IdleEngine(),
        health_check=False,
    )
    orchestrator = components.orchestrator
    assert isinstance(orchestrator.validator, BotManagerClient)
    assert orchestrator.validator is orchestrator.deployer
    assert orchestrator.health is None
    assert isinstance(orchestrator.exporter, NullExporter)
    assert orchestrator.learning is components.learning
    await components.aclose()
    assert components.closers == []


@pytest.mark.asyncio
async def test_create_orchestrator_with_export_and_health():
    components = await create_orchestrator(
        settings=_SETTINGS,
        pipeline=PipelineSettings(learning_backend="memory", export_webhook_url="https://export.test/hook"),
        engine=IdleEngine(),
    )
    assert isinstance(components.orchestrator.exporter, WebhookExporter)
    assert components.orchestrator.health is not None
    await components.aclose()

"""Wire a PipelineOrchestrator from environment configuration.

Usage::

    components = await create_orchestrator()
    try:
        result = await components.orchestrator.run(BuildRequest(...))
    finally:
        await components.aclose()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from botflow_agent.agent.export import NullExporter, WebhookExporter
from botflow_agent.agent.generator import LLMFlowGenerator
from botflow_agent.agent.health import HealthProbe
from botflow_agent.agent.pipeline import PipelineOrchestrator
from botflow_agent.agent.scripts import ScriptResolver
from botflow_agent.agent.settings import PipelineSettings
from botflow_agent.client.botmanager_client import BotManagerClient
from botflow_agent.client.config import Settings
from botflow_agent.client.runtime_client import RuntimeClient
from botflow_agent.client.scripts_client import ScriptStoreClient
from botflow_agent.data.startup_scripts import default_registry
from botflow_agent.learning.client import LearningClient, shared_backoff
from botflow_agent.learning.store import FixStore, HttpFixStore, InMemoryFixStore, SqliteFixStore
from botflow_agent.reasoning import ReasoningEngine, ReasoningSettings, create_engine

logger = logging.getLogger("botflow_agent.agent.factory")

Closer = Callable[[], Awaitable[None]]


@dataclass
class AgentComponents:
    orchestrator: PipelineOrchestrator
    learning: LearningClient
    closers: list[Closer] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in reversed(self.closers):
            try:
                await close()
            except Exception as e:
                logger.warning("Error while closing %s: %s", getattr(close, "__qualname__", close), e)
        self.closers.clear()


async def create_fix_store(settings: Settings, pipeline: PipelineSettings) -> FixStore:
    """The fix repository selected by LEARNING_BACKEND."""
    match pipeline.learning_backend:
        case "http":
            if not settings.learning_endpoint:
                raise ValueError("LEARNING_BACKEND=http requires ERROR_LEARNING_ENDPOINT")
            return HttpFixStore(
                settings.learning_endpoint,
                api_key=settings.learning_api_key,
                timeout=pipeline.repository_timeout,
            )
        case "sqlite":
            return await SqliteFixStore.open(pipeline.learning_db_path)
        case _:
            return InMemoryFixStore()


async def create_learning_client(settings: Settings, pipeline: PipelineSettings) -> LearningClient:
    backoff = shared_backoff()
    backoff.threshold = pipeline.backoff_threshold
    backoff.attempt_probability = pipeline.backoff_attempt_probability
    store = await create_fix_store(settings, pipeline)
    logger.info("Error learning backend: %s", pipeline.learning_backend)
    return LearningClient(store, backoff=backoff, timeout=pipeline.repository_timeout)


async def create_orchestrator(
    settings: Settings | None = None,
    pipeline: PipelineSettings | None = None,
    reasoning: ReasoningSettings | None = None,
    engine: ReasoningEngine | None = None,
    health_check: bool = True,
) -> AgentComponents:
    """Build the orchestrator and every collaborator from configuration."""
    settings = settings or Settings.from_env()
    pipeline = pipeline or PipelineSettings.from_env()
    if engine is None:
        reasoning = reasoning or ReasoningSettings.from_env()
        engine = create_engine(reasoning)
        temperature = reasoning.temperature
    else:
        temperature = reasoning.temperature if reasoning else 0.2

    closers: list[Closer] = []
    learning = await create_learning_client(settings, pipeline)
    closers.append(learning.close)

    botmanager = BotManagerClient(settings)
    closers.append(botmanager.close)

    remote_scripts = None
    if settings.scripts_endpoint:
        remote_scripts = ScriptStoreClient(
            settings.scripts_endpoint, api_key=settings.api_token, timeout=pipeline.scripts_timeout
        )
        closers.append(remote_scripts.close)

    health = None
    if health_check:
        runtime = RuntimeClient(settings.engagement_for(pipeline.deploy_environment), timeout=pipeline.health_timeout)
        closers.append(runtime.close)
        health = HealthProbe(runtime, settle_seconds=pipeline.health_settle_seconds, timeout=pipeline.health_timeout)

    exporter = (
        WebhookExporter(pipeline.export_webhook_url, timeout=pipeline.export_timeout)
        if pipeline.export_webhook_url
        else NullExporter()
    )

    registry = default_registry()
    orchestrator = PipelineOrchestrator(
        generator=LLMFlowGenerator(engine, temperature=temperature),
        validator=botmanager,
        deployer=botmanager,
        api_token=settings.api_token,
        learning=learning,
        settings=pipeline,
        scripts=ScriptResolver(registry, remote=remote_scripts, timeout=pipeline.scripts_timeout),
        health=health,
        exporter=exporter,
        registry=registry,
    )
    logger.info("Orchestrator ready (engine=%s, environment=%s)", engine.model_id, pipeline.deploy_environment)
    return AgentComponents(orchestrator=orchestrator, learning=learning, closers=closers)

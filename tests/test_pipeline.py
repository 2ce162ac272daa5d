"""PipelineOrchestrator end-to-end tests with in-memory collaborators.

Tests:
- 40-node flow, over-length message on node 12 repaired by the generator on
  the second validation; build succeeds and the fix is recorded
- Progress is monotonic and ends at 100
- A deploy failure carries the cached generation; a retry skips generation
- Preflight rejects a bad token or bot id before any generation
- Auth failure at deploy is flagged and resumable
- Refine exhaustion still deploys, flagged for review
- A generator that raises during repair still deploys, flagged for review
- A learning service answering with unexpected JSON does not fail the build
- Widget, health and export problems become warnings
- Cancellation stops the run between phases
"""

from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from botflow_agent.agent.health import HealthResult
from botflow_agent.agent.pipeline import (
    BuildFailure,
    BuildRequest,
    BuildSuccess,
    Phase,
    PipelineOrchestrator,
    PipelineRun,
    check_deploy_token,
    extract_failed_rows,
    generate_bot_id,
    validate_bot_id,
)
from botflow_agent.agent.ports import DeployOutcome, GenerationResult, ValidationOutcome, WidgetOutcome
from botflow_agent.agent.settings import PipelineSettings
from botflow_agent.flow.model import parse_flow
from botflow_agent.learning.client import BackoffPolicy, LearningClient
from botflow_agent.learning.signatures import ValidationError
from botflow_agent.learning.store import FixStore, HttpFixStore, InMemoryFixStore


TOKEN = "bm-test-token-0123456789abcdef"
BOT_ID = "Acme.Bot"
LONG_MESSAGE = "Thanks for contacting Acme Dental. " * 8
LENGTH_ERROR = "Message exceeds the 200 character limit"
_HEADER = "Node Number,Node Type,Node Name,Message,Next Nodes\n"


def make_flow(n: int = 40, overrides: dict[int, str] | None = None) -> str:
    overrides = overrides or {}
    rows = [
        f"{num},D,Node {num},{overrides.get(num, f'Step {num}')},{num + 1 if num < n else ''}"
        for num in range(1, n + 1)
    ]
    return _HEADER + "\n".join(rows) + "\n"


def length_outcome(graph_text: str, bot_id: str) -> ValidationOutcome:
    errors = [
        ValidationError(LENGTH_ERROR, "Message", node.num)
        for node in parse_flow(graph_text)
        if len(node.get("Message")) > 200
    ]
    return ValidationOutcome(valid=not errors, errors=errors, version_id=None if errors else "v-1")


def shorten(graph_text: str, instruction: str, request=None) -> str:
    graph = parse_flow(graph_text)
    for node in graph:
        if len(node.get("Message")) > 200:
            node.fields["Message"] = "Thanks for contacting Acme Dental!"
    return graph.serialize()


def make_generator(graph_text: str | None = None) -> MagicMock:
    text = graph_text or make_flow(overrides={12: LONG_MESSAGE})
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=GenerationResult(
        graph_text=text,
        node_count=parse_flow(text).node_count,
        input_tokens=1200,
        output_tokens=3400,
    ))
    generator.refine = AsyncMock(side_effect=shorten)
    return generator


def make_deployer(deploy: DeployOutcome | None = None, widget: WidgetOutcome | None = None) -> MagicMock:
    deployer = MagicMock()
    deployer.deploy = AsyncMock(
        return_value=deploy or DeployOutcome(success=True, version_id="v-9", preview_url="https://preview.test/acme")
    )
    deployer.create_widget = AsyncMock(
        return_value=widget or WidgetOutcome(success=True, widget_id="w-1", widget_url="https://widget.test/w-1")
    )
    return deployer


def make_orchestrator(
    generator=None,
    validator=None,
    deployer=None,
    api_token: str = TOKEN,
    store: FixStore | None = None,
    **kwargs,
) -> PipelineOrchestrator:
    if validator is None:
        validator = MagicMock()
        validator.validate = AsyncMock(side_effect=length_outcome)
    learning = LearningClient(store or InMemoryFixStore(), backoff=BackoffPolicy())
    settings = kwargs.pop("settings", None) or PipelineSettings(refine_max_attempts=5)
    return PipelineOrchestrator(
        generator=generator or make_generator(),
        validator=validator,
        deployer=deployer or make_deployer(),
        api_token=api_token,
        learning=learning,
        settings=settings,
        **kwargs,
    )


def request() -> BuildRequest:
    return BuildRequest(description="Appointment booking bot for a dental clinic", bot_id=BOT_ID)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_forty_node_build_with_repair(self):
        """Node 12 fails on iteration 1, the generator shortens it, iteration 2 passes."""
        store = InMemoryFixStore()
        generator = make_generator()
        deployer = make_deployer()
        orchestrator = make_orchestrator(generator=generator, deployer=deployer, store=store)

        result = await orchestrator.run(request())

        assert isinstance(result, BuildSuccess)
        assert result.success
        assert result.node_count == 40
        assert result.bot_id == BOT_ID
        assert result.version_id == "v-9"
        assert result.widget_id == "w-1"
        assert result.export_links == {"preview": "https://preview.test/acme"}
        assert not result.needs_review
        assert parse_flow(result.graph_text).get(12).get("Message") == "Thanks for contacting Acme Dental!"
        assert {"HandleBotError", "UserPlatformRouting", "GenAIFallback"} <= set(result.scripts)

        generator.refine.assert_awaited_once()
        deployed_text = deployer.deploy.await_args.args[0]
        assert deployed_text == result.graph_text
        assert any(f.success_count >= 1 for f in store.fixes.values())

        validate_timing = next(t for t in result.timings if t.phase == "validate")
        assert validate_timing.iterations == 2
        generate_timing = next(t for t in result.timings if t.phase == "generate")
        assert generate_timing.input_tokens == 1200

    @pytest.mark.asyncio
    async def test_progress_monotonic(self):
        run = PipelineRun()
        result = await make_orchestrator().run(request(), run=run)
        assert result.success
        progress = [u.progress for u in run.updates]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert run.phase is Phase.DONE
        validate_steps = [u.progress for u in run.updates if u.phase is Phase.VALIDATE]
        assert validate_steps == [40, 43, 46]

    @pytest.mark.asyncio
    async def test_progress_callback_failures_ignored(self):
        seen = []

        def callback(update):
            seen.append(update.phase)
            raise RuntimeError("subscriber went away")

        result = await make_orchestrator().run(request(), on_progress=callback)
        assert result.success
        assert seen[0] is Phase.PREFLIGHT
        assert seen[-1] is Phase.DONE


# ---------------------------------------------------------------------------
# Failures and resume
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_deploy_failure_then_resume_skips_generation(self):
        generator = make_generator()
        failing = make_deployer(deploy=DeployOutcome(
            success=False,
            message="Upload rejected",
            errors=[ValidationError("Unknown intent", "Intent", 12)],
        ))
        first = await make_orchestrator(generator=generator, deployer=failing).run(request())

        assert isinstance(first, BuildFailure)
        assert first.phase == "deploy"
        assert first.message == "Upload rejected"
        assert first.resumable
        assert first.failed_rows[0].node_num == 12
        assert first.failed_rows[0].node_name == "Node 12"
        assert first.failed_rows[0].errors == ["[Intent] Unknown intent"]

        # The cached graph is the refined one, so the retry validates once.
        cached = first.cached_generation
        assert cached.generation.graph_text == first.graph_text
        assert parse_flow(cached.generation.graph_text).get(12).get("Message") == "Thanks for contacting Acme Dental!"

        deployer = make_deployer()
        retry = await make_orchestrator(generator=generator, deployer=deployer).run(
            request(), run=PipelineRun(cached=cached)
        )
        assert isinstance(retry, BuildSuccess)
        generator.generate.assert_awaited_once()
        generator.refine.assert_awaited_once()
        skipped = next(t for t in retry.timings if t.phase == "generate")
        assert skipped.status == "skipped"

    @pytest.mark.asyncio
    async def test_preflight_bad_token(self):
        generator = make_generator()
        result = await make_orchestrator(generator=generator, api_token="short").run(request())
        assert isinstance(result, BuildFailure)
        assert result.phase == "preflight"
        assert "too short" in result.message
        assert not result.resumable
        generator.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_preflight_bad_bot_id(self):
        generator = make_generator()
        bad = BuildRequest(description="x", bot_id="acme.bot")
        result = await make_orchestrator(generator=generator).run(bad)
        assert result.phase == "preflight"
        assert "uppercase" in result.message
        generator.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generation_failure(self):
        generator = make_generator()
        generator.generate = AsyncMock(side_effect=RuntimeError("provider down"))
        result = await make_orchestrator(generator=generator).run(request())
        assert result.phase == "generate"
        assert "provider down" in result.message
        assert result.cached_generation is None

    @pytest.mark.asyncio
    async def test_deploy_auth_failure_keeps_cache(self):
        deployer = make_deployer(deploy=DeployOutcome(success=False, auth_error=True))
        result = await make_orchestrator(deployer=deployer).run(request())
        assert isinstance(result, BuildFailure)
        assert result.auth_error
        assert result.phase == "deploy"
        assert result.resumable
        deployer.create_widget.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validator_auth_failure(self):
        validator = MagicMock()
        validator.validate = AsyncMock(return_value=ValidationOutcome(valid=False, auth_error=True))
        deployer = make_deployer()
        result = await make_orchestrator(validator=validator, deployer=deployer).run(request())
        assert result.auth_error
        assert result.resumable
        deployer.deploy.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_between_phases(self):
        run = PipelineRun()

        def cancel_on_validate(update):
            if update.phase is Phase.VALIDATE:
                run.cancel()

        run.subscribe(cancel_on_validate)
        deployer = make_deployer()
        result = await make_orchestrator(deployer=deployer).run(request(), run=run)
        assert isinstance(result, BuildFailure)
        assert result.phase == "cancelled"
        assert result.resumable
        deployer.deploy.assert_not_awaited()


# ---------------------------------------------------------------------------
# Best-effort phases
# ---------------------------------------------------------------------------


class TestDegradedSuccess:
    @pytest.mark.asyncio
    async def test_refine_exhaustion_deploys_for_review(self):
        generator = make_generator()
        generator.refine = AsyncMock(side_effect=lambda graph_text, instruction, request=None: graph_text)
        deployer = make_deployer()
        result = await make_orchestrator(generator=generator, deployer=deployer).run(request())
        assert isinstance(result, BuildSuccess)
        assert result.needs_review
        assert [e.node_num for e in result.residual_errors] == [12]
        assert any("Validation ended stalled" in w for w in result.warnings)
        deployer.deploy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repair_exception_deploys_for_review(self):
        generator = make_generator()
        generator.refine = AsyncMock(side_effect=RuntimeError("APIConnectionError: connection reset"))
        deployer = make_deployer()
        result = await make_orchestrator(generator=generator, deployer=deployer).run(request())
        assert isinstance(result, BuildSuccess)
        assert result.needs_review
        assert [e.node_num for e in result.residual_errors] == [12]
        deployer.deploy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_learning_service_with_unexpected_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        store = HttpFixStore("http://learning.test")
        store._client = httpx.AsyncClient(base_url="http://learning.test", transport=httpx.MockTransport(handler))
        generator = make_generator()
        result = await make_orchestrator(generator=generator, store=store).run(request())
        assert isinstance(result, BuildSuccess)
        assert not result.needs_review
        generator.refine.assert_awaited_once()
        await store.close()

    @pytest.mark.asyncio
    async def test_widget_failure_is_a_warning(self):
        health = MagicMock()
        health.check = AsyncMock()
        deployer = make_deployer(widget=WidgetOutcome(success=False, error="channel quota reached"))
        result = await make_orchestrator(deployer=deployer, health=health).run(request())
        assert isinstance(result, BuildSuccess)
        assert result.widget_id is None
        assert "Widget provisioning failed: channel quota reached" in result.warnings
        health.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhealthy_bot_is_a_warning(self):
        health = MagicMock()
        health.check = AsyncMock(return_value=HealthResult(
            healthy=False, reason="agent_transfer", offending_text="Transferring you to an agent"
        ))
        result = await make_orchestrator(health=health).run(request())
        assert isinstance(result, BuildSuccess)
        assert result.health.reason == "agent_transfer"
        assert "Health probe reported agent_transfer: Transferring you to an agent" in result.warnings
        health.check.assert_awaited_once_with("w-1")

    @pytest.mark.asyncio
    async def test_export_failure_is_a_warning(self):
        exporter = MagicMock()
        exporter.export = AsyncMock(side_effect=RuntimeError("bucket missing"))
        result = await make_orchestrator(exporter=exporter).run(request())
        assert isinstance(result, BuildSuccess)
        assert "Export failed: bucket missing" in result.warnings
        assert result.export_links == {"preview": "https://preview.test/acme"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _jwt(claims: dict) -> str:
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
    return f"eyJhbGciOiJIUzI1NiJ9.{payload}.c2lnbmF0dXJl"


class TestPreflightHelpers:
    def test_token_checks(self):
        assert check_deploy_token("") == "Deployment API token is missing"
        assert check_deploy_token("abc def ghi jkl mno") == "Deployment API token contains whitespace"
        assert check_deploy_token(TOKEN) is None
        assert check_deploy_token(_jwt({"exp": 1000}), now=2000) == "Deployment API token has expired"
        assert check_deploy_token(_jwt({"exp": 3000}), now=2000) is None
        assert check_deploy_token("aaaaaaaa.!!!!.bbbbbbbb") == "Deployment API token is malformed"

    def test_bot_ids(self):
        assert generate_bot_id("acme dental", "booking-bot") == "Acmedental.Bookingbot"
        assert validate_bot_id("Acme.Bot") == (True, None)
        assert validate_bot_id("AcmeBot")[0] is False
        assert validate_bot_id("Acme.bot") == (False, "Bot name must start with an uppercase letter")
        assert validate_bot_id("Acme.Bot_1") == (False, "Bot ID can only contain letters and numbers")


def test_extract_failed_rows_groups_by_node():
    text = make_flow(3, overrides={2: "x" * 700})
    errors = [
        ValidationError("Too long", "Message", 2, 3),
        ValidationError("Unknown intent", "Intent", 2, 3),
        ValidationError("Flow has no terminal node"),
    ]
    rows = extract_failed_rows(errors, text)
    assert [r.node_num for r in rows] == [2, -1]
    assert rows[0].row_num == 3
    assert rows[0].node_type == "D"
    assert len(rows[0].errors) == 2
    assert len(rows[0].raw_row) == 500
    assert rows[1].raw_row == ""

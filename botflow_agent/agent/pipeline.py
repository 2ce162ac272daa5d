"""Pipeline orchestrator: description in, deployed and probed bot out.

Phases run strictly in order, each reporting monotonic progress:

    preflight (5) → generate (20) → validate/refine (40–54) → scripts (55)
    → deploy (60) → widget (70) → health (75) → export (85) → done (100)

Only preflight, generation, critical script resolution and deployment can
end a run. Widget provisioning, the health probe and export are
best-effort: their failures become warnings on the result.

A run owns one cached-generation slot. Once a graph exists, every failure
carries it back to the caller so a retry skips generation.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import csv
import inspect
import io
import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from botflow_agent.agent.errors import (
    AuthenticationError,
    DeploymentError,
    GenerationError,
    PipelineCancelled,
    PipelineError,
    PreflightError,
)
from botflow_agent.agent.export import NullExporter
from botflow_agent.agent.health import HealthProbe, HealthResult
from botflow_agent.agent.metrics import MetricsCollector, PhaseMetrics, format_phase_table, skipped_phase
from botflow_agent.agent.ports import (
    Exporter,
    FlowDeployer,
    FlowGenerator,
    FlowValidator,
    GenerationRequest,
    GenerationResult,
)
from botflow_agent.agent.refine import RefineResult, run_refine_loop
from botflow_agent.agent.scripts import ScriptResolution, ScriptResolver
from botflow_agent.agent.settings import PipelineSettings
from botflow_agent.data.startup_scripts import ScriptRegistry, default_registry, validate_critical_scripts
from botflow_agent.flow.model import NODE_NAME, NODE_TYPE, parse_flow
from botflow_agent.learning.client import LearningClient
from botflow_agent.learning.prompts import format_errors_to_avoid, format_proven_fixes_for_generation
from botflow_agent.learning.signatures import ValidationError

logger = logging.getLogger("botflow_agent.agent.pipeline")

MIN_TOKEN_LENGTH = 16
RAW_ROW_LIMIT = 500


# ---------------------------------------------------------------------------
# Phases and progress
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    PREFLIGHT = "preflight"
    GENERATE = "generate"
    VALIDATE = "validate"
    SCRIPTS = "scripts"
    DEPLOY = "deploy"
    WIDGET = "widget"
    HEALTH = "health"
    EXPORT = "export"
    DONE = "done"
    ERROR = "error"


PHASE_PROGRESS: dict[Phase, int] = {
    Phase.PREFLIGHT: 5,
    Phase.GENERATE: 20,
    Phase.VALIDATE: 40,
    Phase.SCRIPTS: 55,
    Phase.DEPLOY: 60,
    Phase.WIDGET: 70,
    Phase.HEALTH: 75,
    Phase.EXPORT: 85,
    Phase.DONE: 100,
}
VALIDATE_PROGRESS_MAX = 54


@dataclass
class ProgressUpdate:
    phase: Phase
    progress: int
    message: str
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase.value, "progress": self.progress, "message": self.message, "detail": self.detail}


ProgressCallback = Callable[[ProgressUpdate], "Awaitable[None] | None"]


# ---------------------------------------------------------------------------
# Requests and bot ids
# ---------------------------------------------------------------------------


def _clean_id_part(value: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", value or "")
    return cleaned[:1].upper() + cleaned[1:]


def generate_bot_id(client_name: str, project_name: str) -> str:
    """``Client.Project`` with non-alphanumerics stripped and each part capitalised."""
    return f"{_clean_id_part(client_name)}.{_clean_id_part(project_name)}"


def validate_bot_id(bot_id: str) -> tuple[bool, str | None]:
    if not bot_id:
        return False, "Bot ID is required"
    parts = bot_id.split(".")
    if len(parts) != 2:
        return False, "Bot ID must be in format: CustomerName.BotName"
    customer, bot = parts
    if not customer:
        return False, "Customer name is required"
    if not bot:
        return False, "Bot name is required"
    if not bot[0].isupper():
        return False, "Bot name must start with an uppercase letter"
    if not re.fullmatch(r"[a-zA-Z0-9]+\.[a-zA-Z0-9]+", bot_id):
        return False, "Bot ID can only contain letters and numbers"
    return True, None


@dataclass
class BuildRequest:
    description: str
    client_name: str = ""
    project_name: str = ""
    bot_id: str | None = None
    environment: str | None = None
    widget_name: str | None = None

    def resolved_bot_id(self) -> str:
        return self.bot_id or generate_bot_id(self.client_name, self.project_name)

    def to_generation_request(self, guidance: str = "") -> GenerationRequest:
        return GenerationRequest(
            description=self.description,
            bot_id=self.resolved_bot_id(),
            client_name=self.client_name,
            project_name=self.project_name,
            guidance=guidance,
        )


@dataclass
class CachedGeneration:
    """The per-run memo that lets a retry skip generation."""

    request: BuildRequest
    generation: GenerationResult


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class FailedRow:
    node_num: int
    row_num: int
    node_name: str
    node_type: str
    errors: list[str]
    raw_row: str
    fields: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_num": self.node_num,
            "row_num": self.row_num,
            "node_name": self.node_name,
            "node_type": self.node_type,
            "errors": list(self.errors),
            "raw_row": self.raw_row,
            "fields": dict(self.fields),
        }


def _raw_row(header: list[str], fields: dict[str, str]) -> str:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="").writerow([fields.get(h, "") for h in header])
    return buf.getvalue()


def extract_failed_rows(errors: list[ValidationError], graph_text: str) -> list[FailedRow]:
    """Group errors per node with the offending row, for the failure report."""
    graph = parse_flow(graph_text) if graph_text else None
    by_node: dict[int, FailedRow] = {}
    for error in errors:
        key = error.node_num if error.node_num is not None else -1
        row = by_node.get(key)
        if row is None:
            node = graph.get(key) if graph is not None else None
            fields = {k: v for k, v in node.fields.items() if v} if node is not None else {}
            row = FailedRow(
                node_num=key,
                row_num=error.row_num if error.row_num is not None else -1,
                node_name=node.get(NODE_NAME) if node is not None else "",
                node_type=node.get(NODE_TYPE) if node is not None else "",
                errors=[],
                raw_row=_raw_row(graph.header, node.fields)[:RAW_ROW_LIMIT] if node is not None else "",
                fields=fields,
            )
            by_node[key] = row
        row.errors.append(error.display())
    return list(by_node.values())


@dataclass
class BuildSuccess:
    graph_text: str
    node_count: int
    bot_id: str
    version_id: str | None = None
    widget_id: str | None = None
    widget_url: str | None = None
    health: HealthResult | None = None
    export_links: dict[str, str] = field(default_factory=dict)
    scripts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    needs_review: bool = False
    residual_errors: list[ValidationError] = field(default_factory=list)
    fixes_made: list[str] = field(default_factory=list)
    timings: list[PhaseMetrics] = field(default_factory=list)

    success = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "bot_id": self.bot_id,
            "node_count": self.node_count,
            "version_id": self.version_id,
            "widget_id": self.widget_id,
            "widget_url": self.widget_url,
            "health": self.health.to_dict() if self.health else None,
            "export_links": dict(self.export_links),
            "scripts": list(self.scripts),
            "warnings": list(self.warnings),
            "needs_review": self.needs_review,
            "residual_errors": [e.to_dict() for e in self.residual_errors],
            "fixes_made": list(self.fixes_made),
            "timings": [vars(m) for m in self.timings],
            "graph_text": self.graph_text,
        }


@dataclass
class BuildFailure:
    message: str
    phase: str
    graph_text: str | None = None
    failed_rows: list[FailedRow] = field(default_factory=list)
    cached_generation: CachedGeneration | None = None
    auth_error: bool = False
    warnings: list[str] = field(default_factory=list)
    timings: list[PhaseMetrics] = field(default_factory=list)

    success = False

    @property
    def resumable(self) -> bool:
        return self.cached_generation is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "phase": self.phase,
            "auth_error": self.auth_error,
            "resumable": self.resumable,
            "failed_rows": [r.to_dict() for r in self.failed_rows],
            "warnings": list(self.warnings),
            "timings": [vars(m) for m in self.timings],
            "graph_text": self.graph_text,
        }


BuildResult = BuildSuccess | BuildFailure


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class PipelineRun:
    """Mutable state of one run: progress, timings, cache slot, cancel flag."""

    def __init__(
        self,
        run_id: str | None = None,
        cached: CachedGeneration | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.cached = cached
        self.phase: Phase | None = None
        self.progress = 0
        self.updates: list[ProgressUpdate] = []
        self.timings: list[PhaseMetrics] = []
        self.warnings: list[str] = []
        self.cancelled = False
        self._callbacks: list[ProgressCallback] = [on_progress] if on_progress else []

    def subscribe(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def cancel(self) -> None:
        logger.info("Run %s cancellation requested", self.run_id)
        self.cancelled = True

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled(f"Run {self.run_id} was cancelled")

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    async def report(self, phase: Phase, progress: int, message: str, detail: str | None = None) -> None:
        """Publish progress. Never lowers it; callback failures are logged and ignored."""
        self.progress = max(self.progress, progress)
        self.phase = phase
        update = ProgressUpdate(phase=phase, progress=self.progress, message=message, detail=detail)
        self.updates.append(update)
        for callback in self._callbacks:
            try:
                outcome = callback(update)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Progress callback failed: %s", e)


# ---------------------------------------------------------------------------
# Preflight checks
# ---------------------------------------------------------------------------


def check_deploy_token(token: str | None, now: float | None = None) -> str | None:
    """Problem with the deployment credential, or None when it looks usable."""
    if not token:
        return "Deployment API token is missing"
    if any(ch.isspace() for ch in token):
        return "Deployment API token contains whitespace"
    if len(token) < MIN_TOKEN_LENGTH:
        return "Deployment API token is too short"
    parts = token.split(".")
    if len(parts) == 3:
        try:
            payload = parts[1] + "=" * (-len(parts[1]) % 4)
            claims = json.loads(base64.urlsafe_b64decode(payload))
        except (binascii.Error, ValueError):
            return "Deployment API token is malformed"
        exp = claims.get("exp") if isinstance(claims, dict) else None
        if isinstance(exp, (int, float)) and exp < (now if now is not None else time.time()):
            return "Deployment API token has expired"
    return None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        generator: FlowGenerator,
        validator: FlowValidator,
        deployer: FlowDeployer,
        api_token: str,
        learning: LearningClient | None = None,
        settings: PipelineSettings | None = None,
        scripts: ScriptResolver | None = None,
        health: HealthProbe | None = None,
        exporter: Exporter | None = None,
        registry: ScriptRegistry | None = None,
    ) -> None:
        self.generator = generator
        self.validator = validator
        self.deployer = deployer
        self.api_token = api_token
        self.learning = learning
        self.settings = settings or PipelineSettings()
        self.registry = registry or default_registry()
        self.scripts = scripts or ScriptResolver(self.registry, timeout=self.settings.scripts_timeout)
        self.health = health
        self.exporter = exporter or NullExporter()

    @asynccontextmanager
    async def _phase(self, run: PipelineRun, phase: Phase) -> AsyncIterator[MetricsCollector]:
        run.check_cancelled()
        m = MetricsCollector(phase.value)
        try:
            async with m:
                yield m
        finally:
            if m.result is not None:
                run.timings.append(m.result)
        run.check_cancelled()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        request: BuildRequest,
        run: PipelineRun | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BuildResult:
        if run is None:
            run = PipelineRun(on_progress=on_progress)
        elif on_progress is not None:
            run.subscribe(on_progress)
        bot_id = request.resolved_bot_id()
        environment = request.environment or self.settings.deploy_environment
        logger.info("Run %s: building %s (%s)", run.run_id, bot_id, environment)

        try:
            await self._preflight(run, bot_id)
            cached = await self._generate(run, request)
            refine = await self._validate(run, cached, bot_id)
            resolution = await self._resolve_scripts(run, refine.graph_text, cached.generation.custom_scripts)
            version_id, preview_url = await self._deploy(run, refine, bot_id, environment, resolution)
            widget_id, widget_url = await self._widget(run, bot_id, environment, request.widget_name)
            health = await self._health(run, widget_id)
            links = await self._export(run, refine.graph_text, bot_id)
        except PipelineError as e:
            await run.report(Phase.ERROR, run.progress, str(e))
            failure = BuildFailure(
                message=str(e),
                phase=e.phase,
                graph_text=run.cached.generation.graph_text if run.cached else None,
                failed_rows=list(getattr(e, "failed_rows", [])),
                cached_generation=run.cached,
                auth_error=isinstance(e, AuthenticationError),
                warnings=list(run.warnings),
                timings=list(run.timings),
            )
            logger.error("Run %s failed in %s: %s", run.run_id, e.phase, e)
            logger.info("Phase timings for %s:\n%s", run.run_id, format_phase_table(run.timings))
            return failure

        if preview_url:
            links.setdefault("preview", preview_url)
        if refine.residual_errors:
            run.warn(f"Deployed with {len(refine.residual_errors)} unresolved validation error(s); review needed")
        await run.report(Phase.DONE, PHASE_PROGRESS[Phase.DONE], "Bot deployed", bot_id)
        logger.info("Phase timings for %s:\n%s", run.run_id, format_phase_table(run.timings))
        return BuildSuccess(
            graph_text=refine.graph_text,
            node_count=parse_flow(refine.graph_text).node_count,
            bot_id=bot_id,
            version_id=version_id,
            widget_id=widget_id,
            widget_url=widget_url,
            health=health,
            export_links=links,
            scripts=sorted(resolution.scripts),
            warnings=list(run.warnings),
            needs_review=refine.needs_review,
            residual_errors=list(refine.residual_errors),
            fixes_made=list(refine.fixes_made),
            timings=list(run.timings),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _preflight(self, run: PipelineRun, bot_id: str) -> None:
        async with self._phase(run, Phase.PREFLIGHT):
            await run.report(Phase.PREFLIGHT, PHASE_PROGRESS[Phase.PREFLIGHT], "Checking prerequisites")
            ok, problems = validate_critical_scripts(self.registry)
            if not ok:
                raise PreflightError("Startup script registry is inconsistent: " + "; ".join(problems))
            token_problem = check_deploy_token(self.api_token)
            if token_problem:
                raise PreflightError(token_problem)
            ok, reason = validate_bot_id(bot_id)
            if not ok:
                raise PreflightError(f"Invalid bot id {bot_id!r}: {reason}")

    async def _generation_guidance(self) -> str:
        if self.learning is None:
            return ""
        avoid = await self.learning.errors_to_avoid(self.settings.errors_to_avoid_limit)
        proven = await self.learning.proven_fixes(
            self.settings.proven_min_confidence,
            self.settings.proven_min_applied,
            self.settings.proven_fixes_limit,
        )
        return format_errors_to_avoid(avoid) + format_proven_fixes_for_generation(
            proven, self.settings.proven_min_confidence
        )

    async def _generate(self, run: PipelineRun, request: BuildRequest) -> CachedGeneration:
        if run.cached is not None:
            logger.info("Run %s: reusing cached generation (%d nodes)", run.run_id, run.cached.generation.node_count)
            run.timings.append(skipped_phase(Phase.GENERATE.value, "reused cached generation"))
            await run.report(Phase.GENERATE, PHASE_PROGRESS[Phase.GENERATE], "Reusing generated flow")
            return run.cached

        async with self._phase(run, Phase.GENERATE) as m:
            await run.report(Phase.GENERATE, PHASE_PROGRESS[Phase.GENERATE], "Generating flow")
            guidance = await self._generation_guidance()
            try:
                generation = await asyncio.wait_for(
                    self.generator.generate(request.to_generation_request(guidance)),
                    timeout=self.settings.generator_timeout,
                )
            except asyncio.TimeoutError as e:
                raise GenerationError("Flow generation timed out") from e
            except GenerationError:
                raise
            except Exception as e:
                raise GenerationError(f"Flow generation failed: {str(e) or type(e).__name__}") from e
            if not generation.graph_text.strip() or generation.node_count <= 0:
                raise GenerationError("Generator returned no usable flow")
            m.input_tokens = generation.input_tokens
            m.output_tokens = generation.output_tokens
            m.detail = f"{generation.node_count} nodes"
        run.cached = CachedGeneration(request=request, generation=generation)
        return run.cached

    async def _validate(self, run: PipelineRun, cached: CachedGeneration, bot_id: str) -> RefineResult:
        async def on_attempt(attempt: int, error_count: int) -> None:
            await run.report(
                Phase.VALIDATE,
                min(PHASE_PROGRESS[Phase.VALIDATE] + 3 * attempt, VALIDATE_PROGRESS_MAX),
                f"Validation attempt {attempt}",
                f"{error_count} error(s)" if error_count else "no errors",
            )

        async with self._phase(run, Phase.VALIDATE) as m:
            await run.report(Phase.VALIDATE, PHASE_PROGRESS[Phase.VALIDATE], "Validating flow")
            refine = await run_refine_loop(
                cached.generation.graph_text,
                bot_id,
                validator=self.validator,
                generator=self.generator,
                learning=self.learning,
                settings=self.settings,
                request=cached.request.to_generation_request(),
                on_attempt=on_attempt,
            )
            m.iterations = refine.attempts
            m.detail = refine.status
        if refine.graph_text != cached.generation.graph_text:
            run.cached = replace(
                cached,
                generation=replace(
                    cached.generation,
                    graph_text=refine.graph_text,
                    node_count=parse_flow(refine.graph_text).node_count,
                ),
            )
        if not refine.valid:
            run.warn(f"Validation ended {refine.status} after {refine.attempts} attempt(s)")
        return refine

    async def _resolve_scripts(
        self, run: PipelineRun, graph_text: str, custom_scripts: dict[str, str]
    ) -> ScriptResolution:
        async with self._phase(run, Phase.SCRIPTS) as m:
            await run.report(Phase.SCRIPTS, PHASE_PROGRESS[Phase.SCRIPTS], "Resolving action scripts")
            resolution = await self.scripts.resolve(parse_flow(graph_text), custom_scripts)
            m.detail = f"{len(resolution.scripts)} script(s)"
        run.warnings.extend(resolution.warnings)
        return resolution

    async def _deploy(
        self,
        run: PipelineRun,
        refine: RefineResult,
        bot_id: str,
        environment: str,
        resolution: ScriptResolution,
    ) -> tuple[str | None, str | None]:
        async with self._phase(run, Phase.DEPLOY) as m:
            await run.report(Phase.DEPLOY, PHASE_PROGRESS[Phase.DEPLOY], f"Deploying to {environment}", bot_id)
            try:
                outcome = await asyncio.wait_for(
                    self.deployer.deploy(refine.graph_text, bot_id, environment, resolution.scripts),
                    timeout=self.settings.deployer_timeout,
                )
            except asyncio.TimeoutError as e:
                raise DeploymentError("Deployment timed out") from e
            if outcome.auth_error:
                raise AuthenticationError()
            if not outcome.success:
                raise DeploymentError(
                    outcome.message or "Deployment was rejected",
                    extract_failed_rows(outcome.errors, refine.graph_text),
                )
            m.detail = outcome.version_id or ""
        return outcome.version_id or refine.version_id, outcome.preview_url

    async def _widget(
        self, run: PipelineRun, bot_id: str, environment: str, widget_name: str | None
    ) -> tuple[str | None, str | None]:
        async with self._phase(run, Phase.WIDGET) as m:
            await run.report(Phase.WIDGET, PHASE_PROGRESS[Phase.WIDGET], "Provisioning widget")
            try:
                outcome = await asyncio.wait_for(
                    self.deployer.create_widget(bot_id, environment, widget_name),
                    timeout=self.settings.widget_timeout,
                )
            except Exception as e:
                m.status = "failed"
                run.warn(f"Widget provisioning failed: {str(e) or type(e).__name__}")
                return None, None
            if not outcome.success:
                m.status = "failed"
                run.warn(f"Widget provisioning failed: {outcome.error or 'unknown error'}")
                return None, None
        return outcome.widget_id, outcome.widget_url

    async def _health(self, run: PipelineRun, widget_id: str | None) -> HealthResult | None:
        if self.health is None or not widget_id:
            run.timings.append(skipped_phase(Phase.HEALTH.value, "no widget" if self.health else "disabled"))
            return None
        async with self._phase(run, Phase.HEALTH) as m:
            await run.report(Phase.HEALTH, PHASE_PROGRESS[Phase.HEALTH], "Probing deployed bot")
            result = await self.health.check(widget_id)
            m.detail = "healthy" if result.healthy else result.reason or "unhealthy"
        if not result.healthy:
            run.warn(f"Health probe reported {result.reason}: {result.offending_text or ''}".rstrip(": "))
        return result

    async def _export(self, run: PipelineRun, graph_text: str, bot_id: str) -> dict[str, str]:
        async with self._phase(run, Phase.EXPORT) as m:
            await run.report(Phase.EXPORT, PHASE_PROGRESS[Phase.EXPORT], "Exporting flow")
            try:
                links = await asyncio.wait_for(
                    self.exporter.export(graph_text, bot_id),
                    timeout=self.settings.export_timeout,
                )
            except Exception as e:
                m.status = "failed"
                run.warn(f"Export failed: {str(e) or type(e).__name__}")
                return {}
        return dict(links)

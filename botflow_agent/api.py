"""FastAPI service for the bot-flow build agent.

Wraps PipelineOrchestrator in an HTTP API:

  POST /builds                   Run a build to completion; returns the result
                                 and a run_id.
  POST /builds/stream            Same, streaming progress as Server-Sent Events.
  POST /builds/{run_id}/retry    Re-run a failed build. Generation is skipped
                                 when the failed run produced a flow.
  POST /builds/{run_id}/cancel   Request cancellation at the next phase boundary.
  GET  /builds/{run_id}          Progress and result of a run.

  POST /learning/human-fixes     Submit reviewer corrections and guidance.
  GET  /learning/errors-to-avoid Recurring validator errors.
  GET  /learning/proven-fixes    Fixes that have earned confidence.

Each run keeps its own cached-generation slot on its record; nothing is
shared between runs.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from botflow_agent.agent.pipeline import (
    BuildRequest,
    BuildResult,
    PipelineOrchestrator,
    PipelineRun,
    ProgressUpdate,
)
from botflow_agent.learning.client import LearningClient
from botflow_agent.learning.models import HumanCorrection, HumanFix

logger = logging.getLogger("botflow_agent.api")

# ---------------------------------------------------------------------------
# API key authentication (optional; enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: build the orchestrator once, close clients on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    load_dotenv()
    from botflow_agent.agent.factory import create_orchestrator

    components = await create_orchestrator()
    app.state.orchestrator = components.orchestrator
    app.state.learning = components.learning
    app.state.runs = {}
    logger.info("Bot-flow agent API started")

    yield

    await components.aclose()
    logger.info("Shutting down bot-flow agent API")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


_rate_limit = os.getenv("RATE_LIMIT_BUILDS_PER_MIN", "10")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

# Finished runs kept for GET /builds/{run_id} and retry, oldest evicted first.
_MAX_TRACKED_RUNS = int(os.getenv("MAX_TRACKED_RUNS", "200"))

app = FastAPI(
    title="Bot-Flow Build Agent API",
    description=(
        "Turns a product description into a validated, deployed conversational flow. "
        "Validator rejections are fingerprinted and learned from across builds."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3001,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class BuildRequestBody(BaseModel):
    description: str = Field(
        ...,
        min_length=1,
        description="Natural-language description of the bot to build.",
        examples=["A bot that books, moves and cancels dental appointments"],
    )
    client_name: str = Field("", description="Client name; with project_name derives the bot id.")
    project_name: str = Field("", description="Project name.")
    bot_id: str | None = Field(None, description="Explicit bot id (Customer.BotName).")
    environment: Literal["sandbox", "production"] | None = None
    widget_name: str | None = None

    def to_request(self) -> BuildRequest:
        return BuildRequest(
            description=self.description,
            client_name=self.client_name,
            project_name=self.project_name,
            bot_id=self.bot_id,
            environment=self.environment,
            widget_name=self.widget_name,
        )


class HumanCorrectionBody(BaseModel):
    node_num: int
    field: str
    current_value: str = ""
    correct_value: str
    explanation: str = ""
    error_description: str | None = None


class HumanFixBody(BaseModel):
    fixes: list[HumanCorrectionBody] = Field(default_factory=list)
    general_guidance: str = ""


@dataclass
class _RunRecord:
    run: PipelineRun
    result: BuildResult | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Agent not initialized")
    return orchestrator


def _get_learning(request: Request) -> LearningClient:
    learning = getattr(request.app.state, "learning", None)
    if learning is None:
        raise HTTPException(status_code=503, detail="Error learning not initialized")
    return learning


def _runs(request: Request) -> dict[str, _RunRecord]:
    if not hasattr(request.app.state, "runs"):
        request.app.state.runs = {}
    return request.app.state.runs


def _track(request: Request, record: _RunRecord) -> None:
    """Register a run, evicting the oldest finished runs beyond MAX_TRACKED_RUNS.

    Runs still in progress are never evicted.
    """
    runs = _runs(request)
    runs[record.run.run_id] = record
    excess = len(runs) - _MAX_TRACKED_RUNS
    if excess <= 0:
        return
    finished = [run_id for run_id, r in runs.items() if r.result is not None][:excess]
    for run_id in finished:
        del runs[run_id]
    logger.debug("Evicted %d finished run(s); tracking %d", len(finished), len(runs))


def _get_record(request: Request, run_id: str) -> _RunRecord:
    record = _runs(request).get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
    return record


def _response(record: _RunRecord) -> dict:
    body = {
        "run_id": record.run.run_id,
        "phase": record.run.phase.value if record.run.phase else None,
        "progress": record.run.progress,
    }
    if record.result is not None:
        body["result"] = record.result.to_dict()
    return body


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Liveness check. Reports whether the orchestrator is initialized."""
    ready = getattr(request.app.state, "orchestrator", None) is not None
    return {"api": "ok", "agent": "ready" if ready else "starting"}


@app.post("/builds", tags=["builds"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def create_build(request: Request, body: BuildRequestBody) -> dict:
    """Run a build to completion (success or failure) and return the result."""
    orchestrator = _get_orchestrator(request)
    run = PipelineRun()
    record = _RunRecord(run=run)
    _track(request, record)
    logger.info("Build %s: %r", run.run_id, body.description[:80])
    record.result = await orchestrator.run(body.to_request(), run=run)
    return _response(record)


@app.post("/builds/{run_id}/retry", tags=["builds"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def retry_build(request: Request, run_id: str) -> dict:
    """Re-run a failed build, reusing its generated flow when there is one."""
    orchestrator = _get_orchestrator(request)
    previous = _get_record(request, run_id)
    if previous.result is None:
        raise HTTPException(status_code=409, detail="Run is still in progress")
    if previous.result.success:
        raise HTTPException(status_code=409, detail="Run already succeeded")

    cached = previous.result.cached_generation
    if cached is None:
        raise HTTPException(status_code=409, detail="Run produced no flow to resume from; start a new build")
    run = PipelineRun(cached=cached)
    record = _RunRecord(run=run)
    _track(request, record)
    logger.info("Retrying %s as %s (generation reused)", run_id, run.run_id)
    record.result = await orchestrator.run(cached.request, run=run)
    body = _response(record)
    body["retry_of"] = run_id
    return body


@app.post("/builds/{run_id}/cancel", tags=["builds"], dependencies=[Depends(_verify_api_key)])
async def cancel_build(request: Request, run_id: str) -> dict:
    record = _get_record(request, run_id)
    if record.result is not None:
        raise HTTPException(status_code=409, detail="Run already finished")
    record.run.cancel()
    return {"run_id": run_id, "cancelled": True}


@app.get("/builds/{run_id}", tags=["builds"], dependencies=[Depends(_verify_api_key)])
async def get_build(request: Request, run_id: str) -> dict:
    record = _get_record(request, run_id)
    body = _response(record)
    body["updates"] = [u.to_dict() for u in record.run.updates]
    return body


@app.post("/builds/stream", tags=["builds"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def stream_build(request: Request, body: BuildRequestBody) -> StreamingResponse:
    """Run a build and stream progress as Server-Sent Events.

      data: {"type": "run",      "run_id": "..."}
      data: {"type": "progress", "phase": "...", "progress": 40, "message": "...", "detail": "..."}
      data: {"type": "result",   "run_id": "...", "result": {...}}
      data: {"type": "error",    "detail": "..."}
    """
    orchestrator = _get_orchestrator(request)
    queue: asyncio.Queue[ProgressUpdate | None] = asyncio.Queue()
    run = PipelineRun(on_progress=queue.put_nowait)
    record = _RunRecord(run=run)
    _track(request, record)

    async def _drive() -> None:
        try:
            record.result = await orchestrator.run(body.to_request(), run=run)
        finally:
            queue.put_nowait(None)

    async def event_stream():
        yield ": connected\n\n"
        yield _sse({"type": "run", "run_id": run.run_id})
        task = asyncio.create_task(_drive())
        try:
            while True:
                update = await queue.get()
                if update is None:
                    break
                yield _sse({"type": "progress", **update.to_dict()})
            await task
            yield _sse({"type": "result", **_response(record)})
        except Exception as e:
            logger.exception("SSE stream failed for run %s", run.run_id)
            yield _sse({"type": "error", "detail": str(e)})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/learning/human-fixes", tags=["learning"], dependencies=[Depends(_verify_api_key)])
async def submit_human_fixes(request: Request, body: HumanFixBody) -> dict:
    if not body.fixes and not body.general_guidance.strip():
        raise HTTPException(status_code=422, detail="Provide at least one fix or general guidance")
    learning = _get_learning(request)
    ok = await learning.submit_human_fix(
        HumanFix(
            fixes=[HumanCorrection(**f.model_dump()) for f in body.fixes],
            general_guidance=body.general_guidance,
        )
    )
    return {"submitted": ok, "fixes": len(body.fixes)}


@app.get("/learning/errors-to-avoid", tags=["learning"], dependencies=[Depends(_verify_api_key)])
async def errors_to_avoid(request: Request, limit: int = 20) -> list[dict]:
    learning = _get_learning(request)
    return [vars(e) for e in await learning.errors_to_avoid(max(1, min(limit, 100)))]


@app.get("/learning/proven-fixes", tags=["learning"], dependencies=[Depends(_verify_api_key)])
async def proven_fixes(
    request: Request,
    min_confidence: float = 0.7,
    min_applied: int = 3,
    limit: int = 50,
) -> list[dict]:
    learning = _get_learning(request)
    fixes = await learning.proven_fixes(min_confidence, min_applied, max(1, min(limit, 200)))
    return [f.to_dict() for f in fixes]


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    logging.basicConfig(level=os.getenv("BOTFLOW_LOG_LEVEL", "INFO").upper())
    uvicorn.run(
        "botflow_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()

"""Build agent: generate → validate/refine → resolve scripts → deploy → probe.

Entry points:
    PipelineOrchestrator.run(request, ...) → BuildSuccess | BuildFailure
    run_refine_loop(...)                   → RefineResult
    create_orchestrator(...)               → (PipelineOrchestrator, closers)  [agent.factory]

The package __init__ stays import-light: the HTTP clients import
``agent.ports`` and must not pull the pipeline in with it.
"""

from botflow_agent.agent.errors import (
    AuthenticationError,
    DeploymentError,
    GenerationError,
    PipelineCancelled,
    PipelineError,
    PreflightError,
    ScriptResolutionError,
)

__all__ = [
    "AuthenticationError",
    "DeploymentError",
    "GenerationError",
    "PipelineCancelled",
    "PipelineError",
    "PreflightError",
    "ScriptResolutionError",
]

"""Exceptions that terminate a pipeline run.

Everything else (refine exhaustion, widget, export and health-probe
failures, repository outages) is recorded on the result as a warning.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for run-terminating failures."""

    phase: str = "unknown"


class PreflightError(PipelineError):
    phase = "preflight"


class GenerationError(PipelineError):
    phase = "generate"


class ScriptResolutionError(PipelineError):
    phase = "scripts"

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Critical scripts unavailable: {', '.join(self.missing)}")


class DeploymentError(PipelineError):
    phase = "deploy"

    def __init__(self, message: str, failed_rows: list[Any] | None = None) -> None:
        self.failed_rows = list(failed_rows or [])
        super().__init__(message)


class AuthenticationError(DeploymentError):
    """The deployment credential is invalid or expired."""

    def __init__(self, message: str = "API token is invalid or expired. Provide a fresh token and retry.") -> None:
        super().__init__(message)


class PipelineCancelled(PipelineError):
    phase = "cancelled"

"""State carried through the validate-and-refine graph.

Each node receives the full RefineState and returns a partial dict with
only the keys it updates. Fields annotated with a reducer use append
semantics; all other fields are last-writer-wins.
"""

from __future__ import annotations

from typing import Annotated, Any, TypedDict

from botflow_agent.agent.ports import GenerationRequest
from botflow_agent.learning.models import FixAttempt
from botflow_agent.learning.signatures import ValidationError


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def _append(existing: list, incoming: list | None) -> list:
    """Append a node's new entries to the accumulated list."""
    return (existing or []) + (incoming or [])


def _merge_dict(existing: dict, incoming: dict | None) -> dict:
    if not incoming:
        return existing or {}
    merged = dict(existing or {})
    merged.update(incoming)
    return merged


# ---------------------------------------------------------------------------
# State schema
# ---------------------------------------------------------------------------


class RefineState(TypedDict):
    """Full state of one validate-and-refine run.

    Lifecycle:
        1. Initialized by run_refine_loop() with the generated graph.
        2. prepare loads the proven-fix snapshot once.
        3. validate / refine alternate until the graph is valid, the
           no-progress guard fires, or the attempt cap is reached.

    Fields
    ------
    graph_text:     Current best graph (CSV text).
    bot_id:         Target bot id passed to the validator.
    request:        Original generation request, forwarded to refine().
    status:         "validating" | "valid" | "refining" | "stalled" | "max_attempts".
    attempt:        Validation submissions made so far (transport failures count).
    max_attempts:   Hard cap on submissions.
    errors:         Errors from the most recent verdict.
    version_id:     Validator-issued version id once the graph is accepted.
    proven_fixes:   Proven-fix snapshot loaded once by prepare.
    pattern_ids:    signature → repository pattern id, cached per run.
    pending:        Fix attributions awaiting the next verdict. Each entry:
                    {"signature", "pattern_id", "description", "fix_diff"}.
    last_verdict:   (graph fingerprint, sorted signatures) of the previous
                    verdict; drives the no-progress guard.
    fixes_made:     Human-readable descriptions of every change applied.
    fix_outcomes:   Resolved attributions: pending entry + "success".
    iterations:     Per-iteration telemetry dicts.
    """

    graph_text: str
    bot_id: str
    request: GenerationRequest | None
    status: str
    attempt: int
    max_attempts: int
    errors: list[ValidationError]
    version_id: str | None
    proven_fixes: list[FixAttempt]
    pattern_ids: Annotated[dict[str, str], _merge_dict]
    pending: list[dict[str, Any]]
    last_verdict: tuple[str, tuple[str, ...]] | None
    fixes_made: Annotated[list[str], _append]
    fix_outcomes: Annotated[list[dict[str, Any]], _append]
    iterations: Annotated[list[dict[str, Any]], _append]

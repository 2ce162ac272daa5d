"""Iterative validate-and-refine loop as a LangGraph state machine.

Graph topology:

    START → prepare → validate ─┬─ (valid | stalled | max_attempts) → END
                       ▲   │    ├─ (transport failure) → validate
                       │   ▼    └─ (errors) → refine
                       └─ refine

prepare   Load the proven-fix snapshot for this run (one repository read).
validate  Submit the graph. Log a pattern for every error, then resolve the
          previous iteration's fix attributions against the new verdict:
          an attributed fix succeeded when its signature is gone.
refine    Per error: a mechanically matching proven fix, else a built-in
          fixer for the error's category, else queue it for the generator.
          Queued errors become one repair instruction and one revision
          request. The revision is diffed against the pre-refinement graph
          and its changes are held as pending attributions.

Every validation submission counts against the cap, including those that
produced no verdict. Exhausting the cap is not an error: the caller gets
the best graph and the residual errors.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from langgraph.graph import END, START, StateGraph

from botflow_agent.agent.errors import AuthenticationError, GenerationError
from botflow_agent.agent.fixers import apply_builtin_fix, apply_proven_fix
from botflow_agent.agent.ports import FlowGenerator, FlowValidator, GenerationRequest, ValidationOutcome
from botflow_agent.agent.settings import PipelineSettings
from botflow_agent.agent.state import RefineState
from botflow_agent.flow.diff import NodeChange, describe_change, diff_rows, match_changes_to_errors
from botflow_agent.flow.model import FlowGraph, parse_flow
from botflow_agent.learning.client import LearningClient
from botflow_agent.learning.models import FixAttempt
from botflow_agent.learning.prompts import format_known_fixes
from botflow_agent.learning.signatures import ValidationError, normalize_error

logger = logging.getLogger("botflow_agent.agent.refine")

AttemptCallback = Callable[[int, int], Awaitable[None]]

# Row-count guard rail: a revision is rejected when it changes the number of
# rows by more than this fraction AND by more than this many rows.
MAX_ROW_DELTA_FRACTION = 0.05
MAX_ROW_DELTA_ROWS = 3


@dataclass
class RefineResult:
    graph_text: str
    valid: bool
    status: str
    attempts: int
    residual_errors: list[ValidationError] = field(default_factory=list)
    fixes_made: list[str] = field(default_factory=list)
    version_id: str | None = None
    fix_outcomes: list[dict[str, Any]] = field(default_factory=list)
    iterations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return not self.valid


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fingerprint(graph_text: str) -> str:
    return hashlib.sha1(graph_text.encode("utf-8")).hexdigest()


def row_count_guard(before_count: int, after_count: int) -> bool:
    """True when a revision's row count is acceptably close to the original."""
    delta = abs(after_count - before_count)
    return not (delta > before_count * MAX_ROW_DELTA_FRACTION and delta > MAX_ROW_DELTA_ROWS)


def _structured_diff(change: NodeChange, error: ValidationError) -> dict[str, Any] | None:
    """{"field", "before", "after"} when a change touches exactly the error's field."""
    if change.change_type != "modified":
        return None
    wanted = (error.field_name or "").strip().lower()
    fields = [f for f in change.changed_fields if f.strip().lower() == wanted]
    if not fields and len(change.changed_fields) == 1:
        fields = list(change.changed_fields)
    if len(fields) != 1:
        return None
    name = fields[0]
    return {
        "field": name,
        "before": (change.before or {}).get(name, ""),
        "after": (change.after or {}).get(name, ""),
    }


def _node_diff(before: dict[str, str] | None, graph: FlowGraph, error: ValidationError) -> dict[str, Any] | None:
    if before is None or error.node_num is None:
        return None
    node = graph.get(error.node_num)
    if node is None:
        return None
    diff = diff_rows({node.num: before}, {node.num: node.fields})
    return _structured_diff(diff.changes[0], error) if diff.changes else None


def build_repair_instruction(errors: list[ValidationError], known: list[FixAttempt]) -> str:
    """Repair instruction for the generator: one line per error plus proven guidance."""
    lines = ["Validation errors to fix:"]
    for i, e in enumerate(errors, start=1):
        where = f"Node {e.node_num}" if e.node_num is not None else "Flow"
        lines.append(f"{i}. {where} {e.display()}")
    return "\n".join(lines) + "\n" + format_known_fixes(known)


def _candidates(proven: list[FixAttempt], known: list[FixAttempt]) -> dict[str, list[FixAttempt]]:
    """Fixes carrying a structured diff, per signature, best first."""
    by_sig: dict[str, list[FixAttempt]] = {}
    seen: set[str] = set()
    for fix in [*proven, *known]:
        key = fix.id or f"{fix.error_pattern_id}:{fix.fix_description}"
        if key in seen or not fix.error_signature or not fix.fix_diff:
            continue
        seen.add(key)
        by_sig.setdefault(fix.error_signature, []).append(fix)
    for fixes in by_sig.values():
        fixes.sort(key=lambda f: (f.confidence, f.applied_count), reverse=True)
    return by_sig


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_prepare_node(learning: LearningClient | None, settings: PipelineSettings):
    async def prepare(state: RefineState) -> dict:
        proven: list[FixAttempt] = []
        if learning is not None:
            proven = await learning.proven_fixes(
                settings.proven_min_confidence,
                settings.proven_min_applied,
                settings.proven_fixes_limit,
            )
        logger.info("Refine loop for %s: %d proven fix(es) loaded", state["bot_id"], len(proven))
        return {"proven_fixes": proven, "status": "validating"}

    return prepare


def _make_validate_node(
    validator: FlowValidator,
    learning: LearningClient | None,
    settings: PipelineSettings,
    on_attempt: AttemptCallback | None = None,
):
    async def validate(state: RefineState) -> dict:
        attempt = state["attempt"] + 1
        graph_text = state["graph_text"]
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                validator.validate(graph_text, state["bot_id"]),
                timeout=settings.validator_timeout,
            )
        except asyncio.TimeoutError:
            outcome = ValidationOutcome(valid=False, transport_error="validator timed out")
        except Exception as e:
            logger.warning("Validator raised %s: %s", type(e).__name__, e)
            outcome = ValidationOutcome(valid=False, transport_error=str(e) or type(e).__name__)
        elapsed_ms = (time.monotonic() - started) * 1000

        if outcome.auth_error:
            raise AuthenticationError()

        at_cap = attempt >= state["max_attempts"]
        if outcome.transport_error:
            logger.warning(
                "Validation attempt %d/%d got no verdict: %s",
                attempt, state["max_attempts"], outcome.transport_error,
            )
            return {
                "attempt": attempt,
                "status": "max_attempts" if at_cap else "validating",
                "iterations": [{
                    "attempt": attempt, "step": "validate", "duration_ms": elapsed_ms,
                    "errors": None, "transport_error": outcome.transport_error,
                }],
            }

        errors = [] if outcome.valid else list(outcome.errors)
        if not outcome.valid and not errors:
            errors = [ValidationError(description="Validator rejected the flow without details")]
        signatures = [normalize_error(e) for e in errors]

        # One pattern write per reported error.
        graph = parse_flow(graph_text) if errors else None
        new_ids: dict[str, str] = {}
        if learning is not None:
            for error, sig in zip(errors, signatures):
                pattern_id = await learning.log_pattern(error, graph)
                if pattern_id is not None:
                    new_ids[sig] = pattern_id
        pattern_ids = {**state["pattern_ids"], **new_ids}

        outcomes = []
        present = set(signatures)
        for entry in state["pending"]:
            success = entry["signature"] not in present
            pattern_id = entry.get("pattern_id") or pattern_ids.get(entry["signature"])
            if learning is not None and pattern_id:
                await learning.log_fix(pattern_id, entry["description"], success, entry.get("fix_diff"))
            outcomes.append({**entry, "pattern_id": pattern_id, "success": success})

        verdict = (_fingerprint(graph_text), tuple(sorted(present)))
        if not errors:
            status = "valid"
            logger.info("Flow valid after %d attempt(s)", attempt)
        elif state["last_verdict"] == verdict:
            status = "stalled"
            logger.warning("No progress: identical errors for an unchanged flow; stopping at attempt %d", attempt)
        elif at_cap:
            status = "max_attempts"
            logger.warning("Refine cap reached with %d residual error(s)", len(errors))
        else:
            status = "refining"
            logger.info("Attempt %d/%d: %d error(s)", attempt, state["max_attempts"], len(errors))

        if on_attempt is not None:
            await on_attempt(attempt, len(errors))

        return {
            "attempt": attempt,
            "status": status,
            "errors": errors,
            "version_id": outcome.version_id if status == "valid" else state["version_id"],
            "pattern_ids": new_ids,
            "pending": [],
            "last_verdict": verdict,
            "fix_outcomes": outcomes,
            "iterations": [{
                "attempt": attempt, "step": "validate", "duration_ms": elapsed_ms,
                "errors": len(errors), "transport_error": None,
            }],
        }

    return validate


def _make_refine_node(
    generator: FlowGenerator,
    learning: LearningClient | None,
    settings: PipelineSettings,
):
    async def refine(state: RefineState) -> dict:
        started = time.monotonic()
        errors = state["errors"]
        graph = parse_flow(state["graph_text"])
        before_rows = graph.rows()

        known: list[FixAttempt] = []
        if learning is not None:
            known = await learning.known_fixes(errors, settings.known_min_confidence)
        candidates = _candidates(state["proven_fixes"], known)

        pending: list[dict[str, Any]] = []
        fixes_made: list[str] = []
        queued: list[ValidationError] = []

        for error in errors:
            sig = normalize_error(error)
            pattern_id = state["pattern_ids"].get(sig)
            row_before = dict(before_rows[error.node_num]) if error.node_num in before_rows else None
            description = None
            fix_diff = None

            for fix in candidates.get(sig, []):
                if not fix.is_proven(settings.proven_min_confidence, settings.proven_min_applied):
                    continue
                description = apply_proven_fix(graph, error, fix)
                if description:
                    fix_diff = fix.fix_diff
                    break

            if description is None:
                description = apply_builtin_fix(graph, error)
                if description:
                    fix_diff = _node_diff(row_before, graph, error)

            if description is None:
                queued.append(error)
                continue

            where = f"Node {error.node_num}" if error.node_num is not None else "Flow"
            fixes_made.append(f"{where}: {description}")
            pending.append({
                "signature": sig, "pattern_id": pattern_id,
                "description": description, "fix_diff": fix_diff,
            })

        graph_text = graph.serialize() if fixes_made else state["graph_text"]

        if queued:
            known_for_queued = [f for f in known if f.error_signature in {normalize_error(e) for e in queued}]
            instruction = build_repair_instruction(queued, known_for_queued)
            revision = None
            try:
                revision = await asyncio.wait_for(
                    generator.refine(graph_text, instruction, state["request"]),
                    timeout=settings.generator_timeout,
                )
            except (GenerationError, asyncio.TimeoutError) as e:
                logger.warning("Revision request failed, keeping current flow: %s", str(e) or type(e).__name__)
            except Exception as e:
                logger.warning("Revision request raised %s, keeping current flow: %s", type(e).__name__, e)

            revised = parse_flow(revision) if revision else None
            if revised is None:
                logger.debug("No revision to apply")
            elif revised.node_count == 0:
                logger.warning("Rejected revision: no parseable rows")
            elif not row_count_guard(len(before_rows), revised.node_count):
                logger.warning(
                    "Rejected revision: row count changed from %d to %d",
                    len(before_rows), revised.node_count,
                )
            else:
                graph_text = revision
                diff = diff_rows(before_rows, revised.rows())
                logger.info("Revision applied: %s", diff.summary)
                fixes_made.extend(describe_change(c) for c in diff.changes)
                for error, hits in match_changes_to_errors(diff.changes, queued).items():
                    sig = normalize_error(error)
                    own = [c for c in hits if c.node_num == error.node_num] or hits
                    pending.append({
                        "signature": sig,
                        "pattern_id": state["pattern_ids"].get(sig),
                        "description": "; ".join(describe_change(c) for c in own),
                        "fix_diff": _structured_diff(own[0], error) if len(own) == 1 else None,
                    })

        return {
            "graph_text": graph_text,
            "status": "validating",
            "pending": pending,
            "fixes_made": fixes_made,
            "iterations": [{
                "attempt": state["attempt"], "step": "refine",
                "duration_ms": (time.monotonic() - started) * 1000,
                "mechanical": len(errors) - len(queued), "queued": len(queued),
            }],
        }

    return refine


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_validate(state: RefineState) -> str:
    """Errors → refine. No verdict → validate again. Otherwise → END."""
    status = state["status"]
    if status == "refining":
        return "refine"
    if status == "validating":
        return "validate"
    return END


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_refine_graph(
    validator: FlowValidator,
    generator: FlowGenerator,
    learning: LearningClient | None = None,
    settings: PipelineSettings | None = None,
    on_attempt: AttemptCallback | None = None,
):
    """Construct and compile the validate-and-refine graph."""
    settings = settings or PipelineSettings()
    builder = StateGraph(RefineState)

    builder.add_node("prepare", _make_prepare_node(learning, settings))
    builder.add_node("validate", _make_validate_node(validator, learning, settings, on_attempt))
    builder.add_node("refine", _make_refine_node(generator, learning, settings))

    builder.add_edge(START, "prepare")
    builder.add_edge("prepare", "validate")
    builder.add_edge("refine", "validate")
    builder.add_conditional_edges(
        "validate",
        _route_after_validate,
        {"refine": "refine", "validate": "validate", END: END},
    )
    return builder.compile()


async def run_refine_loop(
    graph_text: str,
    bot_id: str,
    *,
    validator: FlowValidator,
    generator: FlowGenerator,
    learning: LearningClient | None = None,
    settings: PipelineSettings | None = None,
    request: GenerationRequest | None = None,
    on_attempt: AttemptCallback | None = None,
) -> RefineResult:
    """Validate ``graph_text`` and refine it until valid, stalled or capped.

    Raises AuthenticationError when the validator rejects the credential.
    """
    settings = settings or PipelineSettings()
    graph = build_refine_graph(validator, generator, learning, settings, on_attempt)
    initial: RefineState = {
        "graph_text": graph_text,
        "bot_id": bot_id,
        "request": request,
        "status": "validating",
        "attempt": 0,
        "max_attempts": settings.refine_max_attempts,
        "errors": [],
        "version_id": None,
        "proven_fixes": [],
        "pattern_ids": {},
        "pending": [],
        "last_verdict": None,
        "fixes_made": [],
        "fix_outcomes": [],
        "iterations": [],
    }
    # prepare + (validate, refine) per attempt, with headroom.
    final = await graph.ainvoke(initial, config={"recursion_limit": 2 * settings.refine_max_attempts + 5})

    return RefineResult(
        graph_text=final["graph_text"],
        valid=final["status"] == "valid",
        status=final["status"],
        attempts=final["attempt"],
        residual_errors=list(final["errors"]) if final["status"] != "valid" else [],
        fixes_made=list(final["fixes_made"]),
        version_id=final["version_id"],
        fix_outcomes=list(final["fix_outcomes"]),
        iterations=list(final["iterations"]),
    )

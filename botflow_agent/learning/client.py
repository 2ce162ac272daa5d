"""Degrade-gracefully client over a FixStore.

Every operation swallows store failures and timeouts: learning quality may
drop, a build never fails because the repository is unreachable. Failures
feed a process-wide BackoffPolicy so a dead repository is not hammered on
every call.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from botflow_agent.flow.model import FlowGraph
from botflow_agent.learning.models import ErrorPattern, ErrorToAvoid, FixAttempt, HumanFix
from botflow_agent.learning.signatures import (
    HUMAN_GUIDANCE,
    HUMAN_IDENTIFIED,
    ValidationError,
    categorize_error,
    extract_node_context,
    normalize_error,
    signature_for,
)
from botflow_agent.learning.store import KNOWN_FIX_MIN_CONFIDENCE, FixStore, FixStoreError, guidance_signature

logger = logging.getLogger("botflow_agent.learning.client")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class BackoffPolicy:
    """Probabilistic call skipping after consecutive failures.

    Below ``threshold`` consecutive failures every call is attempted. At or
    above it, a call is attempted with probability ``attempt_probability``.
    Any success resets the counter.
    """

    def __init__(
        self,
        threshold: int = 3,
        attempt_probability: float = 0.1,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.threshold = threshold
        self.attempt_probability = attempt_probability
        self._rng = rng
        self.consecutive_failures = 0

    @property
    def backing_off(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def should_attempt(self) -> bool:
        if self.backing_off:
            return self._rng() < self.attempt_probability
        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures == self.threshold:
            logger.warning(
                "Error learning temporarily unavailable after %d failures; reducing request frequency",
                self.threshold,
            )

    def reset(self) -> None:
        self.consecutive_failures = 0


_shared_backoff = BackoffPolicy()


def shared_backoff() -> BackoffPolicy:
    """The process-wide backoff used by every LearningClient unless one is injected."""
    return _shared_backoff


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class LearningClient:
    def __init__(
        self,
        store: FixStore,
        backoff: BackoffPolicy | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.backoff = backoff or shared_backoff()
        self.timeout = timeout

    async def close(self) -> None:
        await self.store.close()

    async def _call(self, label: str, fn: Callable[[], Awaitable[T]], fallback: T) -> T:
        if not self.backoff.should_attempt():
            logger.debug("Skipping %s (error learning backing off)", label)
            return fallback
        try:
            result = await asyncio.wait_for(fn(), timeout=self.timeout)
        except (FixStoreError, asyncio.TimeoutError) as e:
            self.backoff.record_failure()
            logger.warning("Error learning %s failed: %s", label, str(e) or type(e).__name__)
            return fallback
        except Exception as e:
            # Store failures never propagate to the caller.
            self.backoff.record_failure()
            logger.warning("Error learning %s raised %s: %s", label, type(e).__name__, e)
            return fallback
        self.backoff.record_success()
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_pattern(
        self,
        error: ValidationError,
        graph: FlowGraph | str | None = None,
    ) -> str | None:
        """Record one occurrence of ``error``; returns the pattern id or None."""
        signature = normalize_error(error)
        error_type = categorize_error(error)
        pattern = ErrorPattern(
            error_signature=signature,
            error_type=error_type,
            field_name=error.field_name,
            error_description=error.description,
            node_context=extract_node_context(graph, error.node_num) if graph is not None else None,
        )
        pattern_id = await self._call("log_pattern", lambda: self.store.upsert_pattern(pattern), None)
        if pattern_id is not None:
            logger.info("Logged error pattern %s (%s) -> %s", error_type, signature, pattern_id)
        return pattern_id

    async def log_fix(
        self,
        pattern_id: str,
        fix_description: str,
        success: bool,
        fix_diff: dict[str, Any] | None = None,
    ) -> str | None:
        fix_id = await self._call(
            "log_fix",
            lambda: self.store.record_fix(pattern_id, fix_description, success, fix_diff),
            None,
        )
        if fix_id is not None:
            logger.info(
                "Logged fix attempt %s for pattern %s: %s (%s)",
                fix_id, pattern_id, fix_description[:50], "success" if success else "failure",
            )
        return fix_id

    async def submit_human_fix(self, fix: HumanFix) -> bool:
        """Ingest reviewer corrections as Human-Identified patterns with successful fixes.

        Returns False when any write was skipped or failed.
        """
        ok = True
        for c in fix.fixes:
            description = c.error_description or f'Field "{c.field}" had incorrect value. {c.explanation}'.strip()
            pattern = ErrorPattern(
                error_signature=signature_for(c.field, description),
                error_type=HUMAN_IDENTIFIED,
                field_name=c.field,
                error_description=description,
                node_context={"node_num": c.node_num, "field": c.field},
            )
            pattern_id = await self._call(
                "submit_human_fix", lambda: self.store.upsert_pattern(pattern), None
            )
            if pattern_id is None:
                ok = False
                continue
            fix_id = await self.log_fix(
                pattern_id,
                f'Change "{c.current_value}" to "{c.correct_value}". {c.explanation}'.strip(),
                True,
                {"field": c.field, "before": c.current_value, "after": c.correct_value},
            )
            ok = ok and fix_id is not None

        if fix.general_guidance:
            guidance = ErrorPattern(
                error_signature=guidance_signature(fix.general_guidance),
                error_type=HUMAN_GUIDANCE,
                field_name=None,
                error_description=fix.general_guidance,
            )
            guidance_id = await self._call(
                "submit_guidance", lambda: self.store.upsert_pattern(guidance), None
            )
            ok = ok and guidance_id is not None
        logger.info("Human fix submitted: %d correction(s), ok=%s", len(fix.fixes), ok)
        return ok

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def errors_to_avoid(self, limit: int = 20) -> list[ErrorToAvoid]:
        return await self._call("errors_to_avoid", lambda: self.store.errors_to_avoid(limit), [])

    async def known_fixes(
        self,
        errors: list[ValidationError] | list[str],
        min_confidence: float = KNOWN_FIX_MIN_CONFIDENCE,
    ) -> list[FixAttempt]:
        """Known fixes for validator errors (or their precomputed signatures)."""
        if not errors:
            return []
        signatures = sorted({e if isinstance(e, str) else normalize_error(e) for e in errors})
        return await self._call(
            "known_fixes", lambda: self.store.known_fixes(signatures, min_confidence), []
        )

    async def proven_fixes(
        self,
        min_confidence: float = 0.7,
        min_applied: int = 3,
        limit: int = 50,
    ) -> list[FixAttempt]:
        return await self._call(
            "proven_fixes",
            lambda: self.store.proven_fixes(min_confidence, min_applied, limit),
            [],
        )

"""Per-phase timing and counter telemetry for pipeline runs.

PhaseMetrics     - snapshot of one phase's counters + duration.
MetricsCollector - async context manager; call .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("generate") as m:
        result = await generator.generate(request)
        m.input_tokens = result.input_tokens
        m.output_tokens = result.output_tokens
    run.timings.append(m.result)

The collector marks the phase "failed" when the block raises and re-raises
the exception; it never swallows it.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# PhaseMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class PhaseMetrics:
    """Timing and counter snapshot for one pipeline phase.

    Fields
    ------
    phase:         Phase name: "preflight", "generate", "validate", "scripts",
                   "deploy", "widget", "health", "export".
    start_ts:      Unix timestamp at phase start (time.time()).
    end_ts:        Unix timestamp at phase end.
    duration_ms:   Wall-clock duration from a monotonic clock.
    status:        "ok" | "failed" | "skipped".
    input_tokens:  LLM prompt tokens consumed (0 when no LLM call in phase).
    output_tokens: LLM completion tokens produced.
    iterations:    Validate/refine iterations (validate phase only).
    detail:        Short free-text note (e.g. "reused cached generation").
    """

    phase: str
    start_ts: float
    end_ts: float
    duration_ms: float
    status: str = "ok"
    input_tokens: int = 0
    output_tokens: int = 0
    iterations: int = 0
    detail: str = ""


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.status: str = "ok"
        self.input_tokens: int = 0
        self.output_tokens: int = 0
        self.iterations: int = 0
        self.detail: str = ""
        self._start_ts: float = 0.0
        self._start_mono: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        self._start_mono = time.monotonic()
        return self

    async def __aexit__(self, exc_type: object, *_args: object) -> None:
        if exc_type is not None and self.status == "ok":
            self.status = "failed"
        self._result = PhaseMetrics(
            phase=self.phase,
            start_ts=self._start_ts,
            end_ts=time.time(),
            duration_ms=(time.monotonic() - self._start_mono) * 1000,
            status=self.status,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            iterations=self.iterations,
            detail=self.detail,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        if self._result is None:
            return {}
        return dataclasses.asdict(self._result)


def skipped_phase(phase: str, detail: str = "") -> PhaseMetrics:
    now = time.time()
    return PhaseMetrics(phase=phase, start_ts=now, end_ts=now, duration_ms=0.0, status="skipped", detail=detail)


def format_phase_table(metrics: list[PhaseMetrics]) -> str:
    """Fixed-width per-phase duration table, with a total row."""
    lines = [f"{'phase':<12} {'status':<8} {'ms':>10}  detail", "-" * 48]
    for m in metrics:
        lines.append(f"{m.phase:<12} {m.status:<8} {m.duration_ms:>10.0f}  {m.detail}".rstrip())
    total = sum(m.duration_ms for m in metrics)
    lines.append("-" * 48)
    lines.append(f"{'total':<12} {'':<8} {total:>10.0f}")
    return "\n".join(lines)

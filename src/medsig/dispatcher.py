"""
Strategy dispatcher.

High-level role
---------------
For each request the dispatcher evaluates every registered base strategy, requires a
single highest-specificity match, builds the instruction with it and folds every
applicable modifier over the result in ascending priority order.

Every dispatch, successful or not, leaves an AuditEntry in a fixed-capacity ring
buffer owned by the dispatcher. Selection errors are recorded first and then re-raised.
"""

import logging
import math
import threading
import time
from collections import deque, namedtuple
from dataclasses import dataclass
from datetime import datetime, timezone

from .context import RequestContext
from .errors import AmbiguousStrategyError, NoMatchingStrategyError
from .instruction import SignatureInstruction
from .registry import StrategyRegistry
from .strategies import BaseStrategy

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_CAPACITY = 1000
DEFAULT_DISPATCH_BUDGET_MS = 2.0

CandidateRecord = namedtuple("CandidateRecord", ["name", "specificity", "matched"])

AuditEntry = namedtuple(
    "AuditEntry",
    ["timestamp", "context", "candidates", "selected", "applied_modifiers", "duration_ms", "error"],
)


@dataclass(frozen=True)
class PreviewResult:
    success: bool
    selected: str | None
    modifiers: tuple[str, ...]
    reason: str | None = None


@dataclass(frozen=True)
class PerformanceStats:
    count: int
    average_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float


class StrategyDispatcher:

    def __init__(
        self,
        registry: StrategyRegistry,
        *,
        audit_capacity: int = DEFAULT_AUDIT_CAPACITY,
        dispatch_budget_ms: float = DEFAULT_DISPATCH_BUDGET_MS,
    ):
        if audit_capacity < 1:
            raise ValueError(f"Invalid audit capacity: {audit_capacity!r}")
        self._registry = registry
        self._budget_ms = dispatch_budget_ms
        self._audit: deque[AuditEntry] = deque(maxlen=audit_capacity)
        self._audit_lock = threading.Lock()

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    # ---- selection ----

    @staticmethod
    def _evaluate(context: RequestContext, bases: dict[str, BaseStrategy]) -> list[CandidateRecord]:
        return [CandidateRecord(name, s.specificity, bool(s.matches(context))) for name, s in bases.items()]

    @staticmethod
    def _choose(candidates: list[CandidateRecord], context: RequestContext) -> str:
        matched = sorted((c for c in candidates if c.matched), key=lambda c: c.specificity, reverse=True)
        if not matched:
            raise NoMatchingStrategyError(context, [c.name for c in candidates])
        top = matched[0].specificity
        tied = [c.name for c in matched if c.specificity == top]
        if len(tied) > 1:
            raise AmbiguousStrategyError(tied, top, context)
        return matched[0].name

    def _applicable_modifiers(self, context: RequestContext) -> list[tuple[str, object]]:
        applicable = [(n, m) for n, m in self._registry.modifiers().items() if m.applies_to(context)]
        return sorted(applicable, key=lambda item: item[1].priority)

    # ---- dispatch ----

    def dispatch(self, context: RequestContext) -> SignatureInstruction:
        started = time.perf_counter()
        candidates: list[CandidateRecord] = []
        selected = None
        applied: list[str] = []
        error = None
        try:
            bases = self._registry.base_strategies()
            candidates = self._evaluate(context, bases)
            selected = self._choose(candidates, context)
            instruction = bases[selected].build_instruction(context)
            for name, modifier in self._applicable_modifiers(context):
                instruction = modifier.modify(instruction, context)
                applied.append(name)
            logger.debug(f"Dispatched {context.id}: {' → '.join([selected, *applied])}")
            return instruction
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            self._record(
                AuditEntry(
                    timestamp=datetime.now(timezone.utc),
                    context=context,
                    candidates=tuple(candidates),
                    selected=selected,
                    applied_modifiers=tuple(applied),
                    duration_ms=duration_ms,
                    error=error,
                )
            )
            if duration_ms > self._budget_ms:
                logger.warning(
                    f"Dispatch for {context.medication.id!r} took {duration_ms:.3f} ms (budget {self._budget_ms} ms)"
                )

    def _record(self, entry: AuditEntry) -> None:
        with self._audit_lock:
            self._audit.append(entry)

    def preview(self, context: RequestContext) -> PreviewResult:
        """
        Dry run of the selection: never raises, never touches the audit log.
        """
        try:
            modifiers = tuple(name for name, _ in self._applicable_modifiers(context))
            candidates = self._evaluate(context, self._registry.base_strategies())
            selected = self._choose(candidates, context)
        except Exception as e:
            return PreviewResult(False, None, (), str(e))
        return PreviewResult(True, selected, modifiers)

    def explain_selection(self, context: RequestContext) -> str:
        """Narrative of how a request would be handled, for diagnostics."""
        medication = context.medication
        lines = [
            f"Request {context.id} for {medication.name!r} ({medication.dose_form}): "
            f"{context.dose.value} {context.dose.unit}, route {context.route or 'default'}, {context.frequency}",
        ]
        try:
            explanation = self._registry.explain_selection(context)
        except Exception as e:
            return "\n".join([*lines, f"Could not evaluate strategies: {e}"])

        lines.append("Base strategies:")
        for item in explanation.bases:
            mark = "+" if item.matched else "-"
            lines.append(f"  {mark} {item.name} [{getattr(item.rank, 'name', item.rank)}] {item.rationale}")
        lines.append("Modifiers:")
        for item in explanation.modifiers:
            mark = "+" if item.matched else "-"
            lines.append(f"  {mark} {item.name} [{item.rank}] {item.rationale}")

        preview = self.preview(context)
        if preview.success:
            lines.append(f"Selected: {preview.selected}")
            lines.append(f"Execution order: {' → '.join(explanation.execution_order)}")
        else:
            lines.append(f"Selection fails: {preview.reason}")
        return "\n".join(lines)

    # ---- audit ----

    def get_audit_log(self, limit: int | None = None) -> list[AuditEntry]:
        """Oldest first; `limit` keeps only the most recent entries."""
        with self._audit_lock:
            entries = list(self._audit)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear_audit_log(self) -> None:
        with self._audit_lock:
            self._audit.clear()

    def get_performance_stats(self) -> PerformanceStats:
        durations = sorted(entry.duration_ms for entry in self.get_audit_log())
        if not durations:
            return PerformanceStats(0, 0.0, 0.0, 0.0, 0.0)

        def percentile(p: float) -> float:
            return durations[max(0, math.ceil(len(durations) * p) - 1)]

        return PerformanceStats(
            count=len(durations),
            average_ms=sum(durations) / len(durations),
            p50_ms=percentile(0.50),
            p95_ms=percentile(0.95),
            p99_ms=percentile(0.99),
        )

"""
Admission control and usage accounting.

The usage ledger is append-only: every completed external operation appends
one entry keyed by its UTC date, and a day's usage is the sum of that day's
entries. ``CostGuard.evaluate`` is read-only and never raises; if the ledger
cannot be read it assumes zero usage and reports ``degraded=True``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Final, Iterable, Optional

from .interfaces import UsageLedger
from .models import UsageLedgerEntry

logger = logging.getLogger(__name__)

MODEL_API: Final[str] = "model"
CRM_API: Final[str] = "crm"

WARNING_OK: Final[str] = "ok"
WARNING_WARNING: Final[str] = "warning"
WARNING_CRITICAL: Final[str] = "critical"
WARNING_EXCEEDED: Final[str] = "exceeded"


@dataclass(frozen=True, slots=True)
class OperationProfile:
    api: str
    input_tokens: int
    output_tokens: int


# Token estimates per model operation; CRM operations are free but still
# count against the daily call ceiling.
OPERATION_PROFILES: Final[dict[str, OperationProfile]] = {
    "text_extraction": OperationProfile(MODEL_API, 2000, 0),
    "document_classification": OperationProfile(MODEL_API, 800, 50),
    "quick_parse": OperationProfile(MODEL_API, 1000, 100),
    "full_parse": OperationProfile(MODEL_API, 3000, 500),
    "crm_search": OperationProfile(CRM_API, 0, 0),
    "crm_create": OperationProfile(CRM_API, 0, 0),
    "crm_update": OperationProfile(CRM_API, 0, 0),
    "crm_upload": OperationProfile(CRM_API, 0, 0),
}


@dataclass(frozen=True, slots=True)
class CostLimits:
    daily_call_ceiling: int = 1500
    daily_cost_ceiling: float = 50.0
    calls_per_file: int = 6
    cost_per_file: float = 0.033
    warning_threshold: float = 0.80
    critical_threshold: float = 0.95
    cost_per_1m_input_tokens: float = 0.15
    cost_per_1m_output_tokens: float = 0.60


@dataclass(slots=True)
class UsageSnapshot:
    usage_date: date
    calls: int = 0
    cost: float = 0.0
    calls_by_api: dict[str, int] = field(default_factory=dict)
    cost_by_api: dict[str, float] = field(default_factory=dict)
    remaining_calls: int = 0
    remaining_budget: float = 0.0
    warning_level: str = WARNING_OK
    degraded: bool = False

    @property
    def can_process_more(self) -> bool:
        return self.remaining_calls > 0 and self.remaining_budget > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "date": self.usage_date.isoformat(),
            "calls": self.calls,
            "cost_usd": round(self.cost, 6),
            "calls_by_api": dict(self.calls_by_api),
            "cost_by_api": {k: round(v, 6) for k, v in self.cost_by_api.items()},
            "remaining_calls": self.remaining_calls,
            "remaining_budget_usd": round(self.remaining_budget, 6),
            "warning_level": self.warning_level,
            "can_process_more": self.can_process_more,
            "degraded": self.degraded,
        }


@dataclass(slots=True)
class CostEstimate:
    estimated_calls: int
    estimated_cost: float
    would_exceed_limit: bool = False
    warning_level: str = WARNING_OK


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    usage: UsageSnapshot
    estimate: CostEstimate
    reason: Optional[str] = None


@dataclass(slots=True)
class BatchCostSummary:
    batch_id: str
    calls: int = 0
    cost: float = 0.0
    by_operation: dict[str, dict[str, float]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "calls": self.calls,
            "cost_usd": round(self.cost, 6),
            "by_operation": self.by_operation,
        }


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""

    return math.ceil(len(text or "") / 4)


def model_cost(input_tokens: int, output_tokens: int, limits: CostLimits = CostLimits()) -> float:
    return (input_tokens / 1_000_000) * limits.cost_per_1m_input_tokens + (
        output_tokens / 1_000_000
    ) * limits.cost_per_1m_output_tokens


def warning_level(current: float, limit: float, limits: CostLimits = CostLimits()) -> str:
    if limit <= 0:
        return WARNING_EXCEEDED
    ratio = current / limit
    if ratio >= 1:
        return WARNING_EXCEEDED
    if ratio >= limits.critical_threshold:
        return WARNING_CRITICAL
    if ratio >= limits.warning_threshold:
        return WARNING_WARNING
    return WARNING_OK


def format_cost(usd: float) -> str:
    return f"${usd:.4f}"


class CostGuard:
    """Gate batch admission on the daily usage ledger and record usage."""

    def __init__(
        self,
        ledger: UsageLedger,
        limits: CostLimits | None = None,
        clock: Callable[[], date] = utc_today,
    ) -> None:
        self._ledger = ledger
        self._limits = limits or CostLimits()
        self._clock = clock

    @property
    def limits(self) -> CostLimits:
        return self._limits

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def _summarize(self, usage_date: date, entries: Iterable[UsageLedgerEntry], degraded: bool) -> UsageSnapshot:
        snapshot = UsageSnapshot(usage_date=usage_date, degraded=degraded)
        for entry in entries:
            snapshot.calls += entry.call_count
            snapshot.cost += entry.estimated_cost
            snapshot.calls_by_api[entry.api] = snapshot.calls_by_api.get(entry.api, 0) + entry.call_count
            snapshot.cost_by_api[entry.api] = snapshot.cost_by_api.get(entry.api, 0.0) + entry.estimated_cost
        snapshot.remaining_calls = max(0, self._limits.daily_call_ceiling - snapshot.calls)
        snapshot.remaining_budget = max(0.0, self._limits.daily_cost_ceiling - snapshot.cost)
        snapshot.warning_level = warning_level(snapshot.cost, self._limits.daily_cost_ceiling, self._limits)
        return snapshot

    def today_usage(self) -> UsageSnapshot:
        today = self._clock()
        try:
            entries = self._ledger.entries_for_date(today)
        except Exception as exc:
            logger.warning("[cost] usage ledger unavailable, assuming zero usage: %s", exc)
            return self._summarize(today, [], degraded=True)
        return self._summarize(today, entries, degraded=False)

    def evaluate(self, file_count: int) -> AdmissionDecision:
        """Decide whether a batch of ``file_count`` files may start today."""

        usage = self.today_usage()
        estimate = CostEstimate(
            estimated_calls=file_count * self._limits.calls_per_file,
            estimated_cost=file_count * self._limits.cost_per_file,
        )

        if usage.calls + estimate.estimated_calls > self._limits.daily_call_ceiling:
            estimate.would_exceed_limit = True
            estimate.warning_level = WARNING_EXCEEDED
            reason = (
                f"Daily API call limit would be exceeded. Current: {usage.calls}, "
                f"Estimated: +{estimate.estimated_calls}, Limit: {self._limits.daily_call_ceiling}"
            )
            return AdmissionDecision(allowed=False, usage=usage, estimate=estimate, reason=reason)

        if usage.cost + estimate.estimated_cost > self._limits.daily_cost_ceiling:
            estimate.would_exceed_limit = True
            estimate.warning_level = WARNING_EXCEEDED
            reason = (
                f"Daily cost limit would be exceeded. Current: {format_cost(usage.cost)}, "
                f"Estimated: +{format_cost(estimate.estimated_cost)}, "
                f"Limit: {format_cost(self._limits.daily_cost_ceiling)}"
            )
            return AdmissionDecision(allowed=False, usage=usage, estimate=estimate, reason=reason)

        estimate.warning_level = warning_level(
            usage.cost + estimate.estimated_cost, self._limits.daily_cost_ceiling, self._limits
        )
        if estimate.warning_level != WARNING_OK:
            logger.warning(
                "[cost] batch of %d files projects daily spend to %s level",
                file_count,
                estimate.warning_level,
            )
        return AdmissionDecision(allowed=True, usage=usage, estimate=estimate)

    def batch_summary(self, batch_id: str) -> BatchCostSummary:
        summary = BatchCostSummary(batch_id=batch_id)
        try:
            entries = self._ledger.entries_for_batch(batch_id)
        except Exception as exc:
            logger.warning("[cost] could not load usage for batch %s: %s", batch_id, exc)
            return summary
        for entry in entries:
            summary.calls += entry.call_count
            summary.cost += entry.estimated_cost
            bucket = summary.by_operation.setdefault(entry.operation, {"calls": 0, "cost_usd": 0.0})
            bucket["calls"] += entry.call_count
            bucket["cost_usd"] += entry.estimated_cost
        return summary

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def record(
        self,
        operation: str,
        *,
        batch_id: Optional[str] = None,
        calls: int = 1,
        text: Optional[str] = None,
    ) -> Optional[UsageLedgerEntry]:
        """Append one usage entry. Ledger failures are logged, never raised."""

        profile = OPERATION_PROFILES.get(operation, OperationProfile(MODEL_API, 0, 0))
        output_tokens = profile.output_tokens
        if text is not None:
            output_tokens += estimate_tokens(text)
        cost = 0.0
        if profile.api == MODEL_API:
            cost = model_cost(profile.input_tokens, output_tokens, self._limits) * calls
        entry = UsageLedgerEntry(
            usage_date=self._clock(),
            operation=operation,
            api=profile.api,
            call_count=calls,
            estimated_cost=cost,
            tokens=(profile.input_tokens + output_tokens) * calls,
            batch_id=batch_id,
        )
        try:
            self._ledger.append(entry)
        except Exception as exc:
            logger.warning("[cost] failed to record %s usage for batch %s: %s", operation, batch_id, exc)
            return None
        logger.debug("[cost] recorded %s tokens=%d cost=%s", operation, entry.tokens, format_cost(cost))
        return entry


__all__ = [
    "AdmissionDecision",
    "BatchCostSummary",
    "CostEstimate",
    "CostGuard",
    "CostLimits",
    "OPERATION_PROFILES",
    "UsageSnapshot",
    "estimate_tokens",
    "format_cost",
    "model_cost",
    "utc_today",
    "warning_level",
]

"""Document classification rules.

The model verdict is a black box; this module owns what the engine does with
it: a free keyword pre-filter that spares obvious non-recruitment documents a
model call, normalization of raw verdicts against the confidence threshold, and
batch-level statistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Mapping, Optional

from .models import ClassificationResult, DocumentType

logger = logging.getLogger(__name__)

MIN_CONFIDENCE_DEFAULT: Final[float] = 0.70
HIGH_CONFIDENCE_DEFAULT: Final[float] = 0.90

RECRUITMENT_INDICATORS: Final[tuple[str, ...]] = (
    "curriculum vitae",
    "resume",
    "cover letter",
    "motivation letter",
    "application",
    "work experience",
    "employment history",
    "education",
    "qualifications",
    "skills",
    "professional summary",
    "career objective",
    "references available",
    "applying for",
    "position",
    "job",
    "candidate",
)

NEGATIVE_INDICATORS: Final[tuple[str, ...]] = (
    "invoice number",
    "payment due",
    "total amount",
    "billing address",
    "tax id",
    "purchase order",
    "quotation",
    "estimate",
    "terms and conditions",
    "contract agreement",
    "legal document",
)

RECRUITMENT_FILENAME_HINTS: Final[tuple[str, ...]] = ("cv", "resume", "cover", "application", "app")
NEGATIVE_FILENAME_HINTS: Final[tuple[str, ...]] = ("invoice", "bill", "receipt", "contract")

_TYPE_MAP: Final[dict[str, DocumentType]] = {
    "cv": DocumentType.CV,
    "resume": DocumentType.CV,
    "cover_letter": DocumentType.COVER_LETTER,
    "coverletter": DocumentType.COVER_LETTER,
    "application": DocumentType.APPLICATION,
    "supporting_document": DocumentType.SUPPORTING_DOCUMENT,
}
IRRELEVANT_TYPE: Final[str] = "irrelevant"


@dataclass(frozen=True, slots=True)
class HeuristicVerdict:
    likely_relevant: bool
    confidence: float
    reason: str


def quick_heuristic_check(text: str, file_name: str) -> HeuristicVerdict:
    """Cheap keyword pre-filter. Only rejects documents that are clearly not recruitment related."""

    lower = (text or "").lower()
    name = (file_name or "").lower()

    if any(hint in name for hint in RECRUITMENT_FILENAME_HINTS):
        return HeuristicVerdict(True, 0.8, "Filename indicates recruitment document")
    if any(hint in name for hint in NEGATIVE_FILENAME_HINTS):
        return HeuristicVerdict(False, 0.9, "Filename indicates non-recruitment document")

    positive = sum(1 for indicator in RECRUITMENT_INDICATORS if indicator in lower)
    negative = sum(1 for indicator in NEGATIVE_INDICATORS if indicator in lower)

    if negative >= 2:
        return HeuristicVerdict(False, 0.85, f"Found {negative} negative indicators (invoice/contract/etc)")
    if positive >= 3:
        return HeuristicVerdict(True, 0.75, f"Found {positive} recruitment indicators")
    if positive >= 1:
        return HeuristicVerdict(True, 0.6, f"Found some recruitment indicators ({positive})")
    return HeuristicVerdict(True, 0.5, "Uncertain - needs model classification")


def heuristic_rejection(verdict: HeuristicVerdict) -> ClassificationResult:
    return ClassificationResult(
        document_type=DocumentType.SUPPORTING_DOCUMENT,
        confidence=verdict.confidence,
        should_process=False,
        reason=f"Heuristic pre-filter: {verdict.reason}",
        raw_type="heuristic_rejection",
    )


def fallback_classification(reason: str) -> ClassificationResult:
    """Verdict used when the model output is unusable. Never rejects."""

    return ClassificationResult(
        document_type=DocumentType.SUPPORTING_DOCUMENT,
        confidence=0.5,
        should_process=True,
        reason=reason,
        raw_type="classification_failed",
    )


def insufficient_text_classification(min_length: int) -> ClassificationResult:
    return ClassificationResult(
        document_type=DocumentType.SUPPORTING_DOCUMENT,
        confidence=1.0,
        should_process=False,
        reason=f"Document text is too short (< {min_length} characters)",
        raw_type=IRRELEVANT_TYPE,
    )


def interpret_verdict(
    raw: Optional[Mapping[str, Any]],
    min_confidence: float = MIN_CONFIDENCE_DEFAULT,
) -> ClassificationResult:
    """Normalize a raw model verdict into a :class:`ClassificationResult`."""

    if not isinstance(raw, Mapping):
        return fallback_classification("Classification failed - defaulting to supporting document")

    raw_type = str(raw.get("document_type") or "").strip().lower()
    confidence_value = raw.get("confidence")
    if not raw_type or isinstance(confidence_value, bool) or not isinstance(confidence_value, (int, float)):
        logger.warning("[classify] invalid verdict structure: %s", dict(raw))
        return fallback_classification("Invalid classification structure")

    confidence = min(1.0, max(0.0, float(confidence_value)))
    reasoning = raw.get("reasoning") or None

    if raw_type == IRRELEVANT_TYPE:
        return ClassificationResult(
            document_type=DocumentType.SUPPORTING_DOCUMENT,
            confidence=confidence,
            should_process=False,
            reason=f"Document identified as '{raw_type}' - not recruitment related",
            raw_type=raw_type,
        )

    document_type = _TYPE_MAP.get(raw_type)
    if document_type is None:
        return fallback_classification(f"Unknown document type '{raw_type}' - defaulting to supporting document")

    if confidence < min_confidence:
        return ClassificationResult(
            document_type=document_type,
            confidence=confidence,
            should_process=False,
            reason=(
                f"Confidence too low: {confidence * 100:.1f}% "
                f"(required: {min_confidence * 100:.0f}%)"
            ),
            raw_type=raw_type,
        )

    return ClassificationResult(
        document_type=document_type,
        confidence=confidence,
        should_process=True,
        reason=reasoning,
        raw_type=raw_type,
    )


@dataclass(slots=True)
class ClassificationStats:
    total: int = 0
    accepted: int = 0
    rejected: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    high_confidence: int = 0
    low_confidence: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "by_type": dict(self.by_type),
            "average_confidence": round(self.average_confidence, 4),
            "high_confidence": self.high_confidence,
            "low_confidence": self.low_confidence,
        }


def classification_stats(
    results: Iterable[ClassificationResult],
    *,
    min_confidence: float = MIN_CONFIDENCE_DEFAULT,
    high_confidence: float = HIGH_CONFIDENCE_DEFAULT,
) -> ClassificationStats:
    stats = ClassificationStats()
    total_confidence = 0.0
    for result in results:
        stats.total += 1
        if result.should_process:
            stats.accepted += 1
        else:
            stats.rejected += 1
        key = result.raw_type or result.document_type.value
        stats.by_type[key] = stats.by_type.get(key, 0) + 1
        total_confidence += result.confidence
        if result.confidence >= high_confidence:
            stats.high_confidence += 1
        elif result.confidence < min_confidence:
            stats.low_confidence += 1
    if stats.total:
        stats.average_confidence = total_confidence / stats.total
    return stats


__all__ = [
    "ClassificationStats",
    "HeuristicVerdict",
    "classification_stats",
    "fallback_classification",
    "heuristic_rejection",
    "insufficient_text_classification",
    "interpret_verdict",
    "quick_heuristic_check",
]

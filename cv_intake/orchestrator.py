"""
Batch intake orchestration.

One run moves a batch through three sequential phases:

1. Per file: validate size, extract text, classify, quick-parse identity.
2. Group accepted files into candidate packs.
3. Per pack: apply batch filters, route to the hold queue, or persist one
   candidate and mirror it to the CRM.

Every status transition is written as soon as it happens. A rerun after a
crash or timeout loads the stored file statuses once and never reads a file
that already finished as ``complete`` or ``rejected``.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Final, Iterable, Optional

from .classification import classification_stats, heuristic_rejection, quick_heuristic_check
from .cost_guard import CostGuard
from .duplicate_detector import DuplicateDetector, DuplicateMatch
from .errors import (
    ERR_INSUFFICIENT_TEXT,
    AdmissionDenied,
    BatchFailure,
    ClassificationRejection,
    FileProcessingFailure,
    FileValidationError,
    PackProcessingFailure,
    SyncFailure,
    describe_error,
    reason_for,
)
from .identity import normalize_email, normalize_phone
from .interfaces import (
    BatchStore,
    CandidateStore,
    Classifier,
    FileStatusStore,
    HoldQueueStore,
    ObjectStore,
    RejectionLog,
    StructuredParser,
    TextExtractor,
)
from .models import (
    TERMINAL_FILE_STATUSES,
    Batch,
    BatchConfig,
    BatchStatus,
    CandidatePack,
    CandidateRecord,
    ClassificationResult,
    ClassifiedFile,
    DocumentType,
    FileRecord,
    FileStatus,
    HoldQueueEntry,
    HoldReason,
    IsolationPolicy,
    ProcessingLimits,
    StoredObject,
)
from .pack_grouper import GroupingResult, group_into_packs
from .sync import CandidateSyncer
from .utils.log import event

logger = logging.getLogger(__name__)

RAW_TEXT_PREVIEW_CHARS: Final[int] = 1000

STUDENT_REJECTION: Final[str] = "Currently enrolled as student"
INSUFFICIENT_TEXT: Final[str] = "Insufficient text content"

HOLD_NOTES: Final[dict[HoldReason, str]] = {
    HoldReason.MISSING_CV_FILE: "Sent to hold queue - no CV in candidate pack",
    HoldReason.MISSING_CONTACT_INFO: "Sent to hold queue - missing contact info",
    HoldReason.DUPLICATE_DETECTED: "Sent to hold queue - duplicate detected",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _mime_hint(file_name: str) -> str:
    return mimetypes.guess_type(file_name)[0] or ""


def _non_blank(values: Iterable[str]) -> list[str]:
    return [value.strip() for value in values if value and value.strip()]


def missing_required_skills(required: Iterable[str], skills: Iterable[str]) -> list[str]:
    """Required skills that no candidate skill contains (case-insensitive). Blank entries are ignored."""

    lowered = [skill.lower() for skill in _non_blank(skills)]
    return [req for req in _non_blank(required) if not any(req.lower() in skill for skill in lowered)]


def has_required_skills(required: Iterable[str], skills: Iterable[str]) -> bool:
    """True when any one required skill is matched, or only blanks are required."""

    wanted = _non_blank(required)
    if not wanted:
        return True
    return len(missing_required_skills(wanted, skills)) < len(wanted)


# ---------------------------------------------------------------------------
# Run bookkeeping
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class IntakeDependencies:
    """Every collaborator a batch run talks to."""

    batches: BatchStore
    files: FileStatusStore
    candidates: CandidateStore
    hold_queue: HoldQueueStore
    rejections: RejectionLog
    objects: ObjectStore
    extractor: TextExtractor
    classifier: Classifier
    parser: StructuredParser
    cost_guard: CostGuard
    duplicates: DuplicateDetector
    syncer: CandidateSyncer


@dataclass(slots=True)
class BatchStats:
    """Run counters.

    File-level: total, skipped, classified, rejected_by_classification,
    rejected_by_filters, failed. Pack-level: packs, held_for_review,
    duplicates_found, processed, candidates_created, sync_failed.
    ``files_done`` counts files that reached a final status (or were skipped)
    and drives the batch progress column.
    """

    total: int = 0
    skipped: int = 0
    classified: int = 0
    rejected_by_classification: int = 0
    rejected_by_filters: int = 0
    failed: int = 0
    held_for_review: int = 0
    duplicates_found: int = 0
    processed: int = 0
    packs: int = 0
    candidates_created: int = 0
    sync_failed: int = 0
    files_done: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class BatchRunResult:
    batch_id: str
    status: BatchStatus
    stats: BatchStats = field(default_factory=BatchStats)
    skipped: bool = False
    reason: Optional[str] = None
    classification: dict[str, Any] = field(default_factory=dict)
    cost: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "skipped": self.skipped,
            "reason": self.reason,
            "stats": self.stats.as_dict(),
            "classification": dict(self.classification),
            "cost": dict(self.cost),
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BatchOrchestrator:
    def __init__(
        self,
        deps: IntakeDependencies,
        limits: Optional[ProcessingLimits] = None,
        isolation: IsolationPolicy = IsolationPolicy.ISOLATE_PACK,
        *,
        min_confidence: float = 0.70,
        high_confidence: float = 0.90,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._deps = deps
        self._limits = limits or ProcessingLimits()
        self._isolation = isolation
        self._min_confidence = min_confidence
        self._high_confidence = high_confidence
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def is_timed_out(self, batch: Batch) -> bool:
        """Whether a batch stuck in ``processing`` has exceeded its time budget."""

        if batch.created_at is None:
            logger.warning("[batch] %s has no created_at; cannot judge timeout", batch.id)
            return False
        created_at = batch.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = (self._clock() - created_at).total_seconds()
        budget = self._limits.batch_timeout_seconds(batch.file_count)
        logger.debug("[batch] %s elapsed=%.0fs budget=%.0fs", batch.id, elapsed, budget)
        return elapsed > budget

    def run(self, batch_id: str, client_id: str) -> BatchRunResult:
        """Process one batch. Returns a skipped result when there is nothing to do."""

        stats = BatchStats()
        batch = self._deps.batches.get(batch_id)
        if batch is None:
            raise BatchFailure(f"Batch {batch_id} not found")

        if batch.status in (BatchStatus.COMPLETE, BatchStatus.FAILED):
            logger.info("[batch] %s already %s; nothing to do", batch_id, batch.status.value)
            return BatchRunResult(batch_id, batch.status, stats, skipped=True, reason=f"batch already {batch.status.value}")

        if batch.status is BatchStatus.PROCESSING:
            if not self.is_timed_out(batch):
                logger.info("[batch] %s is being processed by another run; skipping", batch_id)
                return BatchRunResult(batch_id, batch.status, stats, skipped=True, reason="batch already processing")
            logger.warning(
                "[batch] %s timed out in processing; starting recovery attempt %d",
                batch_id,
                batch.recovery_attempts + 1,
            )
            self._deps.batches.mark_recovery(batch_id)
            event("batch.recovery", batch_id=batch_id, recovery_attempt=batch.recovery_attempts + 1)

        try:
            return self._execute(batch_id, client_id, stats)
        except BatchFailure as exc:
            reason = reason_for(exc)
            logger.error("[batch] %s failed: %s", batch_id, reason)
            self._deps.batches.set_status(batch_id, BatchStatus.FAILED, stats.files_done)
            event("batch.failed", batch_id=batch_id, **describe_error(exc))
            return BatchRunResult(batch_id, BatchStatus.FAILED, stats, reason=reason)
        except Exception as exc:
            logger.exception("[batch] %s aborted by unexpected error", batch_id)
            self._deps.batches.set_status(batch_id, BatchStatus.FAILED, stats.files_done)
            event("batch.failed", batch_id=batch_id, **describe_error(exc))
            raise

    def _execute(self, batch_id: str, client_id: str, stats: BatchStats) -> BatchRunResult:
        deps = self._deps
        objects = deps.objects.list(f"{client_id}/{batch_id}")
        stats.total = len(objects)

        if not objects:
            logger.info("[batch] %s has no files; marking complete", batch_id)
            deps.batches.set_status(batch_id, BatchStatus.COMPLETE, 0)
            return BatchRunResult(batch_id, BatchStatus.COMPLETE, stats, reason="no files")

        if len(objects) > self._limits.max_files_per_batch:
            raise BatchFailure(
                f"Batch has {len(objects)} files; maximum is {self._limits.max_files_per_batch}"
            )

        decision = deps.cost_guard.evaluate(len(objects))
        if not decision.allowed:
            raise AdmissionDenied(decision.reason or "Daily usage ceiling reached")

        if not deps.batches.claim(batch_id):
            logger.info("[batch] %s was claimed by another run; skipping", batch_id)
            return BatchRunResult(batch_id, BatchStatus.PROCESSING, stats, skipped=True, reason="batch claimed by another run")

        config = deps.batches.load_config(batch_id)
        deps.batches.set_progress(batch_id, 0, stats.total)
        logger.info(
            "[batch] %s started: %d files, upload_type=%s, required_skills=%s, exclude_students=%s",
            batch_id,
            stats.total,
            config.upload_type,
            config.required_skills,
            config.exclude_students,
        )

        existing = {record.file_path: record for record in deps.files.list_for_batch(batch_id)}
        results: list[ClassificationResult] = []
        accepted = self._classify_files(batch_id, objects, existing, stats, results)

        classification = classification_stats(
            results, min_confidence=self._min_confidence, high_confidence=self._high_confidence
        ).as_dict()
        if results:
            logger.info("[batch] %s classification: %s", batch_id, classification)

        grouping = self._group(batch_id, accepted, stats)
        for pack in grouping.packs.values():
            self._run_pack(batch_id, client_id, pack, config, stats)

        final_status = BatchStatus.AWAITING_INPUT if stats.held_for_review else BatchStatus.COMPLETE
        deps.batches.set_status(batch_id, final_status, stats.files_done)

        cost = deps.cost_guard.batch_summary(batch_id).as_dict()
        logger.info("[batch] %s finished %s: %s", batch_id, final_status.value, stats.as_dict())
        event("batch.completed", batch_id=batch_id, status=final_status.value, stats=stats.as_dict(), cost=cost)
        return BatchRunResult(batch_id, final_status, stats, classification=classification, cost=cost)

    # ------------------------------------------------------------------
    # Phase 1: per-file classification
    # ------------------------------------------------------------------

    def _classify_files(
        self,
        batch_id: str,
        objects: list[StoredObject],
        existing: dict[str, FileRecord],
        stats: BatchStats,
        results: list[ClassificationResult],
    ) -> list[ClassifiedFile]:
        accepted: list[ClassifiedFile] = []
        for index, obj in enumerate(objects, start=1):
            record = existing.get(obj.path)
            if record is not None and record.status in TERMINAL_FILE_STATUSES:
                logger.info("[batch] skipping %s: already %s", obj.name, record.status.value)
                stats.skipped += 1
                stats.files_done += 1
                continue

            logger.info("[batch] file %d/%d: %s", index, len(objects), obj.name)
            try:
                classified = self._classify_file(batch_id, obj, stats, results)
            except ClassificationRejection as exc:
                self._reject_file(batch_id, obj, exc, stats)
            except FileValidationError as exc:
                self._fail_file(batch_id, obj, exc, stats)
                self._deps.rejections.record(
                    batch_id, obj.name, obj.path, "validation", str(exc), {"error_code": str(exc.error_code)}
                )
            except Exception as exc:
                self._fail_file(batch_id, obj, exc, stats)
                if self._isolation is IsolationPolicy.FAIL_BATCH:
                    raise BatchFailure(str(FileProcessingFailure(obj.path, exc))) from exc
            else:
                accepted.append(classified)
            self._deps.batches.set_progress(batch_id, stats.files_done, stats.total)
        return accepted

    def _classify_file(
        self,
        batch_id: str,
        obj: StoredObject,
        stats: BatchStats,
        results: list[ClassificationResult],
    ) -> ClassifiedFile:
        deps = self._deps
        deps.files.upsert(batch_id, obj.path, FileStatus.PROCESSING, file_name=obj.name)

        size = deps.objects.stat(obj.path)
        if size > self._limits.max_file_size_bytes:
            raise FileValidationError(
                f"File size {size / 1024 / 1024:.2f}MB exceeds maximum "
                f"{self._limits.max_file_size_bytes / 1024 / 1024:.0f}MB"
            )

        data = deps.objects.get(obj.path)
        text = deps.extractor.extract(data, _mime_hint(obj.name), file_name=obj.name) or ""
        deps.cost_guard.record("text_extraction", batch_id=batch_id, text=text)
        if len(text.strip()) < self._limits.min_text_length:
            raise FileValidationError(INSUFFICIENT_TEXT, ERR_INSUFFICIENT_TEXT)

        heuristic = quick_heuristic_check(text, obj.name)
        if heuristic.likely_relevant:
            classification = deps.classifier.classify(text, obj.name)
            deps.cost_guard.record("document_classification", batch_id=batch_id)
        else:
            logger.info("[batch] %s rejected by heuristic: %s", obj.name, heuristic.reason)
            classification = heuristic_rejection(heuristic)
        stats.classified += 1
        results.append(classification)

        if not classification.should_process:
            raise ClassificationRejection(
                classification.reason or "Rejected by classification",
                document_type=classification.document_type.value,
                details=classification.as_dict(),
            )

        identity = deps.parser.quick_parse(text)
        deps.cost_guard.record("quick_parse", batch_id=batch_id)
        deps.files.upsert(
            batch_id,
            obj.path,
            FileStatus.PROCESSING,
            file_name=obj.name,
            document_type=classification.document_type.value,
        )
        return ClassifiedFile(
            file_path=obj.path,
            file_name=obj.name,
            text=text,
            classification=classification,
            identity=identity,
            size_bytes=size,
        )

    def _reject_file(self, batch_id: str, obj: StoredObject, exc: ClassificationRejection, stats: BatchStats) -> None:
        reason = str(exc)
        logger.warning("[batch] %s rejected by classification: %s", obj.name, reason)
        self._deps.rejections.record(batch_id, obj.name, obj.path, "classification", reason, exc.details)
        self._deps.files.upsert(
            batch_id,
            obj.path,
            FileStatus.REJECTED,
            file_name=obj.name,
            error_message=reason,
            document_type=exc.document_type,
        )
        stats.rejected_by_classification += 1
        stats.files_done += 1

    def _fail_file(self, batch_id: str, obj: StoredObject, exc: BaseException, stats: BatchStats) -> None:
        reason = reason_for(exc)
        logger.warning("[batch] %s failed: %s", obj.name, reason)
        self._deps.files.upsert(batch_id, obj.path, FileStatus.FAILED, file_name=obj.name, error_message=reason)
        stats.failed += 1
        stats.files_done += 1

    # ------------------------------------------------------------------
    # Phase 2: grouping
    # ------------------------------------------------------------------

    def _group(self, batch_id: str, accepted: list[ClassifiedFile], stats: BatchStats) -> GroupingResult:
        grouping = group_into_packs(
            accepted,
            max_files_per_pack=self._limits.max_files_per_pack,
            allow_singleton_packs=self._limits.allow_singleton_packs,
        )
        for item, reason in [*grouping.ungrouped, *grouping.truncated]:
            self._deps.files.upsert(
                batch_id,
                item.file_path,
                FileStatus.FAILED,
                file_name=item.file_name,
                error_message=reason,
                document_type=item.document_type.value,
            )
            stats.failed += 1
            stats.files_done += 1

        for pack in grouping.packs.values():
            for item in pack.files:
                self._deps.files.upsert(
                    batch_id,
                    item.file_path,
                    FileStatus.PROCESSING,
                    file_name=item.file_name,
                    document_type=item.document_type.value,
                    pack_id=pack.pack_id,
                )
        stats.packs = len(grouping.packs)
        return grouping

    # ------------------------------------------------------------------
    # Phase 3: per-pack resolution
    # ------------------------------------------------------------------

    def _run_pack(
        self,
        batch_id: str,
        client_id: str,
        pack: CandidatePack,
        config: BatchConfig,
        stats: BatchStats,
    ) -> None:
        try:
            self._process_pack(batch_id, client_id, pack, config, stats)
        except Exception as exc:
            failure = PackProcessingFailure(pack.pack_id, exc)
            reason = reason_for(failure)
            logger.error("[batch] pack %s failed: %s", pack.pack_id, reason)
            self._finish_files(batch_id, pack, FileStatus.FAILED, reason, stats)
            stats.failed += len(pack.files)
            if self._isolation is IsolationPolicy.FAIL_BATCH:
                raise BatchFailure(str(failure)) from exc
        finally:
            self._deps.batches.set_progress(batch_id, stats.files_done, stats.total)

    def _process_pack(
        self,
        batch_id: str,
        client_id: str,
        pack: CandidatePack,
        config: BatchConfig,
        stats: BatchStats,
    ) -> None:
        deps = self._deps
        identity = pack.identity
        logger.info("[batch] pack %s: %d files, key=%s", pack.pack_id, len(pack.files), pack.identity_key)

        if not pack.has_cv:
            self._hold(batch_id, client_id, pack, HoldReason.MISSING_CV_FILE, stats)
            return

        if config.exclude_students and identity.is_student is True:
            self._reject_pack(
                batch_id,
                pack,
                STUDENT_REJECTION,
                {"reason": f"{STUDENT_REJECTION} (excluded by filter)", "is_student": True},
                stats,
            )
            return

        if not has_required_skills(config.required_skills, identity.skills):
            missing = missing_required_skills(config.required_skills, identity.skills)
            reason = f"Missing required skills: {', '.join(missing)}"
            self._reject_pack(
                batch_id,
                pack,
                reason,
                {
                    "reason": reason,
                    "required_skills": list(config.required_skills),
                    "candidate_skills": list(identity.skills),
                    "missing_skills": missing,
                },
                stats,
            )
            return

        email = normalize_email(identity.email)
        phone = normalize_phone(identity.phone)
        if self._limits.require_email_or_phone and not email and not phone:
            self._hold(batch_id, client_id, pack, HoldReason.MISSING_CONTACT_INFO, stats)
            return

        match = deps.duplicates.find_match(identity.email, identity.phone, batch_id=batch_id)
        if match is not None:
            logger.warning("[batch] pack %s: %s", pack.pack_id, match.message)
            stats.duplicates_found += 1
            self._hold(batch_id, client_id, pack, HoldReason.DUPLICATE_DETECTED, stats, match=match)
            return

        profile = deps.parser.full_parse(pack.combined_text)
        deps.cost_guard.record("full_parse", batch_id=batch_id)
        profile.email = profile.email or identity.email
        profile.phone = profile.phone or identity.phone
        profile.full_name = profile.full_name or identity.full_name

        cv_file = pack.cv_file
        cover_letters = pack.files_of_type(DocumentType.COVER_LETTER)
        record = CandidateRecord(
            profile=profile,
            batch_id=batch_id,
            client_id=client_id,
            pack_id=pack.pack_id,
            cv_file_path=cv_file.file_path if cv_file else None,
            cover_letter_file_path=cover_letters[0].file_path if cover_letters else None,
            application_docs_file_paths=[
                item.file_path for item in pack.files if item.document_type is not DocumentType.CV
            ],
            documents=list(pack.documents),
            documents_raw_text=pack.combined_text,
        )
        candidate_id = deps.candidates.insert(record)
        stats.candidates_created += 1
        logger.info("[batch] pack %s saved as candidate %s", pack.pack_id, candidate_id)

        note: Optional[str] = None
        try:
            deps.syncer.sync(candidate_id, profile, pack.documents, batch_id=batch_id)
        except SyncFailure as exc:
            deps.syncer.mark_failed(candidate_id, exc)
            stats.sync_failed += 1
            note = f"CRM sync failed: {exc}"

        self._finish_files(batch_id, pack, FileStatus.COMPLETE, note, stats, candidate_id=candidate_id)
        stats.processed += 1

    def _hold(
        self,
        batch_id: str,
        client_id: str,
        pack: CandidatePack,
        reason: HoldReason,
        stats: BatchStats,
        *,
        match: Optional[DuplicateMatch] = None,
    ) -> None:
        identity = pack.identity
        cv_file = pack.cv_file
        extraction = identity.as_dict()
        extraction["reason"] = reason.value
        if match is not None:
            extraction["duplicate"] = match.as_dict()
        entry = HoldQueueEntry(
            batch_id=batch_id,
            client_id=client_id,
            reason=reason,
            pack_id=pack.pack_id,
            extracted_name=identity.full_name,
            extracted_email=identity.email,
            extracted_phone=identity.phone,
            cv_file_path=cv_file.file_path if cv_file else None,
            documents=list(pack.documents),
            documents_raw_text=pack.combined_text,
            raw_text_preview=pack.combined_text[:RAW_TEXT_PREVIEW_CHARS],
            extraction_data=extraction,
            duplicate_candidate_id=match.candidate_id if match else None,
            duplicate_crm_contact_id=match.crm_contact_id if match else None,
        )
        hold_id = self._deps.hold_queue.insert(entry)
        logger.warning("[batch] pack %s held for review (%s) as %s", pack.pack_id, reason.value, hold_id)
        stats.held_for_review += 1
        self._finish_files(batch_id, pack, FileStatus.COMPLETE, HOLD_NOTES[reason], stats)

    def _reject_pack(
        self,
        batch_id: str,
        pack: CandidatePack,
        reason: str,
        details: dict[str, Any],
        stats: BatchStats,
    ) -> None:
        logger.warning("[batch] pack %s rejected by filter: %s", pack.pack_id, reason)
        for item in pack.files:
            self._deps.rejections.record(batch_id, item.file_name, item.file_path, "filter", reason, details)
        self._finish_files(batch_id, pack, FileStatus.REJECTED, reason, stats)
        stats.rejected_by_filters += len(pack.files)

    def _finish_files(
        self,
        batch_id: str,
        pack: CandidatePack,
        status: FileStatus,
        message: Optional[str],
        stats: BatchStats,
        *,
        candidate_id: Optional[str] = None,
    ) -> None:
        for item in pack.files:
            self._deps.files.upsert(
                batch_id,
                item.file_path,
                status,
                file_name=item.file_name,
                error_message=message,
                candidate_id=candidate_id,
                document_type=item.document_type.value,
                pack_id=pack.pack_id,
            )
            stats.files_done += 1


__all__ = [
    "BatchOrchestrator",
    "BatchRunResult",
    "BatchStats",
    "IntakeDependencies",
    "has_required_skills",
    "missing_required_skills",
]

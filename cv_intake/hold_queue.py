"""Resolve a reviewed hold-queue entry into a stored and synced candidate.

Entries are created by the batch orchestrator and moved to
``ready_for_processing`` by the review surface, which may also attach manual
contact details or pick an existing candidate to update. Nothing in a batch
run calls this module.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import SyncFailure
from .models import (
    CandidateProfile,
    CandidateRecord,
    CandidateStatus,
    DocumentType,
    HoldQueueEntry,
    HoldStatus,
)
from .orchestrator import IntakeDependencies

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HoldResult:
    hold_id: str
    processed: bool
    candidate_id: Optional[str] = None
    contact_id: Optional[str] = None
    updated_existing: bool = False
    sync_failed: bool = False
    reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "hold_id": self.hold_id,
            "processed": self.processed,
            "candidate_id": self.candidate_id,
            "contact_id": self.contact_id,
            "updated_existing": self.updated_existing,
            "sync_failed": self.sync_failed,
            "reason": self.reason,
        }


def _document_paths(entry: HoldQueueEntry, document_type: DocumentType) -> list[str]:
    return [doc["path"] for doc in entry.documents if doc.get("type") == document_type.value and doc.get("path")]


class HoldQueueProcessor:
    def __init__(self, deps: IntakeDependencies, *, min_text_length: int = 50) -> None:
        self._deps = deps
        self._min_text_length = min_text_length

    def _profile_for(self, entry: HoldQueueEntry) -> CandidateProfile:
        text = entry.documents_raw_text or ""
        if len(text.strip()) >= self._min_text_length:
            profile = self._deps.parser.full_parse(text)
            self._deps.cost_guard.record("full_parse", batch_id=entry.batch_id)
        else:
            logger.warning("[hold] entry %s has no usable text; using empty profile", entry.id)
            profile = CandidateProfile()

        manual = entry.manual_contact_info or {}
        profile.full_name = manual.get("full_name") or profile.full_name or entry.extracted_name
        profile.email = manual.get("email") or profile.email or entry.extracted_email
        profile.phone = manual.get("phone") or profile.phone or entry.extracted_phone
        return profile

    def _store(self, entry: HoldQueueEntry, profile: CandidateProfile) -> tuple[str, bool]:
        cover_letters = _document_paths(entry, DocumentType.COVER_LETTER)
        other_paths = [doc["path"] for doc in entry.documents if doc.get("path") and doc.get("type") != DocumentType.CV.value]

        if entry.duplicate_candidate_id:
            self._deps.candidates.patch(
                entry.duplicate_candidate_id,
                {
                    "full_name": profile.full_name,
                    "email": profile.email,
                    "phone": profile.phone,
                    "profile": profile.model_dump(),
                    "batch_id": entry.batch_id,
                    "pack_id": entry.pack_id,
                    "cv_file_path": entry.cv_file_path,
                    "cover_letter_file_path": cover_letters[0] if cover_letters else None,
                    "application_docs_file_paths": other_paths,
                    "documents": list(entry.documents),
                    "documents_raw_text": entry.documents_raw_text,
                    "status": CandidateStatus.PENDING_SYNC,
                },
            )
            logger.info("[hold] updated existing candidate %s", entry.duplicate_candidate_id)
            return entry.duplicate_candidate_id, True

        record = CandidateRecord(
            profile=profile,
            batch_id=entry.batch_id,
            client_id=entry.client_id,
            pack_id=entry.pack_id,
            cv_file_path=entry.cv_file_path,
            cover_letter_file_path=cover_letters[0] if cover_letters else None,
            application_docs_file_paths=other_paths,
            documents=list(entry.documents),
            documents_raw_text=entry.documents_raw_text,
        )
        candidate_id = self._deps.candidates.insert(record)
        logger.info("[hold] created candidate %s", candidate_id)
        return candidate_id, False

    def process(self, hold_id: str) -> HoldResult:
        """Process one reviewed entry.

        Returns an unprocessed result when the entry is missing or not ready.
        Storage errors propagate and leave the entry ready for another attempt.
        """

        entry = self._deps.hold_queue.get(hold_id)
        if entry is None:
            logger.error("[hold] entry %s not found", hold_id)
            return HoldResult(hold_id, processed=False, reason="Item not found")
        if entry.status is HoldStatus.SKIPPED:
            logger.info("[hold] entry %s was skipped by a reviewer; nothing to do", hold_id)
            return HoldResult(hold_id, processed=False, reason="Skipped by reviewer")
        if entry.status is not HoldStatus.READY_FOR_PROCESSING:
            logger.warning("[hold] entry %s not ready (status %s)", hold_id, entry.status.value)
            return HoldResult(hold_id, processed=False, reason=f"Not ready for processing (status {entry.status.value})")

        logger.info("[hold] processing entry %s (reason %s)", hold_id, entry.reason.value)
        profile = self._profile_for(entry)
        candidate_id, updated_existing = self._store(entry, profile)
        result = HoldResult(hold_id, processed=True, candidate_id=candidate_id, updated_existing=updated_existing)

        try:
            outcome = self._deps.syncer.sync(
                candidate_id,
                profile,
                entry.documents,
                batch_id=entry.batch_id,
                contact_id=entry.duplicate_crm_contact_id,
            )
            result.contact_id = outcome.contact_id
        except SyncFailure as exc:
            self._deps.syncer.mark_failed(candidate_id, exc)
            result.sync_failed = True

        self._deps.hold_queue.set_status(hold_id, HoldStatus.COMPLETE, candidate_id=candidate_id)
        summary = self._deps.cost_guard.batch_summary(entry.batch_id)
        logger.info(
            "[hold] entry %s complete: candidate=%s contact=%s batch cost so far %.4f USD",
            hold_id,
            candidate_id,
            result.contact_id,
            summary.cost,
        )
        return result


__all__ = ["HoldQueueProcessor", "HoldResult"]

"""Mirror a stored candidate into the relationship-management system."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from .cost_guard import CostGuard
from .errors import ExternalServiceError, SyncFailure
from .interfaces import CandidateStore, ContactRelationshipSystem, ObjectStore
from .models import CandidateProfile, CandidateStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncOutcome:
    candidate_id: str
    contact_id: str
    created: bool = False
    uploaded: list[str] = field(default_factory=list)
    upload_failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "contact_id": self.contact_id,
            "created": self.created,
            "uploaded": list(self.uploaded),
            "upload_failures": list(self.upload_failures),
        }


class CandidateSyncer:
    """Search-or-create the contact, attach every document, then write fields.

    The candidate row is written before sync is attempted, so a failure here
    never loses data: the caller degrades the row to ``sync_failed``.
    """

    def __init__(
        self,
        crm: ContactRelationshipSystem,
        object_store: ObjectStore,
        candidate_store: CandidateStore,
        cost_guard: Optional[CostGuard] = None,
    ) -> None:
        self._crm = crm
        self._objects = object_store
        self._candidates = candidate_store
        self._cost = cost_guard

    def _track(self, operation: str, batch_id: Optional[str]) -> None:
        if self._cost is not None:
            self._cost.record(operation, batch_id=batch_id)

    def _resolve_contact(self, candidate_id: str, profile: CandidateProfile, batch_id: Optional[str]) -> tuple[str, bool]:
        try:
            existing = self._crm.search(email=profile.email, phone=profile.phone)
            self._track("crm_search", batch_id)
            if existing:
                logger.info("[sync] reusing CRM contact %s for candidate %s", existing, candidate_id)
                return existing, False
            contact_id = self._crm.create(profile)
            self._track("crm_create", batch_id)
        except ExternalServiceError as exc:
            raise SyncFailure(f"contact lookup/create failed: {exc}", candidate_id=candidate_id, stage="contact") from exc
        logger.info("[sync] created CRM contact %s for candidate %s", contact_id, candidate_id)
        return contact_id, True

    def _upload_documents(
        self,
        contact_id: str,
        documents: Sequence[dict[str, Any]],
        outcome: SyncOutcome,
        batch_id: Optional[str],
    ) -> None:
        for doc in documents:
            path = doc.get("path")
            if not path:
                continue
            name = doc.get("name") or path.rsplit("/", 1)[-1]
            try:
                data = self._objects.get(path)
                url = self._crm.upload_file(contact_id, data, name)
            except ExternalServiceError as exc:
                logger.warning("[sync] upload of %s to contact %s failed: %s", name, contact_id, exc)
                outcome.upload_failures.append(path)
                continue
            self._track("crm_upload", batch_id)
            outcome.uploaded.append(url)

    def sync(
        self,
        candidate_id: str,
        profile: CandidateProfile,
        documents: Sequence[dict[str, Any]],
        *,
        batch_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> SyncOutcome:
        """Sync one candidate.

        Every error raised after the candidate was stored surfaces as
        :class:`SyncFailure`, so callers can always degrade the row. A known
        ``contact_id`` (chosen during manual review) skips search and create.
        """

        try:
            return self._sync(candidate_id, profile, documents, batch_id, contact_id)
        except SyncFailure:
            raise
        except Exception as exc:
            logger.exception("[sync] unexpected error syncing candidate %s", candidate_id)
            raise SyncFailure(
                f"unexpected sync error: {type(exc).__name__}: {exc}", candidate_id=candidate_id, stage="unexpected"
            ) from exc

    def _sync(
        self,
        candidate_id: str,
        profile: CandidateProfile,
        documents: Sequence[dict[str, Any]],
        batch_id: Optional[str],
        contact_id: Optional[str],
    ) -> SyncOutcome:
        created = False
        if contact_id is None:
            contact_id, created = self._resolve_contact(candidate_id, profile, batch_id)
        outcome = SyncOutcome(candidate_id=candidate_id, contact_id=contact_id, created=created)

        self._upload_documents(contact_id, documents, outcome, batch_id)

        try:
            self._crm.update(contact_id, profile, candidate_id=candidate_id, file_urls=outcome.uploaded)
            self._track("crm_update", batch_id)
        except ExternalServiceError as exc:
            raise SyncFailure(f"contact update failed: {exc}", candidate_id=candidate_id, stage="update") from exc

        self._candidates.patch(
            candidate_id,
            {"crm_contact_id": contact_id, "status": CandidateStatus.COMPLETE},
        )
        logger.info(
            "[sync] candidate %s synced to contact %s (%d documents, %d upload failures)",
            candidate_id,
            contact_id,
            len(outcome.uploaded),
            len(outcome.upload_failures),
        )
        return outcome

    def mark_failed(self, candidate_id: str, failure: SyncFailure) -> None:
        """Degrade the stored candidate after a sync failure; the row is kept."""

        logger.error("[sync] candidate %s sync failed at %s: %s", candidate_id, failure.stage or "unknown", failure)
        self._candidates.patch(candidate_id, {"status": CandidateStatus.SYNC_FAILED})


__all__ = ["CandidateSyncer", "SyncOutcome"]

"""Duplicate candidate detection against the candidate store and the CRM."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .cost_guard import CostGuard
from .identity import normalize_email, normalize_phone
from .interfaces import CandidateStore, ContactRelationshipSystem

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    """Where an existing record for the identity was found."""

    candidate_id: Optional[str] = None
    crm_contact_id: Optional[str] = None
    matched_on: str = ""

    @property
    def message(self) -> str:
        where = []
        if self.candidate_id:
            where.append(f"candidate {self.candidate_id}")
        if self.crm_contact_id:
            where.append(f"CRM contact {self.crm_contact_id}")
        return f"Duplicate detected by {self.matched_on}: {' and '.join(where)}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "crm_contact_id": self.crm_contact_id,
            "matched_on": self.matched_on,
        }


class DuplicateDetector:
    """Look up an identity in the candidate store and, separately, the CRM.

    Email is checked before phone in each system. Lookup errors propagate to the
    caller so an unreachable system never reads as "no duplicate". Each CRM
    search is recorded with the usage guard when one is given.
    """

    def __init__(
        self,
        candidate_store: CandidateStore,
        crm: Optional[ContactRelationshipSystem],
        *,
        check_store: bool = True,
        check_crm: bool = True,
        cost_guard: Optional[CostGuard] = None,
    ) -> None:
        self._store = candidate_store
        self._crm = crm if check_crm else None
        self._check_store = check_store
        self._cost = cost_guard

    def _store_match(self, email: Optional[str], phone: Optional[str]) -> tuple[Optional[str], str]:
        if email:
            found = self._store.find_by_email(email)
            if found:
                return found, "email"
        if phone:
            found = self._store.find_by_phone(phone)
            if found:
                return found, "phone"
        return None, ""

    def _crm_search(self, crm: ContactRelationshipSystem, batch_id: Optional[str], **identity: str) -> Optional[str]:
        found = crm.search(**identity)
        if self._cost is not None:
            self._cost.record("crm_search", batch_id=batch_id)
        return found

    def _crm_match(
        self, crm: ContactRelationshipSystem, email: Optional[str], phone: Optional[str], batch_id: Optional[str]
    ) -> tuple[Optional[str], str]:
        if email:
            found = self._crm_search(crm, batch_id, email=email)
            if found:
                return found, "email"
        if phone:
            found = self._crm_search(crm, batch_id, phone=phone)
            if found:
                return found, "phone"
        return None, ""

    def find_match(
        self, email: Optional[str], phone: Optional[str], *, batch_id: Optional[str] = None
    ) -> Optional[DuplicateMatch]:
        normalized_email = normalize_email(email)
        normalized_phone = normalize_phone(phone)
        if not normalized_email and not normalized_phone:
            return None

        candidate_id: Optional[str] = None
        crm_contact_id: Optional[str] = None
        matched_on = ""

        if self._check_store:
            candidate_id, matched_on = self._store_match(normalized_email, normalized_phone)
        if self._crm is not None:
            crm_phone = phone.strip() if normalized_phone and phone else None
            crm_contact_id, crm_matched_on = self._crm_match(self._crm, normalized_email, crm_phone, batch_id)
            matched_on = matched_on or crm_matched_on

        if not candidate_id and not crm_contact_id:
            return None
        match = DuplicateMatch(candidate_id=candidate_id, crm_contact_id=crm_contact_id, matched_on=matched_on)
        logger.info("[duplicates] %s", match.message)
        return match


__all__ = ["DuplicateDetector", "DuplicateMatch"]

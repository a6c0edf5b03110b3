"""Protocols for the collaborators the intake engine talks to.

The orchestrator only depends on these narrow interfaces; production
implementations live in :mod:`cv_intake.db.postgres`, :mod:`cv_intake.storage`
and :mod:`cv_intake.vendors`, and tests use in-memory fakes.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    Batch,
    BatchConfig,
    BatchStatus,
    CandidateProfile,
    CandidateRecord,
    ClassificationResult,
    FileRecord,
    FileStatus,
    HoldQueueEntry,
    HoldStatus,
    QuickIdentity,
    StoredObject,
    UsageLedgerEntry,
)

# ---------------------------------------------------------------------------
# Document capability
# ---------------------------------------------------------------------------


@runtime_checkable
class ObjectStore(Protocol):
    def list(self, prefix: str) -> list[StoredObject]: ...

    def get(self, path: str) -> bytes: ...

    def stat(self, path: str) -> int: ...


@runtime_checkable
class TextExtractor(Protocol):
    def extract(self, data: bytes, mime_hint: str, *, file_name: str = "") -> str: ...


@runtime_checkable
class Classifier(Protocol):
    def classify(self, text: str, file_name: str) -> ClassificationResult: ...


@runtime_checkable
class StructuredParser(Protocol):
    def quick_parse(self, text: str) -> QuickIdentity: ...

    def full_parse(self, text: str) -> CandidateProfile: ...


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@runtime_checkable
class BatchStore(Protocol):
    def get(self, batch_id: str) -> Optional[Batch]: ...

    def claim(self, batch_id: str) -> bool:
        """Atomically move the batch to processing unless it is already processing."""
        ...

    def set_status(self, batch_id: str, status: BatchStatus, processed_count: Optional[int] = None) -> None: ...

    def set_progress(self, batch_id: str, processed: int, total: int) -> None: ...

    def mark_recovery(self, batch_id: str) -> None: ...

    def load_config(self, batch_id: str) -> BatchConfig: ...


@runtime_checkable
class CandidateStore(Protocol):
    def find_by_email(self, email: str) -> Optional[str]: ...

    def find_by_phone(self, phone: str) -> Optional[str]: ...

    def insert(self, record: CandidateRecord) -> str: ...

    def patch(self, candidate_id: str, fields: dict[str, Any]) -> None: ...

    def get(self, candidate_id: str) -> Optional[dict[str, Any]]: ...


@runtime_checkable
class FileStatusStore(Protocol):
    def upsert(
        self,
        batch_id: str,
        file_path: str,
        status: FileStatus,
        *,
        file_name: Optional[str] = None,
        error_message: Optional[str] = None,
        candidate_id: Optional[str] = None,
        document_type: Optional[str] = None,
        pack_id: Optional[str] = None,
    ) -> None: ...

    def list_for_batch(self, batch_id: str) -> list[FileRecord]: ...


@runtime_checkable
class HoldQueueStore(Protocol):
    def insert(self, entry: HoldQueueEntry) -> str: ...

    def get(self, hold_id: str) -> Optional[HoldQueueEntry]: ...

    def set_status(self, hold_id: str, status: HoldStatus, **fields: Any) -> None: ...


@runtime_checkable
class RejectionLog(Protocol):
    def record(
        self,
        batch_id: str,
        file_name: str,
        file_path: str,
        rejection_type: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None: ...


@runtime_checkable
class UsageLedger(Protocol):
    def append(self, entry: UsageLedgerEntry) -> None: ...

    def entries_for_date(self, usage_date: date) -> list[UsageLedgerEntry]: ...

    def entries_for_batch(self, batch_id: str) -> list[UsageLedgerEntry]: ...


# ---------------------------------------------------------------------------
# Relationship-management system
# ---------------------------------------------------------------------------


@runtime_checkable
class ContactRelationshipSystem(Protocol):
    def search(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[str]: ...

    def create(self, profile: CandidateProfile) -> str: ...

    def update(
        self,
        contact_id: str,
        profile: CandidateProfile,
        *,
        candidate_id: Optional[str] = None,
        file_urls: Sequence[str] = (),
    ) -> None: ...

    def upload_file(self, contact_id: str, data: bytes, name: str) -> str: ...


__all__ = [
    "BatchStore",
    "CandidateStore",
    "Classifier",
    "ContactRelationshipSystem",
    "FileStatusStore",
    "HoldQueueStore",
    "ObjectStore",
    "RejectionLog",
    "StructuredParser",
    "TextExtractor",
    "UsageLedger",
]

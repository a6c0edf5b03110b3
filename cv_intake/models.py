"""Domain types for batch intake.

Statuses are ``str`` enums so they can be written to text columns directly.
Transient pipeline state (classified files, packs) uses slotted dataclasses;
model-produced payloads are validated with pydantic so malformed output can be
detected and replaced with an empty default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_INPUT = "awaiting_input"
    COMPLETE = "complete"
    FAILED = "failed"


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_FILE_STATUSES: frozenset[FileStatus] = frozenset({FileStatus.COMPLETE, FileStatus.REJECTED})


class DocumentType(str, Enum):
    CV = "cv"
    COVER_LETTER = "cover_letter"
    APPLICATION = "application"
    SUPPORTING_DOCUMENT = "supporting_document"


class CandidateStatus(str, Enum):
    PENDING_SYNC = "pending_sync"
    COMPLETE = "complete"
    SYNC_FAILED = "sync_failed"


class HoldReason(str, Enum):
    MISSING_CV_FILE = "missing_cv_file"
    MISSING_CONTACT_INFO = "missing_contact_info"
    DUPLICATE_DETECTED = "duplicate_detected"
    STUDENT_EXCLUDED = "student_excluded"
    MISSING_REQUIRED_SKILLS = "missing_required_skills"


class HoldStatus(str, Enum):
    PENDING = "pending"
    READY_FOR_PROCESSING = "ready_for_processing"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class IsolationPolicy(str, Enum):
    """How far a pack-level failure propagates."""

    ISOLATE_PACK = "isolate_pack"
    FAIL_BATCH = "fail_batch"


@dataclass(frozen=True, slots=True)
class ProcessingLimits:
    max_files_per_batch: int = 500
    max_file_size_bytes: int = 10 * 1024 * 1024
    min_text_length: int = 50
    max_files_per_pack: int = 10
    allow_singleton_packs: bool = True
    require_email_or_phone: bool = True
    per_file_allowance_seconds: float = 10.0
    batch_timeout_buffer_seconds: float = 300.0
    max_batch_duration_seconds: float = 3600.0

    def batch_timeout_seconds(self, file_count: int) -> float:
        budget = file_count * self.per_file_allowance_seconds + self.batch_timeout_buffer_seconds
        return min(budget, self.max_batch_duration_seconds)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Batch:
    id: str
    status: BatchStatus
    file_count: int = 0
    processed_count: int = 0
    client_id: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recovery_attempts: int = 0


@dataclass(slots=True)
class BatchConfig:
    upload_type: str = "standard"
    job_id: Optional[str] = None
    required_skills: list[str] = field(default_factory=list)
    exclude_students: bool = False
    colleague: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StoredObject:
    name: str
    path: str


@dataclass(slots=True)
class FileRecord:
    batch_id: str
    file_path: str
    file_name: str
    status: FileStatus = FileStatus.PENDING
    document_type: Optional[str] = None
    pack_id: Optional[str] = None
    error_message: Optional[str] = None
    candidate_id: Optional[str] = None


@dataclass(slots=True)
class UsageLedgerEntry:
    usage_date: date
    operation: str
    api: str
    call_count: int = 1
    estimated_cost: float = 0.0
    tokens: int = 0
    batch_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Model payloads
# ---------------------------------------------------------------------------


def _coerce_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def _coerce_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)):
        return str(value)
    return value


class QuickIdentity(BaseModel):
    """Cheap identity and skills extraction used for grouping and filtering."""

    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_student: Optional[bool] = None
    skills: list[str] = []

    @field_validator("full_name", "email", "phone", mode="before")
    @classmethod
    def clean_strings(cls, value: Any) -> Optional[str]:
        return _coerce_optional_str(value)

    @field_validator("skills", mode="before")
    @classmethod
    def clean_skills(cls, value: Any) -> list[Any]:
        return _coerce_list(value)

    def has_signal(self) -> bool:
        return bool(self.full_name or self.email or self.phone)


class CandidateProfile(BaseModel):
    """Full structured profile produced once per resolved pack."""

    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    linkedin_url: Optional[str] = None
    date_of_birth: Optional[str] = None
    nationality: Optional[str] = None
    visa_work_permit: Optional[str] = None
    professional_summary: Optional[str] = None
    future_job_aspirations: Optional[str] = None
    work_history: list[Any] = []
    education: list[Any] = []
    skills: list[str] = []
    certifications: list[Any] = []
    driving_licence: Optional[str] = None
    languages: list[Any] = []
    training_courses: list[Any] = []
    professional_memberships: list[Any] = []
    awards_honours: list[Any] = []
    volunteering: list[Any] = []
    interests_hobbies: list[Any] = []
    candidate_references: list[Any] = []
    military_service: Optional[str] = None
    salary_expectation: Optional[str] = None
    notice_period: Optional[str] = None
    availability_start_date: Optional[str] = None
    relocation_willingness: Optional[str] = None
    remote_work_preference: Optional[str] = None
    cv_summary: Optional[str] = None

    @field_validator(
        "full_name",
        "email",
        "phone",
        "address",
        "linkedin_url",
        "date_of_birth",
        "nationality",
        "visa_work_permit",
        "professional_summary",
        "future_job_aspirations",
        "driving_licence",
        "military_service",
        "salary_expectation",
        "notice_period",
        "availability_start_date",
        "relocation_willingness",
        "remote_work_preference",
        "cv_summary",
        mode="before",
    )
    @classmethod
    def clean_strings(cls, value: Any) -> Optional[str]:
        return _coerce_optional_str(value)

    @field_validator(
        "work_history",
        "education",
        "skills",
        "certifications",
        "languages",
        "training_courses",
        "professional_memberships",
        "awards_honours",
        "volunteering",
        "interests_hobbies",
        "candidate_references",
        mode="before",
    )
    @classmethod
    def clean_lists(cls, value: Any) -> list[Any]:
        return _coerce_list(value)


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ClassificationResult:
    document_type: DocumentType
    confidence: float
    should_process: bool
    reason: Optional[str] = None
    raw_type: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "document_type": self.document_type.value,
            "confidence": self.confidence,
            "should_process": self.should_process,
            "reason": self.reason,
            "raw_type": self.raw_type,
        }


@dataclass(slots=True)
class ClassifiedFile:
    file_path: str
    file_name: str
    text: str
    classification: ClassificationResult
    identity: Optional[QuickIdentity] = None
    size_bytes: int = 0

    @property
    def document_type(self) -> DocumentType:
        return self.classification.document_type


@dataclass(slots=True)
class MergedIdentity:
    email: Optional[str] = None
    phone: Optional[str] = None
    full_name: Optional[str] = None
    is_student: Optional[bool] = None
    skills: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            "is_student": self.is_student,
            "skills": list(self.skills),
        }


@dataclass(slots=True)
class CandidatePack:
    pack_id: str
    identity_key: str
    files: list[ClassifiedFile] = field(default_factory=list)
    identity: MergedIdentity = field(default_factory=MergedIdentity)
    documents: list[dict[str, Any]] = field(default_factory=list)
    combined_text: str = ""

    @property
    def cv_file(self) -> Optional[ClassifiedFile]:
        for item in self.files:
            if item.document_type is DocumentType.CV:
                return item
        return None

    @property
    def has_cv(self) -> bool:
        return self.cv_file is not None

    def files_of_type(self, document_type: DocumentType) -> list[ClassifiedFile]:
        return [item for item in self.files if item.document_type is document_type]


@dataclass(slots=True)
class CandidateRecord:
    profile: CandidateProfile
    batch_id: str
    client_id: str
    pack_id: Optional[str] = None
    status: CandidateStatus = CandidateStatus.PENDING_SYNC
    cv_file_path: Optional[str] = None
    cover_letter_file_path: Optional[str] = None
    application_docs_file_paths: list[str] = field(default_factory=list)
    documents: list[dict[str, Any]] = field(default_factory=list)
    documents_raw_text: str = ""
    crm_contact_id: Optional[str] = None
    id: Optional[str] = None

    def as_row(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "client_id": self.client_id,
            "pack_id": self.pack_id,
            "status": self.status.value,
            "full_name": self.profile.full_name,
            "email": self.profile.email,
            "phone": self.profile.phone,
            "profile": self.profile.model_dump(),
            "cv_file_path": self.cv_file_path,
            "cover_letter_file_path": self.cover_letter_file_path,
            "application_docs_file_paths": list(self.application_docs_file_paths),
            "documents": list(self.documents),
            "documents_raw_text": self.documents_raw_text,
            "crm_contact_id": self.crm_contact_id,
        }


@dataclass(slots=True)
class HoldQueueEntry:
    batch_id: str
    client_id: str
    reason: HoldReason
    pack_id: Optional[str] = None
    status: HoldStatus = HoldStatus.PENDING
    extracted_name: Optional[str] = None
    extracted_email: Optional[str] = None
    extracted_phone: Optional[str] = None
    cv_file_path: Optional[str] = None
    documents: list[dict[str, Any]] = field(default_factory=list)
    documents_raw_text: str = ""
    raw_text_preview: str = ""
    extraction_data: dict[str, Any] = field(default_factory=dict)
    duplicate_candidate_id: Optional[str] = None
    duplicate_crm_contact_id: Optional[str] = None
    manual_contact_info: dict[str, Any] = field(default_factory=dict)
    candidate_id: Optional[str] = None
    id: Optional[str] = None

    def as_row(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "client_id": self.client_id,
            "pack_id": self.pack_id,
            "reason": self.reason.value,
            "status": self.status.value,
            "extracted_name": self.extracted_name,
            "extracted_email": self.extracted_email,
            "extracted_phone": self.extracted_phone,
            "cv_file_path": self.cv_file_path,
            "documents": list(self.documents),
            "documents_raw_text": self.documents_raw_text,
            "raw_text_preview": self.raw_text_preview,
            "extraction_data": dict(self.extraction_data),
            "duplicate_candidate_id": self.duplicate_candidate_id,
            "duplicate_crm_contact_id": self.duplicate_crm_contact_id,
            "manual_contact_info": dict(self.manual_contact_info),
            "candidate_id": self.candidate_id,
        }


__all__ = [
    "Batch",
    "BatchConfig",
    "BatchStatus",
    "CandidatePack",
    "CandidateProfile",
    "CandidateRecord",
    "CandidateStatus",
    "ClassificationResult",
    "ClassifiedFile",
    "DocumentType",
    "FileRecord",
    "FileStatus",
    "HoldQueueEntry",
    "HoldReason",
    "HoldStatus",
    "IsolationPolicy",
    "MergedIdentity",
    "ProcessingLimits",
    "QuickIdentity",
    "StoredObject",
    "TERMINAL_FILE_STATUSES",
    "UsageLedgerEntry",
]

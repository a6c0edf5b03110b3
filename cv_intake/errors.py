"""
CV Intake - Error Taxonomy

Every failure the intake engine can surface carries a stable error code so
log lines, file status reasons and batch outcomes can be aggregated.

Error Code Format: CVI-{CATEGORY}-{NUMBER}
- CONFIG (001-099): Configuration and environment errors
- VALIDATION (100-199): File validation errors (size, text content)
- CLASSIFICATION (200-299): Document classification rejections
- EXTERNAL (300-399): Model, CRM and storage call failures
- PARSE (400-499): Malformed structured output
- SYNC (500-599): CRM mirroring after the candidate was persisted
- BATCH (600-699): Whole-batch failures and admission control
- INTERNAL (900-999): Unexpected internal errors
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    CLASSIFICATION = "CLASSIFICATION"
    EXTERNAL = "EXTERNAL"
    PARSE = "PARSE"
    SYNC = "SYNC"
    BATCH = "BATCH"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_CONFIG_MISSING = ErrorCode("CVI-CONFIG-001", ErrorCategory.CONFIG, "Required configuration is missing")

ERR_FILE_TOO_LARGE = ErrorCode("CVI-VALIDATION-100", ErrorCategory.VALIDATION, "File exceeds the size limit")
ERR_INSUFFICIENT_TEXT = ErrorCode(
    "CVI-VALIDATION-101", ErrorCategory.VALIDATION, "Insufficient text content"
)

ERR_CLASSIFICATION_REJECTED = ErrorCode(
    "CVI-CLASSIFICATION-200", ErrorCategory.CLASSIFICATION, "Document rejected by classification"
)

ERR_EXTERNAL_CALL = ErrorCode("CVI-EXTERNAL-300", ErrorCategory.EXTERNAL, "External call failed")
ERR_EXTERNAL_TRANSIENT = ErrorCode(
    "CVI-EXTERNAL-301", ErrorCategory.EXTERNAL, "External call failed after retries", retryable=True
)

ERR_MALFORMED_RESPONSE = ErrorCode(
    "CVI-PARSE-400", ErrorCategory.PARSE, "Structured output could not be parsed"
)

ERR_SYNC_FAILED = ErrorCode("CVI-SYNC-500", ErrorCategory.SYNC, "CRM sync failed after persistence")

ERR_BATCH_FAILED = ErrorCode("CVI-BATCH-600", ErrorCategory.BATCH, "Batch processing failed")
ERR_BATCH_ADMISSION = ErrorCode("CVI-BATCH-601", ErrorCategory.BATCH, "Batch rejected by cost limits")
ERR_FILE_PROCESSING = ErrorCode("CVI-BATCH-610", ErrorCategory.BATCH, "File processing failed")
ERR_PACK_PROCESSING = ErrorCode("CVI-BATCH-620", ErrorCategory.BATCH, "Candidate pack processing failed")

ERR_INTERNAL_UNKNOWN = ErrorCode("CVI-INTERNAL-999", ErrorCategory.INTERNAL, "Unexpected internal error")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class IntakeError(Exception):
    """Base error for the intake engine."""

    error_code: ErrorCode = ERR_INTERNAL_UNKNOWN


class ConfigurationError(IntakeError):
    error_code = ERR_CONFIG_MISSING


class FileValidationError(IntakeError):
    """Oversized file or unusable text. Rejected without retry."""

    def __init__(self, message: str, error_code: ErrorCode = ERR_FILE_TOO_LARGE) -> None:
        super().__init__(message)
        self.error_code = error_code


class ClassificationRejection(IntakeError):
    """The classifier or the heuristic pre-check turned a document away."""

    error_code = ERR_CLASSIFICATION_REJECTED

    def __init__(
        self, message: str, *, document_type: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.document_type = document_type
        self.details = dict(details or {})


class ExternalServiceError(IntakeError):
    """A single external call failed.

    ``status_code`` is None for transport-level failures. ``attempts`` is
    filled in by the retry loop once it gives up.
    """

    error_code = ERR_EXTERNAL_CALL

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        status_code: int | None = None,
        body_preview: str = "",
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.body_preview = body_preview
        self.attempts = attempts


class TransientExternalError(ExternalServiceError):
    """Retryable failures exhausted the attempt budget."""

    error_code = ERR_EXTERNAL_TRANSIENT


class MalformedResponseError(IntakeError):
    error_code = ERR_MALFORMED_RESPONSE

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class SyncFailure(IntakeError):
    error_code = ERR_SYNC_FAILED

    def __init__(self, message: str, *, candidate_id: str | None = None, stage: str = "") -> None:
        super().__init__(message)
        self.candidate_id = candidate_id
        self.stage = stage


class FileProcessingFailure(IntakeError):
    error_code = ERR_FILE_PROCESSING

    def __init__(self, file_path: str, cause: BaseException) -> None:
        super().__init__(f"{file_path}: {cause}")
        self.file_path = file_path
        self.cause = cause


class PackProcessingFailure(IntakeError):
    error_code = ERR_PACK_PROCESSING

    def __init__(self, pack_id: str, cause: BaseException) -> None:
        super().__init__(f"{pack_id}: {cause}")
        self.pack_id = pack_id
        self.cause = cause


class BatchFailure(IntakeError):
    error_code = ERR_BATCH_FAILED


class AdmissionDenied(BatchFailure):
    error_code = ERR_BATCH_ADMISSION


def describe_error(exc: BaseException) -> dict[str, Any]:
    """Summarize an exception into structured log fields."""

    if isinstance(exc, IntakeError):
        code = exc.error_code
    elif isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        code = ERR_EXTERNAL_TRANSIENT
    else:
        code = ERR_INTERNAL_UNKNOWN
    details: dict[str, Any] = {
        "error_code": str(code),
        "error_category": code.category.value,
        "error_type": type(exc).__name__,
        "message": str(exc),
        "retryable": code.retryable,
    }
    if isinstance(exc, ExternalServiceError):
        details["operation"] = exc.operation
        details["status_code"] = exc.status_code
        details["attempts"] = exc.attempts
    return details


def reason_for(exc: BaseException) -> str:
    """Human-readable reason string stored on a file or pack status."""

    if isinstance(exc, (FileProcessingFailure, PackProcessingFailure)):
        return reason_for(exc.cause)
    if isinstance(exc, IntakeError):
        return f"[{exc.error_code}] {exc}"
    return f"[{ERR_INTERNAL_UNKNOWN}] {type(exc).__name__}: {exc}"


__all__ = [
    "AdmissionDenied",
    "BatchFailure",
    "ClassificationRejection",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorCode",
    "ExternalServiceError",
    "FileProcessingFailure",
    "FileValidationError",
    "IntakeError",
    "MalformedResponseError",
    "PackProcessingFailure",
    "SyncFailure",
    "TransientExternalError",
    "describe_error",
    "reason_for",
    "ERR_INSUFFICIENT_TEXT",
    "ERR_FILE_TOO_LARGE",
]

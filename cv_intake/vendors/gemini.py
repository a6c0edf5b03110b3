"""Gemini-backed text extraction, classification and structured parsing.

One ``generateContent`` call per operation, each wrapped in the shared retry
loop. Structured output that is not JSON, or JSON of the wrong shape, is
recovered here with an empty model and a warning; it never reaches the
orchestrator as an exception.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Callable, Final, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..classification import (
    fallback_classification,
    insufficient_text_classification,
    interpret_verdict,
)
from ..errors import ExternalServiceError, MalformedResponseError
from ..models import CandidateProfile, ClassificationResult, DocumentType, QuickIdentity
from ..retry_policy import RetryConfig, call_with_retry
from ..settings import Settings
from ..utils.log import truncate_for_log

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

BODY_PREVIEW_CHARS: Final[int] = 500

MIME_TYPES: Final[dict[str, str]] = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "doc": "application/msword",
    "txt": "text/plain",
}

EXTRACT_PROMPT: Final[str] = (
    "Extract all text from this document. Return only the raw text content, "
    "preserving structure and formatting."
)

CLASSIFY_PROMPT: Final[str] = """You are classifying documents uploaded to a recruitment intake.
Return ONLY valid JSON in this exact format:

{{
  "document_type": "cv" | "resume" | "cover_letter" | "application" | "supporting_document" | "irrelevant",
  "confidence": 0.0-1.0,
  "reasoning": "one sentence"
}}

Only use "irrelevant" when the document is clearly not related to a candidate application
(invoices, contracts, unrelated business documents, spam).

File name: {file_name}
Document text (first {sample_length} characters):
{sample}"""

QUICK_PARSE_PROMPT: Final[str] = """Extract ONLY the following fields from this CV/resume. Return ONLY valid JSON in this exact format:

{{
  "full_name": "string or null",
  "email": "string or null",
  "phone": "string or null",
  "is_student": "boolean - true if currently enrolled in education/university/college",
  "skills": ["array of skill strings"]
}}

CV Text:
{text}

Return ONLY the JSON object, no other text."""

FULL_PARSE_PROMPT: Final[str] = """Extract a complete candidate profile from the documents below.
The documents are separated by "=== DOCUMENT n ===" headers; the CV comes first.
Return ONLY a JSON object with these keys (use null or [] when absent):

{fields}

Documents:
{text}"""


def mime_type_for(file_name: str) -> str:
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return MIME_TYPES.get(extension, "application/pdf")


def strip_json_fences(raw: str) -> str:
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_json_object(raw: str) -> dict[str, Any]:
    cleaned = strip_json_fences(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"not JSON: {exc}", raw=raw) from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(parsed).__name__}", raw=raw)
    return parsed


def _candidate_text(envelope: Any) -> str:
    try:
        text = envelope["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return ""
    return text if isinstance(text, str) else ""


class GeminiClient:
    """Implements TextExtractor, Classifier and StructuredParser over Gemini."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        retry: Optional[RetryConfig] = None,
        min_confidence: float = 0.70,
        sample_chars: int = 3000,
        max_parse_chars: int = 8000,
        min_text_length: int = 50,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._retry = retry or RetryConfig(initial_ms=1200, max_ms=20000, jitter_ms=400, max_attempts=6)
        self._min_confidence = min_confidence
        self._sample_chars = sample_chars
        self._max_parse_chars = max_parse_chars
        self._min_text_length = min_text_length
        self._http = http_client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "GeminiClient":
        options: dict[str, Any] = {
            "model": settings.gemini_model,
            "base_url": settings.gemini_base_url,
            "timeout": settings.gemini_timeout_seconds,
            "retry": settings.model_retry(),
            "min_confidence": settings.min_classification_confidence,
            "sample_chars": settings.classification_sample_chars,
            "max_parse_chars": settings.max_text_length_for_parse,
            "min_text_length": settings.min_text_length,
        }
        options.update(overrides)
        return cls(settings.gemini_api_key, **options)

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def generate(self, parts: list[dict[str, Any]], *, operation: str, json_mode: bool = False) -> str:
        url = f"{self._base_url}/models/{self._model}:generateContent"
        body: dict[str, Any] = {"contents": [{"parts": parts}]}
        if json_mode:
            body["generationConfig"] = {"temperature": 0, "responseMimeType": "application/json"}

        def _post() -> str:
            response = self._http.post(url, params={"key": self._api_key}, json=body)
            if response.status_code >= 400:
                preview = truncate_for_log(response.text, BODY_PREVIEW_CHARS)
                raise ExternalServiceError(
                    f"Gemini {operation} failed (status {response.status_code}): {preview}",
                    operation=operation,
                    status_code=response.status_code,
                    body_preview=preview,
                )
            try:
                envelope = response.json()
            except ValueError as exc:
                raise ExternalServiceError(
                    "Gemini returned non-JSON envelope",
                    operation=operation,
                    status_code=response.status_code,
                    body_preview=truncate_for_log(response.text, BODY_PREVIEW_CHARS),
                ) from exc
            return _candidate_text(envelope)

        return call_with_retry(_post, self._retry, operation=f"gemini.{operation}", sleep=self._sleep)

    def _recover(self, raw: str, model_cls: type[ModelT], operation: str) -> ModelT:
        try:
            return model_cls.model_validate(parse_json_object(raw))
        except (MalformedResponseError, ValidationError) as exc:
            logger.warning(
                "[gemini] malformed %s output, using empty default: %s | raw=%s",
                operation,
                exc,
                truncate_for_log(raw),
            )
            return model_cls()

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def extract(self, data: bytes, mime_hint: str, *, file_name: str = "") -> str:
        mime_type = mime_hint or mime_type_for(file_name)
        parts = [
            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}},
            {"text": EXTRACT_PROMPT},
        ]
        return self.generate(parts, operation="text_extraction")

    def classify(self, text: str, file_name: str) -> ClassificationResult:
        if len((text or "").strip()) < self._min_text_length:
            return insufficient_text_classification(self._min_text_length)

        sample = text[: self._sample_chars]
        prompt = CLASSIFY_PROMPT.format(file_name=file_name, sample_length=len(sample), sample=sample)
        raw = self.generate([{"text": prompt}], operation="document_classification", json_mode=True)
        try:
            verdict = parse_json_object(raw)
        except MalformedResponseError as exc:
            logger.warning("[gemini] unparseable classification for %s: %s", file_name, exc)
            return self._fallback_from_raw(raw)
        return interpret_verdict(verdict, self._min_confidence)

    @staticmethod
    def _fallback_from_raw(raw: str) -> ClassificationResult:
        lowered = (raw or "").lower()
        if '"cv"' in lowered or '"resume"' in lowered:
            result = fallback_classification("Classification parsing failed, but detected CV indicators")
            result.document_type = DocumentType.CV
            result.confidence = 0.6
            return result
        if '"cover_letter"' in lowered or '"coverletter"' in lowered:
            result = fallback_classification("Classification parsing failed, but detected cover letter indicators")
            result.document_type = DocumentType.COVER_LETTER
            result.confidence = 0.6
            return result
        return fallback_classification("Classification failed - defaulting to supporting document")

    def quick_parse(self, text: str) -> QuickIdentity:
        prompt = QUICK_PARSE_PROMPT.format(text=text[: self._max_parse_chars])
        raw = self.generate([{"text": prompt}], operation="quick_parse", json_mode=True)
        return self._recover(raw, QuickIdentity, "quick_parse")

    def full_parse(self, text: str) -> CandidateProfile:
        fields = ", ".join(CandidateProfile.model_fields)
        prompt = FULL_PARSE_PROMPT.format(fields=fields, text=text[: self._max_parse_chars])
        raw = self.generate([{"text": prompt}], operation="full_parse", json_mode=True)
        return self._recover(raw, CandidateProfile, "full_parse")


__all__ = ["GeminiClient", "mime_type_for", "parse_json_object", "strip_json_fences"]

"""GoHighLevel contact API adapter.

Implements the ContactRelationshipSystem protocol over httpx. Custom fields are
written by id; the key-to-id mapping is fetched lazily and held in an injected
:class:`FieldMappingCache` until its TTL expires.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Final, Optional, Sequence

import httpx

from ..errors import ExternalServiceError
from ..identity import is_valid_email, normalize_phone, split_name
from ..models import CandidateProfile
from ..retry_policy import RetryConfig, call_with_retry
from ..settings import Settings
from ..utils.log import truncate_for_log

logger = logging.getLogger(__name__)

BODY_PREVIEW_CHARS: Final[int] = 800
MAX_FIELD_LENGTH: Final[int] = 2000

UPLOAD_MIME_TYPES: Final[dict[str, str]] = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "doc": "application/msword",
    "txt": "text/plain",
}


def _normalized_field_name(name: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in name.lower())


@dataclass(slots=True)
class FieldMapping:
    key_to_id: dict[str, str] = field(default_factory=dict)
    field_count: int = 0

    @classmethod
    def from_fields(cls, fields: Sequence[dict[str, Any]]) -> "FieldMapping":
        mapping = cls(field_count=len(fields))
        for item in fields:
            field_id = item.get("id") or item.get("key")
            identifier = item.get("key") or item.get("id")
            if identifier and field_id:
                mapping.key_to_id[identifier] = field_id
                # keys often arrive prefixed, e.g. "contact.notice_period"
                short = identifier.split(".", 1)[-1]
                mapping.key_to_id.setdefault(short, field_id)
            name = item.get("name")
            if name and field_id:
                mapping.key_to_id.setdefault(_normalized_field_name(name), field_id)
        return mapping


@dataclass(slots=True)
class FieldMappingCache:
    """Holds the custom-field mapping until ``expiry``; stale reads are tolerated until then."""

    ttl_seconds: float = 300.0
    clock: Callable[[], float] = time.monotonic
    data: Optional[FieldMapping] = None
    expiry: float = 0.0

    def get(self) -> Optional[FieldMapping]:
        if self.data is not None and self.clock() < self.expiry:
            return self.data
        return None

    def put(self, mapping: FieldMapping) -> None:
        self.data = mapping
        self.expiry = self.clock() + self.ttl_seconds

    def invalidate(self) -> None:
        self.data = None
        self.expiry = 0.0


def _truncate(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        text = ", ".join(str(item) for item in value if item)
    else:
        text = str(value)
    return text[:MAX_FIELD_LENGTH]


def build_custom_fields(
    profile: CandidateProfile,
    candidate_id: Optional[str] = None,
    file_urls: Sequence[str] = (),
) -> dict[str, str]:
    """Generic custom-field payload for a candidate profile."""

    fields = {
        "candidate_id": candidate_id or "",
        "professional_summary": _truncate(profile.professional_summary),
        "cv_summary": _truncate(profile.cv_summary),
        "skills": _truncate(profile.skills),
        "nationality": _truncate(profile.nationality),
        "visa_work_permit": _truncate(profile.visa_work_permit),
        "notice_period": _truncate(profile.notice_period),
        "salary_expectation": _truncate(profile.salary_expectation),
        "availability_start_date": _truncate(profile.availability_start_date),
        "linkedin_url": _truncate(profile.linkedin_url),
        "document_urls": "\n".join(url for url in file_urls if url)[:MAX_FIELD_LENGTH],
    }
    return {key: value for key, value in fields.items() if value}


def _contact_sort_key(contact: dict[str, Any]) -> str:
    return str(contact.get("dateUpdated") or contact.get("dateAdded") or "")


class GHLClient:
    """ContactRelationshipSystem backed by the GoHighLevel REST API."""

    def __init__(
        self,
        api_key: str,
        location_id: str,
        *,
        base_url: str = "https://services.leadconnectorhq.com",
        api_version: str = "2021-07-28",
        timeout: float = 30.0,
        default_tags: Sequence[str] = ("cv-imported",),
        retry: Optional[RetryConfig] = None,
        field_cache: Optional[FieldMappingCache] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._location_id = location_id
        self._base_url = base_url.rstrip("/")
        self._default_tags = list(default_tags)
        self._retry = retry or RetryConfig(initial_ms=800, max_ms=8000, jitter_ms=250, max_attempts=4)
        self._field_cache = field_cache if field_cache is not None else FieldMappingCache()
        self._headers = {"Authorization": f"Bearer {api_key}", "Version": api_version}
        self._http = http_client or httpx.Client(timeout=timeout)
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "GHLClient":
        options: dict[str, Any] = {
            "base_url": settings.ghl_base_url,
            "api_version": settings.ghl_api_version,
            "timeout": settings.ghl_timeout_seconds,
            "default_tags": settings.ghl_default_tags,
            "retry": settings.crm_retry(),
            "field_cache": FieldMappingCache(ttl_seconds=settings.ghl_field_cache_ttl_seconds),
        }
        options.update(overrides)
        return cls(settings.ghl_private_integration_key, settings.ghl_location_id, **options)

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> Any:
        url = f"{self._base_url}{path}"

        def _send() -> Any:
            response = self._http.request(method, url, headers=self._headers, **kwargs)
            if response.status_code >= 400:
                preview = truncate_for_log(response.text, BODY_PREVIEW_CHARS)
                raise ExternalServiceError(
                    f"GHL {operation} failed (status {response.status_code}): {preview}",
                    operation=operation,
                    status_code=response.status_code,
                    body_preview=preview,
                )
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise ExternalServiceError(
                    f"GHL {operation} returned non-JSON",
                    operation=operation,
                    status_code=response.status_code,
                    body_preview=truncate_for_log(response.text, BODY_PREVIEW_CHARS),
                ) from exc

        return call_with_retry(_send, self._retry, operation=f"ghl.{operation}", sleep=self._sleep)

    # ------------------------------------------------------------------
    # Field mapping
    # ------------------------------------------------------------------

    def field_mapping(self) -> FieldMapping:
        cached = self._field_cache.get()
        if cached is not None:
            return cached
        payload = self._request(
            "GET",
            f"/locations/{self._location_id}/customFields",
            operation="custom_fields",
        )
        if isinstance(payload, dict):
            fields = payload.get("customFields") or payload.get("fields") or []
        else:
            fields = payload
        mapping = FieldMapping.from_fields(fields if isinstance(fields, list) else [])
        self._field_cache.put(mapping)
        logger.info("[ghl] field mapping refreshed: %d fields, %d keys", mapping.field_count, len(mapping.key_to_id))
        return mapping

    def map_custom_fields(self, values: dict[str, str]) -> list[dict[str, str]]:
        mapping = self.field_mapping()
        mapped: list[dict[str, str]] = []
        for key, value in values.items():
            field_id = mapping.key_to_id.get(key)
            if field_id:
                mapped.append({"id": field_id, "value": value})
            else:
                logger.warning("[ghl] custom field %r not in mapping, sending key directly", key)
                mapped.append({"key": key, "value": value})
        return mapped

    # ------------------------------------------------------------------
    # ContactRelationshipSystem
    # ------------------------------------------------------------------

    def _search_query(self, query: str) -> Optional[str]:
        payload = self._request(
            "GET",
            "/contacts/",
            operation="search",
            params={"locationId": self._location_id, "query": query},
        )
        contacts = payload.get("contacts") if isinstance(payload, dict) else None
        if not contacts:
            return None
        newest = max(contacts, key=_contact_sort_key)
        return newest.get("id")

    def search(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[str]:
        if email and is_valid_email(email):
            found = self._search_query(email.strip().lower())
            if found:
                return found
        normalized = normalize_phone(phone)
        if normalized:
            return self._search_query(normalized)
        return None

    def create(self, profile: CandidateProfile) -> str:
        first_name, last_name = split_name(profile.full_name)
        email = profile.email.strip() if profile.email and is_valid_email(profile.email) else None
        digits = normalize_phone(profile.phone)
        phone = f"+{digits}" if digits else None

        base = {
            "firstName": first_name or "Unknown",
            "lastName": last_name,
            "locationId": self._location_id,
            "tags": list(self._default_tags),
        }
        variants: list[dict[str, Any]] = []
        for channels in (
            {"email": email, "phone": phone},
            {"email": email},
            {"phone": phone},
            {},
        ):
            payload = {**base, **{k: v for k, v in channels.items() if v}}
            if payload not in variants:
                variants.append(payload)

        last_error: Optional[ExternalServiceError] = None
        for payload in variants:
            try:
                result = self._request("POST", "/contacts/", operation="create", json=payload)
            except ExternalServiceError as exc:
                if exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429:
                    raise
                logger.warning(
                    "[ghl] contact create rejected (status %s) with fields %s; trying a smaller payload",
                    exc.status_code,
                    sorted(k for k in payload if k in ("email", "phone")),
                )
                last_error = exc
                continue
            contact_id = (result.get("contact") or {}).get("id") if isinstance(result, dict) else None
            if not contact_id:
                raise ExternalServiceError(
                    "GHL create succeeded but returned no contact id",
                    operation="create",
                    body_preview=truncate_for_log(str(result), BODY_PREVIEW_CHARS),
                )
            logger.info("[ghl] contact created: %s", contact_id)
            return contact_id

        raise ExternalServiceError(
            "GHL contact creation failed for every payload variant",
            operation="create",
            status_code=last_error.status_code if last_error else None,
            body_preview=last_error.body_preview if last_error else "",
        )

    def update(
        self,
        contact_id: str,
        profile: CandidateProfile,
        *,
        candidate_id: Optional[str] = None,
        file_urls: Sequence[str] = (),
    ) -> None:
        custom_fields = self.map_custom_fields(build_custom_fields(profile, candidate_id, file_urls))
        self._request(
            "PUT",
            f"/contacts/{contact_id}",
            operation="update",
            json={"customFields": custom_fields},
        )

    def upload_file(self, contact_id: str, data: bytes, name: str) -> str:
        extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
        mime_type = UPLOAD_MIME_TYPES.get(extension, "application/octet-stream")
        result = self._request(
            "POST",
            "/medias/upload-file",
            operation="upload",
            files={"file": (name, data, mime_type)},
            data={"name": name},
        )
        url = ""
        if isinstance(result, dict):
            url = result.get("url") or result.get("fileUrl") or result.get("publicUrl") or ""
        if not url:
            raise ExternalServiceError(
                f"GHL upload for contact {contact_id} returned no file URL",
                operation="upload",
                body_preview=truncate_for_log(str(result), BODY_PREVIEW_CHARS),
            )
        return url


__all__ = ["FieldMapping", "FieldMappingCache", "GHLClient", "build_custom_fields"]

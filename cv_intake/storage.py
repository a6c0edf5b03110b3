"""Supabase Storage implementation of the ObjectStore protocol."""

from __future__ import annotations

import logging
import posixpath
import time
from typing import Any, Callable, Iterable, Optional, TypeVar

from supabase import create_client

from .errors import ConfigurationError, ExternalServiceError
from .models import StoredObject
from .retry_policy import TRANSIENT_EXCEPTIONS, RetryConfig, call_with_retry
from .settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

LIST_PAGE_SIZE = 1000

DEFAULT_STORAGE_RETRY = RetryConfig(initial_ms=500, max_ms=5000, jitter_ms=200, max_attempts=3)


def create_supabase_client(settings: Settings) -> Any:
    """Create a Supabase client from settings.

    Raises
    ------
    ConfigurationError
        If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY are missing.
    """

    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

    logger.debug("Creating Supabase client for %s", settings.supabase_url)
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def _extension(name: str) -> str:
    return posixpath.splitext(name)[1].lower()


def _status_of(exc: BaseException) -> Optional[int]:
    # storage3 errors carry the API error payload as their only argument
    payload = exc.args[0] if exc.args else None
    if not isinstance(payload, dict):
        return None
    try:
        return int(payload.get("statusCode") or payload.get("status"))
    except (TypeError, ValueError):
        return None


class SupabaseObjectStore:
    """List, size and download batch uploads from one storage bucket.

    Every storage call runs through :func:`call_with_retry`; transport errors
    and retryable status codes are retried, everything else surfaces as
    :class:`ExternalServiceError` on the first attempt.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        allowed_extensions: Optional[Iterable[str]] = None,
        *,
        retry: RetryConfig = DEFAULT_STORAGE_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._allowed = {ext.lower() for ext in allowed_extensions} if allowed_extensions else None
        self._retry = retry
        self._sleep = sleep

    def _bucket_api(self) -> Any:
        return self._client.storage.from_(self._bucket)

    def _call(self, fn: Callable[[], T], operation: str, failure: str) -> T:
        def attempt() -> T:
            try:
                return fn()
            except TRANSIENT_EXCEPTIONS:
                raise
            except Exception as exc:
                raise ExternalServiceError(
                    f"{failure}: {exc}", operation=operation, status_code=_status_of(exc)
                ) from exc

        return call_with_retry(attempt, self._retry, operation=operation, sleep=self._sleep)

    def _list_entries(self, prefix: str, search: Optional[str] = None) -> list[dict[str, Any]]:
        folder = prefix.rstrip("/")
        options: dict[str, Any] = {"limit": LIST_PAGE_SIZE, "offset": 0, "sortBy": {"column": "name", "order": "asc"}}
        if search:
            options["search"] = search
        entries: list[dict[str, Any]] = []
        while True:
            page_options = dict(options)
            page = self._call(
                lambda: self._bucket_api().list(folder, page_options),
                "storage.list",
                f"Storage list failed for {prefix}",
            )
            entries.extend(page or [])
            if not page or len(page) < LIST_PAGE_SIZE:
                return entries
            options["offset"] += LIST_PAGE_SIZE

    def list(self, prefix: str) -> list[StoredObject]:
        objects: list[StoredObject] = []
        for entry in self._list_entries(prefix):
            name = entry.get("name") or ""
            # folders come back without an id
            if not name or entry.get("id") is None:
                continue
            if name.startswith("."):
                continue
            if self._allowed is not None and _extension(name) not in self._allowed:
                logger.info("[storage] skipping %s: unsupported extension", name)
                continue
            objects.append(StoredObject(name=name, path=f"{prefix.rstrip('/')}/{name}"))
        return objects

    def get(self, path: str) -> bytes:
        return self._call(
            lambda: self._bucket_api().download(path),
            "storage.get",
            f"Storage download failed for {path}",
        )

    def stat(self, path: str) -> int:
        folder, name = posixpath.split(path)
        for entry in self._list_entries(folder, search=name):
            if entry.get("name") == name:
                metadata = entry.get("metadata") or {}
                return int(metadata.get("size") or 0)
        raise ExternalServiceError(f"Storage object not found: {path}", operation="storage.stat", status_code=404)


__all__ = ["DEFAULT_STORAGE_RETRY", "SupabaseObjectStore", "create_supabase_client"]

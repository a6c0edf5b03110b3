"""
Logging setup for the intake CLI plus structured ``event`` lines.

Levels and the body truncation limit come from ``Settings`` (``LOG_LEVEL`` and
``MAX_LOG_LENGTH``) and are applied once by :func:`configure_logging`. Events go
to the ``cv_intake.events`` logger as one JSON object per line, with values
under credential-looking keys replaced by ``***``.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from typing import Any, Final, Mapping

__all__ = ["DEFAULT_MAX_LOG_LENGTH", "EventRedactionFilter", "configure_logging", "event", "truncate_for_log"]

DEFAULT_MAX_LOG_LENGTH: Final[int] = 2000
LOG_FORMAT: Final[str] = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
QUIET_LIBRARIES: Final[tuple[str, ...]] = ("httpx", "httpcore", "hpack", "postgrest", "storage3")
TRUNCATION_MARKER: Final[str] = "...[truncated]"
REDACTED: Final[str] = "***"

_SECRET_KEY_RE = re.compile(r"pass|token|cookie|key|secret|authorization", re.IGNORECASE)

_events = logging.getLogger("cv_intake.events")
_max_length = DEFAULT_MAX_LOG_LENGTH


def _scrub(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if isinstance(key, str) and _SECRET_KEY_RE.search(key) else _scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


class EventRedactionFilter(logging.Filter):
    """Render an event payload attached to a record as redacted JSON."""

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "event_payload", None)
        if isinstance(payload, dict):
            record.msg = json.dumps(_scrub(payload), separators=(",", ":"), sort_keys=True, default=str)
            record.args = ()
        return True


_events.addFilter(EventRedactionFilter())


def event(name: str, **fields: Any) -> None:
    """Emit one structured event line, e.g. ``event("batch.complete", batch_id=...)``."""

    _events.info("%s", name, extra={"event_payload": {"event": name, **fields}})


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    if isinstance(level, int):
        return level
    logging.getLogger(__name__).warning("[log] unknown LOG_LEVEL %r; using INFO", name)
    return logging.INFO


def configure_logging(
    verbose: bool = False,
    *,
    level: str = "INFO",
    max_length: int = DEFAULT_MAX_LOG_LENGTH,
) -> None:
    """Set up root logging for a CLI run.

    ``verbose`` forces DEBUG regardless of ``level``. Log lines go to stderr
    so ``--json`` output on stdout stays machine-readable.
    """

    global _max_length
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else _level_from_name(level))
    for library in QUIET_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)
    _max_length = max(1, max_length)


def truncate_for_log(text: str | None, max_length: int | None = None) -> str:
    """Clip ``text`` to ``max_length`` chars, defaulting to the configured MAX_LOG_LENGTH."""

    if not text:
        return ""
    limit = _max_length if max_length is None else max_length
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER

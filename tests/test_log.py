"""Tests for logging setup and structured event lines."""

from __future__ import annotations

import json
import logging

import pytest

from cv_intake.utils import log
from cv_intake.utils.log import EventRedactionFilter, configure_logging, event, truncate_for_log


@pytest.fixture
def restore_root(monkeypatch):
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(log, "_max_length", log.DEFAULT_MAX_LOG_LENGTH)
    yield root
    root.setLevel(level)


def _event_payloads(caplog) -> list[dict]:
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == "cv_intake.events"]


# ═══════════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════════


def test_event_is_rendered_as_json(caplog):
    with caplog.at_level(logging.INFO):
        event("batch.complete", batch_id="b1", processed=3)

    [payload] = _event_payloads(caplog)
    assert payload == {"event": "batch.complete", "batch_id": "b1", "processed": 3}


def test_event_redacts_sensitive_keys(caplog):
    with caplog.at_level(logging.INFO):
        event(
            "crm.request",
            api_key="sk-123",
            headers={"Authorization": "Bearer x", "Version": "2021-07-28"},
            attempts=({"token": "t"},),
        )

    [payload] = _event_payloads(caplog)
    assert payload["api_key"] == "***"
    assert payload["headers"] == {"Authorization": "***", "Version": "2021-07-28"}
    assert payload["attempts"] == [{"token": "***"}]


def test_redaction_filter_leaves_plain_records_alone():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello %s", ("world",), None)

    assert EventRedactionFilter().filter(record) is True
    assert record.getMessage() == "hello world"


# ═══════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════


def test_configured_level_comes_from_settings_value(restore_root):
    configure_logging(level="warning")

    assert restore_root.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_verbose_overrides_configured_level(restore_root):
    configure_logging(True, level="ERROR")

    assert restore_root.level == logging.DEBUG


def test_unknown_level_falls_back_to_info(restore_root, caplog):
    with caplog.at_level(logging.WARNING, logger="cv_intake.utils.log"):
        configure_logging(level="chatty")

    assert restore_root.level == logging.INFO
    assert "unknown LOG_LEVEL 'chatty'" in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
# TRUNCATION
# ═══════════════════════════════════════════════════════════════════════════


def test_truncate_for_log(restore_root):
    assert truncate_for_log(None) == ""
    assert truncate_for_log("short", 10) == "short"
    assert truncate_for_log("abcdefghij", 4) == "abcd...[truncated]"
    assert truncate_for_log("x" * log.DEFAULT_MAX_LOG_LENGTH) == "x" * log.DEFAULT_MAX_LOG_LENGTH


def test_truncation_default_follows_configured_max_length(restore_root):
    configure_logging(max_length=5)

    assert truncate_for_log("abcdefghij") == "abcde...[truncated]"
    assert truncate_for_log("abcdefghij", 8) == "abcdefgh...[truncated]"

"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest

from cv_intake.models import IsolationPolicy
from cv_intake.settings import Settings, get_settings, reset_settings


@pytest.fixture(autouse=True)
def _no_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = Settings()

    assert settings.storage_bucket == "cv-uploads"
    assert settings.gemini_model == "gemini-2.0-flash"
    assert settings.continue_on_error is True
    assert settings.retryable_status_codes == [429, 500, 503]
    assert settings.allowed_extensions == [".pdf", ".docx", ".doc", ".txt"]


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MAX_FILES_PER_BATCH", "25")
    monkeypatch.setenv("MAX_FILE_SIZE_MB", "2.5")
    monkeypatch.setenv("CONTINUE_ON_ERROR", "false")
    monkeypatch.setenv("RETRYABLE_STATUS_CODES", "[429, 502]")

    settings = Settings()

    assert settings.max_files_per_batch == 25
    assert settings.isolation_policy() is IsolationPolicy.FAIL_BATCH
    assert settings.model_retry().retryable_statuses == frozenset({429, 502})
    assert settings.processing_limits().max_file_size_bytes == int(2.5 * 1024 * 1024)


def test_field_names_are_accepted_as_well_as_aliases():
    assert Settings(gemini_api_key="a").gemini_api_key == "a"
    assert Settings(GEMINI_API_KEY="b").gemini_api_key == "b"


def test_processing_limits_carry_timeout_rule():
    limits = Settings(PER_FILE_ALLOWANCE_SECONDS=5, BATCH_TIMEOUT_BUFFER_SECONDS=60).processing_limits()

    assert limits.batch_timeout_seconds(10) == 110
    assert limits.batch_timeout_seconds(10_000) == 3600


def test_cost_limits_mirror_settings():
    limits = Settings(DAILY_CALL_CEILING=10, DAILY_COST_CEILING_USD=1.5, CALLS_PER_FILE=3).cost_limits()

    assert limits.daily_call_ceiling == 10
    assert limits.daily_cost_ceiling == 1.5
    assert limits.calls_per_file == 3


def test_retry_configs_are_separate():
    settings = Settings(GEMINI_MAX_ATTEMPTS=6, GHL_MAX_ATTEMPTS=2, STORAGE_MAX_ATTEMPTS=5)

    assert settings.model_retry().max_attempts == 6
    assert settings.crm_retry().max_attempts == 2
    assert settings.crm_retry().initial_ms == 800
    assert settings.storage_retry().max_attempts == 5
    assert settings.storage_retry().initial_ms == 500
    assert settings.storage_retry().retryable_statuses == frozenset({429, 500, 503})


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("STORAGE_BUCKET", "other")
    reset_settings()

    assert get_settings().storage_bucket == "other"

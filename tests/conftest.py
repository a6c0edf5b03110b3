"""
tests/conftest.py

Shared fixtures for the intake test suite.

Every collaborator is an in-memory fake from ``tests.fakes``; nothing here
touches a database, the storage bucket, the model API or the CRM.
"""

from __future__ import annotations

from typing import Generator

import pytest

from cv_intake.settings import reset_settings
from tests.fakes import IntakeHarness

# Environment variables that would leak real credentials into Settings().
_SETTINGS_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_DB_URL",
    "GEMINI_API_KEY",
    "GHL_PRIVATE_INTEGRATION_KEY",
    "GHL_LOCATION_ID",
    "CONTINUE_ON_ERROR",
    "LOG_LEVEL",
    "MAX_LOG_LENGTH",
)


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def harness() -> IntakeHarness:
    return IntakeHarness()

"""Tests for duplicate detection across the candidate store and the CRM."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cv_intake.cost_guard import CostGuard
from cv_intake.duplicate_detector import DuplicateDetector, DuplicateMatch
from cv_intake.errors import ExternalServiceError
from tests.fakes import FakeCandidateStore, FakeCRM, FakeUsageLedger


@pytest.fixture
def store() -> FakeCandidateStore:
    return FakeCandidateStore()


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


def test_no_usable_contact_means_no_lookup():
    candidate_store = MagicMock()
    contacts = MagicMock()

    assert DuplicateDetector(candidate_store, contacts).find_match("not-an-email", "123") is None
    candidate_store.find_by_email.assert_not_called()
    contacts.search.assert_not_called()


def test_no_match_anywhere(store, crm):
    assert DuplicateDetector(store, crm).find_match("a@x.com", "07911 123456") is None


def test_store_match_on_email(store, crm):
    existing = store.seed(email="A@X.com")

    match = DuplicateDetector(store, crm).find_match(" a@x.com ", None)

    assert match == DuplicateMatch(candidate_id=existing, crm_contact_id=None, matched_on="email")


def test_store_match_on_normalized_phone(store, crm):
    existing = store.seed(phone="+44 7911 123456")

    match = DuplicateDetector(store, crm).find_match(None, "07911 123456")

    assert match is not None
    assert match.candidate_id == existing
    assert match.matched_on == "phone"


def test_latest_store_row_wins(store, crm):
    store.seed(email="a@x.com")
    newest = store.seed(email="a@x.com")

    match = DuplicateDetector(store, crm).find_match("a@x.com", None)

    assert match is not None
    assert match.candidate_id == newest


def test_crm_only_match(store, crm):
    contact = crm.seed(phone="07911 123456")

    match = DuplicateDetector(store, crm).find_match("a@x.com", "07911 123456")

    assert match is not None
    assert match.candidate_id is None
    assert match.crm_contact_id == contact
    assert match.matched_on == "phone"
    assert "CRM contact" in match.message


def test_both_systems_are_reported(store, crm):
    existing = store.seed(email="a@x.com")
    contact = crm.seed(email="a@x.com")

    match = DuplicateDetector(store, crm).find_match("a@x.com", None)

    assert match is not None
    assert (match.candidate_id, match.crm_contact_id) == (existing, contact)
    assert match.message == f"Duplicate detected by email: candidate {existing} and CRM contact {contact}"


def test_crm_is_searched_email_first_with_raw_phone():
    contacts = MagicMock()
    contacts.search.return_value = None
    candidate_store = MagicMock()
    candidate_store.find_by_email.return_value = None
    candidate_store.find_by_phone.return_value = None

    DuplicateDetector(candidate_store, contacts).find_match("A@x.com", " 07911 123456 ")

    assert [c.kwargs for c in contacts.search.call_args_list] == [
        {"email": "a@x.com"},
        {"phone": "07911 123456"},
    ]
    candidate_store.find_by_phone.assert_called_once_with("447911123456")


@pytest.mark.parametrize("check_store,check_crm", [(False, True), (True, False)])
def test_checks_can_be_disabled(store, crm, check_store, check_crm):
    store.seed(email="a@x.com")
    crm.seed(email="a@x.com")

    match = DuplicateDetector(store, crm, check_store=check_store, check_crm=check_crm).find_match("a@x.com", None)

    assert match is not None
    assert (match.candidate_id is not None) is check_store
    assert (match.crm_contact_id is not None) is check_crm


def test_detector_without_crm_checks_store_only(store):
    existing = store.seed(email="a@x.com")

    match = DuplicateDetector(store, None).find_match("a@x.com", None)

    assert match is not None
    assert match.candidate_id == existing


def test_crm_errors_propagate(store, crm):
    crm.failing.add("search")

    with pytest.raises(ExternalServiceError):
        DuplicateDetector(store, crm).find_match("a@x.com", None)


# ═══════════════════════════════════════════════════════════════════════════
# USAGE TRACKING
# ═══════════════════════════════════════════════════════════════════════════


def test_each_crm_search_is_recorded(store, crm):
    ledger = FakeUsageLedger()
    detector = DuplicateDetector(store, crm, cost_guard=CostGuard(ledger))

    assert detector.find_match("a@x.com", "07911 123456", batch_id="b1") is None

    assert ledger.operations() == ["crm_search", "crm_search"]
    assert {entry.batch_id for entry in ledger.entries} == {"b1"}
    assert {entry.api for entry in ledger.entries} == {"crm"}


def test_crm_search_stops_recording_after_email_hit(store, crm):
    crm.seed(email="a@x.com")
    ledger = FakeUsageLedger()

    DuplicateDetector(store, crm, cost_guard=CostGuard(ledger)).find_match("a@x.com", "07911 123456")

    assert ledger.operations() == ["crm_search"]


def test_disabled_crm_check_records_nothing(store, crm):
    ledger = FakeUsageLedger()

    DuplicateDetector(store, crm, check_crm=False, cost_guard=CostGuard(ledger)).find_match("a@x.com", None)

    assert ledger.operations() == []
    assert "search" not in crm.calls

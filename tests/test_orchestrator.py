"""
Tests for the batch orchestrator.

Runs whole batches against in-memory fakes and checks file statuses, pack
routing, persisted candidates and the batch lifecycle.
"""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from cv_intake.cost_guard import CostLimits
from cv_intake.errors import BatchFailure, ExternalServiceError
from cv_intake.models import (
    Batch,
    BatchConfig,
    BatchStatus,
    CandidateStatus,
    FileStatus,
    HoldReason,
    IsolationPolicy,
    QuickIdentity,
)
from cv_intake.orchestrator import (
    HOLD_NOTES,
    INSUFFICIENT_TEXT,
    STUDENT_REJECTION,
    has_required_skills,
    missing_required_skills,
)
from cv_intake.pack_grouper import INSUFFICIENT_IDENTITY
from tests.fakes import (
    COVER_LETTER_TEXT,
    NOW,
    IntakeHarness,
    cover_letter_verdict,
    irrelevant_verdict,
)

ALICE = QuickIdentity(full_name="Alice Smith", email="a@x.com", skills=["Python", "SQL"])
BOB = QuickIdentity(full_name="Bob Jones", email="bob@y.com", skills=["Excel"])


# ═══════════════════════════════════════════════════════════════════════════
# SKILL FILTER HELPERS
# ═══════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize(
    "required,skills,expected",
    [
        ([], ["anything"], True),
        (["python"], ["Senior Python Developer"], True),
        (["python", "rust"], ["python"], True),
        (["rust"], ["python", "sql"], False),
        (["rust"], [], False),
        ([""], ["Python"], True),
        (["  ", ""], [], True),
        (["", "rust"], ["python"], False),
        ([" python "], ["Python"], True),
    ],
)
def test_has_required_skills(required, skills, expected):
    assert has_required_skills(required, skills) is expected


def test_missing_required_skills_is_case_insensitive_substring():
    assert missing_required_skills(["PYTHON", "Go"], ["python 3", "excel"]) == ["Go"]


def test_missing_required_skills_ignores_blank_entries():
    assert missing_required_skills(["", " ", "Go"], ["", "python"]) == ["Go"]
    assert missing_required_skills([""], []) == []


# ═══════════════════════════════════════════════════════════════════════════
# HAPPY PATHS
# ═══════════════════════════════════════════════════════════════════════════


def test_single_cv_becomes_one_synced_candidate(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert not result.skipped
    assert result.stats.candidates_created == 1
    assert result.stats.processed == 1
    assert len(harness.candidates.rows) == 1

    candidate_id, row = next(iter(harness.candidates.rows.items()))
    assert row["email"] == "a@x.com"
    assert row["cv_file_path"] == path
    assert row["status"] == CandidateStatus.COMPLETE.value
    assert row["crm_contact_id"] == "contact-1"

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.COMPLETE
    assert record.candidate_id == candidate_id
    assert record.pack_id is not None

    batch = harness.batches.batches["b1"]
    assert batch.status is BatchStatus.COMPLETE
    assert batch.processed_count == 1


def test_cv_and_cover_letter_sharing_email_form_one_pack(harness: IntakeHarness):
    harness.batches.add("b1")
    cv_path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    letter_path = harness.add_file(
        "b1",
        "alice_cover.pdf",
        COVER_LETTER_TEXT,
        identity=QuickIdentity(email="A@X.com"),
        verdict=cover_letter_verdict(),
    )

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.stats.packs == 1
    assert len(harness.candidates.rows) == 1
    row = next(iter(harness.candidates.rows.values()))
    assert len(row["documents"]) == 2
    assert [doc["type"] for doc in row["documents"]] == ["cv", "cover_letter"]
    assert row["cv_file_path"] == cv_path
    assert row["cover_letter_file_path"] == letter_path
    assert row["application_docs_file_paths"] == [letter_path]
    assert "=== DOCUMENT 1: CV (alice_cv.pdf) ===" in row["documents_raw_text"]

    pack_ids = {harness.files.status_of("b1", p).pack_id for p in (cv_path, letter_path)}
    assert len(pack_ids) == 1
    assert len(harness.crm.uploads) == 2


def test_usage_is_recorded_for_every_external_operation(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert harness.ledger.operations() == [
        "text_extraction",
        "document_classification",
        "quick_parse",
        "crm_search",
        "full_parse",
        "crm_search",
        "crm_create",
        "crm_upload",
        "crm_update",
    ]
    assert all(entry.batch_id == "b1" for entry in harness.ledger.entries)
    assert result.cost["calls"] == 9
    assert result.classification["total"] == 1


def test_progress_reaches_total(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    harness.add_file("b1", "bob_cv.pdf", identity=BOB)

    harness.orchestrator().run("b1", "client-1")

    assert harness.batches.progress[0] == ("b1", 0, 2)
    assert harness.batches.progress[-1] == ("b1", 2, 2)


# ═══════════════════════════════════════════════════════════════════════════
# ADMISSION AND LIMITS
# ═══════════════════════════════════════════════════════════════════════════


def test_admission_denied_fails_batch_without_reading_files():
    harness = IntakeHarness(CostLimits(daily_call_ceiling=100))
    harness.batches.add("b1")
    for index in range(20):
        harness.add_file("b1", f"cv_{index}.pdf")

    assert harness.cost_guard.evaluate(1000).allowed is False

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.FAILED
    assert "Daily API call limit would be exceeded" in (result.reason or "")
    assert harness.objects.reads() == []
    assert harness.extractor.calls == []
    assert harness.batches.claims == []
    assert harness.batches.batches["b1"].status is BatchStatus.FAILED


def test_too_many_files_fails_batch(harness: IntakeHarness):
    harness.batches.add("b1")
    for index in range(3):
        harness.add_file("b1", f"cv_{index}.pdf")

    result = harness.orchestrator(max_files_per_batch=2).run("b1", "client-1")

    assert result.status is BatchStatus.FAILED
    assert "maximum is 2" in (result.reason or "")
    assert harness.objects.reads() == []


def test_empty_batch_completes_immediately(harness: IntakeHarness):
    harness.batches.add("b1")

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.reason == "no files"
    assert harness.batches.batches["b1"].status is BatchStatus.COMPLETE


def test_missing_batch_raises(harness: IntakeHarness):
    with pytest.raises(BatchFailure):
        harness.orchestrator().run("nope", "client-1")


# ═══════════════════════════════════════════════════════════════════════════
# LIFECYCLE, RECOVERY AND IDEMPOTENCE
# ═══════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("status", [BatchStatus.COMPLETE, BatchStatus.FAILED])
def test_terminal_batch_is_skipped(harness: IntakeHarness, status: BatchStatus):
    harness.batches.add("b1", status)
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.skipped
    assert result.status is status
    assert harness.objects.calls == []


def test_processing_batch_within_budget_is_left_alone(harness: IntakeHarness):
    harness.batches.add("b1", BatchStatus.PROCESSING, file_count=1, created_at=NOW - timedelta(seconds=30))
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.skipped
    assert result.reason == "batch already processing"
    assert harness.objects.calls == []
    assert harness.batches.batches["b1"].recovery_attempts == 0


def test_timed_out_batch_is_recovered_and_processed(harness: IntakeHarness):
    harness.batches.add("b1", BatchStatus.PROCESSING, file_count=1, created_at=NOW - timedelta(hours=2))
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert harness.batches.batches["b1"].recovery_attempts == 1
    assert len(harness.candidates.rows) == 1


@pytest.mark.parametrize(
    "file_count,age_seconds,expected",
    [
        (10, 399, False),
        (10, 401, True),
        (1000, 3599, False),
        (1000, 3601, True),
    ],
)
def test_timeout_budget(harness: IntakeHarness, file_count: int, age_seconds: int, expected: bool):
    batch = Batch(
        id="b1",
        status=BatchStatus.PROCESSING,
        file_count=file_count,
        created_at=NOW - timedelta(seconds=age_seconds),
    )
    assert harness.orchestrator().is_timed_out(batch) is expected


def test_timeout_treats_naive_timestamps_as_utc(harness: IntakeHarness):
    naive = (NOW - timedelta(hours=2)).replace(tzinfo=None)
    batch = Batch(id="b1", status=BatchStatus.PROCESSING, file_count=1, created_at=naive)
    assert harness.orchestrator().is_timed_out(batch) is True


def test_missing_created_at_is_never_timed_out(harness: IntakeHarness):
    batch = Batch(id="b1", status=BatchStatus.PROCESSING, created_at=None)
    assert harness.orchestrator().is_timed_out(batch) is False


def test_rerun_after_crash_makes_no_external_calls(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    harness.orchestrator().run("b1", "client-1")
    calls_before = harness.external_calls()
    ledger_before = len(harness.ledger.entries)

    crashed = harness.batches.batches["b1"]
    crashed.status = BatchStatus.PROCESSING
    crashed.created_at = NOW - timedelta(hours=3)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.stats.skipped == 1
    assert harness.external_calls() == calls_before
    assert len(harness.ledger.entries) == ledger_before
    assert len(harness.candidates.rows) == 1


def test_rerun_only_reads_unfinished_files(harness: IntakeHarness):
    harness.batches.add("b1")
    done = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    pending = harness.add_file("b1", "bob_cv.pdf", identity=BOB)
    harness.files.upsert("b1", done, FileStatus.COMPLETE, file_name="alice_cv.pdf", candidate_id="cand-x")

    result = harness.orchestrator().run("b1", "client-1")

    assert result.stats.skipped == 1
    assert harness.extractor.calls == ["bob_cv.pdf"]
    assert done not in harness.objects.reads()
    assert pending in harness.objects.reads()
    assert harness.files.status_of("b1", done).candidate_id == "cand-x"


def test_rerun_success_clears_previous_failure_reason(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    harness.extractor.errors["alice_cv.pdf"] = RuntimeError("model down")

    harness.orchestrator().run("b1", "client-1")
    failed = harness.files.status_of("b1", path)
    assert failed.status is FileStatus.FAILED
    assert "model down" in (failed.error_message or "")

    del harness.extractor.errors["alice_cv.pdf"]
    crashed = harness.batches.batches["b1"]
    crashed.status = BatchStatus.PROCESSING
    crashed.created_at = NOW - timedelta(hours=3)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.COMPLETE
    assert record.error_message is None
    assert record.candidate_id is not None

def test_claim_lost_to_another_run_is_skipped(harness: IntakeHarness, monkeypatch: pytest.MonkeyPatch):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    monkeypatch.setattr(harness.batches, "claim", lambda batch_id: False)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.skipped
    assert result.status is BatchStatus.PROCESSING
    assert harness.objects.reads() == []


# ═══════════════════════════════════════════════════════════════════════════
# FILE-LEVEL OUTCOMES
# ═══════════════════════════════════════════════════════════════════════════


def test_file_without_identity_is_failed_and_ungrouped(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "mystery_cv.pdf")

    result = harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.FAILED
    assert record.error_message == INSUFFICIENT_IDENTITY
    assert record.pack_id is None
    assert result.stats.packs == 0
    assert harness.candidates.rows == {}
    assert harness.hold_queue.entries == {}
    assert result.status is BatchStatus.COMPLETE


def test_oversized_file_is_failed_with_validation_rejection(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "huge_cv.pdf", identity=ALICE, size=11 * 1024 * 1024)

    result = harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.FAILED
    assert "exceeds maximum 10MB" in (record.error_message or "")
    assert harness.objects.reads() == []
    assert harness.rejections.records[0]["rejection_type"] == "validation"
    assert result.stats.failed == 1


def test_short_text_is_failed_as_insufficient(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "tiny_cv.pdf", "Hi.")

    harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.FAILED
    assert INSUFFICIENT_TEXT in (record.error_message or "")
    assert harness.classifier.calls == []


def test_irrelevant_document_is_rejected(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "notes_cv.pdf", identity=ALICE, verdict=irrelevant_verdict())

    result = harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.REJECTED
    assert "not recruitment related" in (record.error_message or "")
    assert result.stats.rejected_by_classification == 1
    assert harness.rejections.records[0]["rejection_type"] == "classification"
    assert harness.rejections.records[0]["details"]["should_process"] is False
    assert record.document_type == harness.rejections.records[0]["details"]["document_type"]
    assert harness.parser.quick_calls == []


def test_heuristic_rejection_skips_the_classifier(harness: IntakeHarness):
    harness.batches.add("b1")
    text = "Invoice number 4411. Payment due within 30 days. Total amount 120.00 GBP."
    path = harness.add_file("b1", "invoice_2024.pdf", text)

    harness.orchestrator().run("b1", "client-1")

    assert harness.files.status_of("b1", path).status is FileStatus.REJECTED
    assert harness.classifier.calls == []


def test_file_error_is_isolated_by_default(harness: IntakeHarness):
    harness.batches.add("b1")
    broken = harness.add_file("b1", "broken_cv.pdf", identity=BOB)
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    harness.extractor.errors["broken_cv.pdf"] = ExternalServiceError("model unavailable", status_code=503)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert harness.files.status_of("b1", broken).status is FileStatus.FAILED
    assert result.stats.failed == 1
    assert result.stats.candidates_created == 1


def test_file_error_fails_batch_under_fail_batch_policy(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "broken_cv.pdf", identity=BOB)
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    harness.extractor.errors["broken_cv.pdf"] = ExternalServiceError("model unavailable", status_code=503)

    result = harness.orchestrator(IsolationPolicy.FAIL_BATCH).run("b1", "client-1")

    assert result.status is BatchStatus.FAILED
    assert harness.extractor.calls == ["broken_cv.pdf"]
    assert harness.batches.batches["b1"].status is BatchStatus.FAILED


def test_pack_overflow_files_are_failed(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    letter = harness.add_file(
        "b1", "alice_cover.pdf", COVER_LETTER_TEXT, identity=ALICE, verdict=cover_letter_verdict()
    )

    result = harness.orchestrator(max_files_per_pack=1).run("b1", "client-1")

    record = harness.files.status_of("b1", letter)
    assert record.status is FileStatus.FAILED
    assert record.error_message == "dropped: pack exceeded 1 files"
    assert result.stats.candidates_created == 1


# ═══════════════════════════════════════════════════════════════════════════
# PACK ROUTING
# ═══════════════════════════════════════════════════════════════════════════


def test_pack_without_cv_goes_to_hold_queue(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file(
        "b1", "alice_cover.pdf", COVER_LETTER_TEXT, identity=ALICE, verdict=cover_letter_verdict()
    )

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.AWAITING_INPUT
    entry = harness.hold_queue.entries["hold-1"]
    assert entry.reason is HoldReason.MISSING_CV_FILE
    assert entry.cv_file_path is None
    assert entry.extracted_email == "a@x.com"
    assert len(entry.raw_text_preview) <= 1000
    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.COMPLETE
    assert record.error_message == HOLD_NOTES[HoldReason.MISSING_CV_FILE]
    assert harness.candidates.rows == {}


def test_students_are_rejected_when_excluded(harness: IntakeHarness):
    harness.batches.add("b1", config=BatchConfig(exclude_students=True))
    path = harness.add_file(
        "b1", "alice_cv.pdf", identity=ALICE.model_copy(update={"is_student": True})
    )

    result = harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.REJECTED
    assert record.error_message == STUDENT_REJECTION
    assert result.stats.rejected_by_filters == 1
    rejection = harness.rejections.records[0]
    assert rejection["rejection_type"] == "filter"
    assert rejection["details"]["is_student"] is True
    assert harness.candidates.rows == {}


def test_students_pass_when_filter_is_off(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE.model_copy(update={"is_student": True}))

    result = harness.orchestrator().run("b1", "client-1")

    assert result.stats.candidates_created == 1


def test_missing_required_skills_rejects_pack(harness: IntakeHarness):
    harness.batches.add("b1", config=BatchConfig(required_skills=["forklift", "welding"]))
    path = harness.add_file("b1", "bob_cv.pdf", identity=BOB)

    harness.orchestrator().run("b1", "client-1")

    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.REJECTED
    assert record.error_message == "Missing required skills: forklift, welding"
    details = harness.rejections.records[0]["details"]
    assert details["missing_skills"] == ["forklift", "welding"]
    assert details["candidate_skills"] == ["Excel"]


def test_blank_required_skills_do_not_reject(harness: IntakeHarness):
    harness.batches.add("b1", config=BatchConfig(required_skills=["", "  "]))
    path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert harness.files.status_of("b1", path).status is FileStatus.COMPLETE
    assert harness.rejections.records == []
    assert result.stats.candidates_created == 1

def test_any_required_skill_is_enough(harness: IntakeHarness):
    harness.batches.add("b1", config=BatchConfig(required_skills=["python", "rust"]))
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.stats.candidates_created == 1


def test_name_only_pack_is_held_for_contact_info(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "jane_cv.pdf", identity=QuickIdentity(full_name="Jane Doe"))

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.AWAITING_INPUT
    entry = harness.hold_queue.entries["hold-1"]
    assert entry.reason is HoldReason.MISSING_CONTACT_INFO
    assert entry.extracted_name == "Jane Doe"
    assert result.stats.held_for_review == 1


def test_non_latin_name_only_pack_is_held_not_failed(harness: IntakeHarness):
    harness.batches.add("b1")
    path = harness.add_file("b1", "cv.pdf", identity=QuickIdentity(full_name="李明"))

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.AWAITING_INPUT
    assert harness.hold_queue.entries["hold-1"].reason is HoldReason.MISSING_CONTACT_INFO
    assert harness.files.status_of("b1", path).error_message != INSUFFICIENT_IDENTITY


def test_contact_info_requirement_can_be_disabled(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "jane_cv.pdf", identity=QuickIdentity(full_name="Jane Doe"))

    result = harness.orchestrator(require_email_or_phone=False).run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.stats.candidates_created == 1


def test_duplicate_is_held_with_match_details(harness: IntakeHarness):
    existing = harness.candidates.seed(email="a@x.com", phone=None)
    contact = harness.crm.seed(email="a@x.com")
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.AWAITING_INPUT
    assert result.stats.duplicates_found == 1
    entry = harness.hold_queue.entries["hold-1"]
    assert entry.reason is HoldReason.DUPLICATE_DETECTED
    assert entry.duplicate_candidate_id == existing
    assert entry.duplicate_crm_contact_id == contact
    assert entry.extraction_data["duplicate"]["matched_on"] == "email"
    assert len(harness.candidates.rows) == 1
    assert harness.parser.full_calls == []


def test_sync_failure_keeps_candidate(harness: IntakeHarness):
    harness.crm.failing.add("create")
    harness.batches.add("b1")
    path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.stats.sync_failed == 1
    row = next(iter(harness.candidates.rows.values()))
    assert row["status"] == CandidateStatus.SYNC_FAILED.value
    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.COMPLETE
    assert (record.error_message or "").startswith("CRM sync failed")


def test_unexpected_sync_error_degrades_candidate(harness: IntakeHarness, monkeypatch: pytest.MonkeyPatch):
    def broken_update(*args, **kwargs):
        raise httpx.DecodingError("bad gzip body")

    monkeypatch.setattr(harness.crm, "update", broken_update)
    harness.batches.add("b1")
    path = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    assert result.stats.sync_failed == 1
    assert result.stats.failed == 0
    row = next(iter(harness.candidates.rows.values()))
    assert row["status"] == CandidateStatus.SYNC_FAILED.value
    record = harness.files.status_of("b1", path)
    assert record.status is FileStatus.COMPLETE
    assert (record.error_message or "").startswith("CRM sync failed")
    assert "bad gzip body" in (record.error_message or "")


def _failing_full_parse(harness: IntakeHarness, marker: str):
    original = harness.parser.full_parse

    def full_parse(text: str):
        if marker in text:
            raise RuntimeError("parser exploded")
        return original(text)

    return full_parse


def test_pack_error_is_isolated_by_default(harness: IntakeHarness, monkeypatch: pytest.MonkeyPatch):
    harness.batches.add("b1")
    bob = harness.add_file("b1", "bob_cv.pdf", identity=BOB)
    alice = harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    monkeypatch.setattr(harness.parser, "full_parse", _failing_full_parse(harness, "bob_cv.pdf"))

    result = harness.orchestrator().run("b1", "client-1")

    assert result.status is BatchStatus.COMPLETE
    bob_record = harness.files.status_of("b1", bob)
    assert bob_record.status is FileStatus.FAILED
    assert "parser exploded" in (bob_record.error_message or "")
    assert harness.files.status_of("b1", alice).status is FileStatus.COMPLETE
    assert result.stats.failed == 1
    assert result.stats.processed == 1


def test_pack_error_fails_batch_under_fail_batch_policy(harness: IntakeHarness, monkeypatch: pytest.MonkeyPatch):
    harness.batches.add("b1")
    harness.add_file("b1", "bob_cv.pdf", identity=BOB)
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)
    monkeypatch.setattr(harness.parser, "full_parse", _failing_full_parse(harness, "bob_cv.pdf"))

    result = harness.orchestrator(IsolationPolicy.FAIL_BATCH).run("b1", "client-1")

    assert result.status is BatchStatus.FAILED
    assert harness.candidates.rows == {}
    assert harness.batches.batches["b1"].status is BatchStatus.FAILED


def test_unexpected_error_marks_batch_failed_and_propagates(harness: IntakeHarness, monkeypatch: pytest.MonkeyPatch):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    def broken_list(batch_id: str):
        raise RuntimeError("file status table missing")

    monkeypatch.setattr(harness.files, "list_for_batch", broken_list)

    with pytest.raises(RuntimeError):
        harness.orchestrator().run("b1", "client-1")

    assert harness.batches.batches["b1"].status is BatchStatus.FAILED


def test_batch_result_serializes(harness: IntakeHarness):
    harness.batches.add("b1")
    harness.add_file("b1", "alice_cv.pdf", identity=ALICE)

    payload = harness.orchestrator().run("b1", "client-1").as_dict()

    assert payload["status"] == "complete"
    assert payload["stats"]["candidates_created"] == 1

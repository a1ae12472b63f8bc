"""
Unit tests for capture queue models.

Tests CaptureItem defaults, row conversion for the SQLite backend,
payload validation and the submission result display message.
"""

import json

import pytest
from pydantic import ValidationError

from lexflow.core.queue.models import (
    CaptureItem,
    CapturePayload,
    CaptureStatus,
    SubmissionResult,
    now_ms,
)


class TestCaptureItem:
    """Test CaptureItem model."""

    def test_defaults(self) -> None:
        """A new item is queued with no curation or submission data."""
        item = CaptureItem(id="cap-a7x3m2q9", created_at=1760788800000, raw_text="Art. 1º")

        assert item.status == CaptureStatus.QUEUED
        assert item.curated_document is None
        assert item.submitted_at is None
        assert item.submission_result is None
        assert item.is_deleted is False

    def test_empty_raw_text_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CaptureItem(id="cap-a7x3m2q9", created_at=0, raw_text="")

    def test_status_from_string(self) -> None:
        item = CaptureItem(id="cap-1", created_at=0, raw_text="x", status="deleted")
        assert item.status == CaptureStatus.DELETED
        assert item.is_deleted is True

    def test_to_row_serializes_result(self) -> None:
        """submission_result is stored as JSON text and status as its value."""
        item = CaptureItem(
            id="cap-1",
            created_at=1,
            raw_text="Art. 1º",
            status=CaptureStatus.ERROR,
            submission_result={"kind": "not_found", "message": "Endpoint não encontrado"},
        )

        row = item.to_row()

        assert row["status"] == "error"
        assert json.loads(row["submission_result"])["message"] == "Endpoint não encontrado"

    def test_row_round_trip(self) -> None:
        item = CaptureItem(
            id="cap-1",
            created_at=1,
            raw_text="Art. 1º",
            curated_document="---\ntitle: \"x\"\n---\n",
            status=CaptureStatus.SUBMITTED,
            submitted_at=2,
            submission_result={"success": True, "reference_number": 42},
        )

        assert CaptureItem.from_row(item.to_row()) == item

    def test_from_row_invalid_json(self) -> None:
        row = CaptureItem(id="cap-1", created_at=1, raw_text="x").to_row()
        row["submission_result"] = "{not json"

        with pytest.raises(ValueError, match="Invalid submission_result"):
            CaptureItem.from_row(row)


class TestCapturePayload:
    """Test CapturePayload validation."""

    def test_minimal_payload(self) -> None:
        payload = CapturePayload(raw_text="Art. 1º")
        assert payload.source_url == ""
        assert payload.jurisdiction_hint == ""

    def test_empty_text_rejected(self) -> None:
        with pytest.raises(ValidationError):
            CapturePayload(raw_text="")


class TestSubmissionResult:
    """Test SubmissionResult display message."""

    def test_message_with_reference_number(self) -> None:
        result = SubmissionResult(
            message="PR created",
            reference_url="https://github.com/org/corpus/pull/42",
            reference_number=42,
        )
        assert result.display_message() == "PR created - PR: 42"

    def test_message_with_reference_url_only(self) -> None:
        result = SubmissionResult(reference_url="https://github.com/org/corpus/pull/42")
        assert result.display_message() == "Submitted successfully - PR: created"

    def test_message_without_reference(self) -> None:
        assert SubmissionResult(message="Stored").display_message() == "Stored"


def test_now_ms_is_milliseconds() -> None:
    # Anything after 2020-01-01 in ms
    assert now_ms() > 1_577_836_800_000

"""
Capture queue data models.

Defines the CaptureItem model (one fragment of captured legal text waiting
for curation and delivery), the payload a capture producer hands to the
store, and the closed set of statuses an item moves through.
"""

import json
import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current time as milliseconds since the epoch."""
    return int(time.time() * 1000)


class CaptureStatus(str, Enum):
    """Capture status values."""

    QUEUED = "queued"
    EDITING = "editing"
    READY = "ready"
    SUBMITTED = "submitted"
    ERROR = "error"
    DELETED = "deleted"


class CapturePayload(BaseModel):
    """
    Raw payload handed over by a capture producer.

    The producer (browser selection, clipboard, pipe) enforces its own
    minimum text length before handing the payload over; the core only
    requires it to be non-empty.

    Example:
        >>> payload = CapturePayload(
        ...     raw_text="Art. 5º Todos são iguais perante a lei...",
        ...     source_url="https://www.planalto.gov.br/ccivil_03/constituicao/constituicao.htm",
        ...     source_title="Constituição",
        ...     language="pt-BR",
        ...     jurisdiction_hint="BR/Federal",
        ... )
    """

    raw_text: str = Field(..., min_length=1, description="Captured text")
    source_url: str = Field(default="", description="Page the text was captured from")
    source_title: str = Field(default="", description="Title of the source page")
    language: str = Field(default="", description="Language tag (e.g. 'pt-BR')")
    jurisdiction_hint: str = Field(
        default="",
        description="Jurisdiction guessed by the producer (e.g. 'BR/RS')",
    )


class CaptureItem(BaseModel):
    """
    A single captured fragment of legal text.

    ``status`` only changes through ``StatusMachine.transition``; everything
    else is patched through ``RecordStore.update``.

    Example:
        >>> item = CaptureItem(id="cap-a7x3m2q9", created_at=1760000000000, raw_text="Art. 1º")
        >>> item.status
        <CaptureStatus.QUEUED: 'queued'>
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique capture identifier (e.g., 'cap-a7x3m2q9')")
    created_at: int = Field(..., ge=0, description="Creation time, ms since epoch")
    source_url: str = Field(default="", description="Provenance URL")
    source_title: str = Field(default="", description="Provenance page title")
    raw_text: str = Field(..., min_length=1, description="Captured text")
    jurisdiction: str = Field(default="", description="Free-text jurisdiction")
    language: str = Field(default="", description="Free-text language tag")
    curated_document: str | None = Field(
        default=None,
        description="Canonical markdown document produced by the curator",
    )
    status: CaptureStatus = Field(default=CaptureStatus.QUEUED)
    submitted_at: int | None = Field(
        default=None,
        description="Time of the successful submission, ms since epoch",
    )
    submission_result: dict[str, Any] | None = Field(
        default=None,
        description="Outcome of the last terminal submission attempt",
    )
    updated_at: int | None = Field(default=None, description="Last durable write, ms")

    @property
    def is_deleted(self) -> bool:
        return self.status == CaptureStatus.DELETED

    def to_row(self) -> dict[str, Any]:
        """
        Flatten to a dict of column values for the SQLite backend.

        Returns:
            Mapping of column name to value (``submission_result`` as JSON text)
        """
        row = self.model_dump()
        row["status"] = self.status.value
        row["submission_result"] = (
            json.dumps(self.submission_result, ensure_ascii=False)
            if self.submission_result is not None
            else None
        )
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CaptureItem":
        """
        Build an item from a SQLite row dict.

        Raises:
            ValueError: If the stored JSON or status value is malformed
        """
        data = dict(row)
        raw_result = data.get("submission_result")
        if isinstance(raw_result, str):
            try:
                data["submission_result"] = json.loads(raw_result)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid submission_result for {data.get('id')}") from e
        return cls.model_validate(data)


class SubmissionResult(BaseModel):
    """Interpreted response of a successful delivery."""

    success: bool = True
    message: str = Field(default="Submitted successfully")
    reference_url: str | None = Field(
        default=None,
        description="Link to the created pull request / issue, for display",
    )
    reference_number: int | None = None
    status_code: int | None = None
    implicit_success: bool = Field(
        default=False,
        description="True when the endpoint omitted the success flag",
    )

    def display_message(self) -> str:
        """Message shown to the user, with the reference number when known."""
        if self.reference_url:
            ref = self.reference_number if self.reference_number is not None else "created"
            return f"{self.message} - PR: {ref}"
        return self.message


class QueueBackup(BaseModel):
    """
    Backup of every capture in the queue, as written by ``lexflow export``.

    Captures keep their ids, statuses and timestamps so an import restores
    the queue exactly as it was.
    """

    version: str = Field(..., description="LexFlow version that wrote the backup")
    exported_at: datetime = Field(..., description="Time the backup was taken (UTC)")
    captures: list[CaptureItem] = Field(default_factory=list)


__all__ = [
    "CaptureItem",
    "CapturePayload",
    "CaptureStatus",
    "QueueBackup",
    "SubmissionResult",
    "now_ms",
]

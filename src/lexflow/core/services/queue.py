"""
Queue service: clean API over the capture queue and delivery pipeline.

Composes RecordStore, StatusMachine, the curator, SubmissionClient,
the error classifier and RetryCoordinator into the operations a user
interface needs. Any interface (CLI, extension bridge, tests) calls these
methods instead of reaching into core packages directly.

No printing and no exits here: methods return typed results and raise
typed exceptions; presentation is the caller's job.

Usage:
    >>> from lexflow.core.services.queue import QueueService
    >>> service = QueueService.from_config()
    >>> item = await service.capture(CapturePayload(raw_text="Art. 5º ..."))
    >>> item = await service.curate(item.id, CurationOverrides(title="Art 5"))
    >>> outcome = await service.submit(item.id)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from lexflow import __version__
from lexflow.core.config.loader import load_config
from lexflow.core.config.models import LexflowConfig
from lexflow.core.curation.curator import CurationOverrides, curate
from lexflow.core.delivery.classifier import ClassifiedError, ErrorLog, ErrorStats, classify
from lexflow.core.delivery.client import (
    EndpointConfig,
    SubmissionClient,
    SubmissionOutcome,
    submission_context,
)
from lexflow.core.delivery.retry import RetryCoordinator, RetryDecision, RetryKey
from lexflow.core.errors import IllegalTransitionError, StorageFault
from lexflow.core.queue.models import CaptureItem, CapturePayload, CaptureStatus, QueueBackup
from lexflow.core.queue.status import StatusMachine
from lexflow.core.queue.store import MemoryBackend, RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses whose raw text may still be edited
EDITABLE_STATUSES = frozenset({CaptureStatus.QUEUED, CaptureStatus.EDITING, CaptureStatus.READY})


@dataclass(frozen=True)
class ImportSummary:
    """Outcome of importing a queue backup.

    Attributes:
        imported: Captures added to the queue
        skipped: Ids already present in the queue, left untouched
    """

    imported: int = 0
    skipped: tuple[str, ...] = ()


class QueueService:
    """
    Capture queue operations for user interfaces.

    Example:
        >>> service = QueueService(RecordStore.in_memory())
        >>> item = await service.capture(CapturePayload(raw_text="Art. 1º ..."))
        >>> await service.delete(item.id)
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        config: LexflowConfig | None = None,
        coordinator: RetryCoordinator | None = None,
        error_log: ErrorLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            store: Capture store
            config: Configuration (defaults to built-in defaults)
            coordinator: Retry coordinator (built from config.retry if None)
            error_log: Error log shared with the caller (new log if None)
            transport: Optional httpx transport for the submission client
        """
        self.config = config or LexflowConfig()
        self.store = store
        self.machine = StatusMachine(store)
        self.client = SubmissionClient(store, self.machine, transport=transport)
        self.coordinator = coordinator or RetryCoordinator(
            max_retries=self.config.retry.max_retries,
            base_unit_ms=self.config.retry.base_delay_ms,
        )
        self.error_log = error_log or ErrorLog()

    @classmethod
    def from_config(
        cls,
        config: LexflowConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> QueueService:
        """
        Create a service backed by the configured SQLite database.

        Falls back to an in-memory store when the database cannot be opened
        and ``storage.fallback_to_memory`` is enabled.

        Raises:
            StorageFault: If the database cannot be opened and fallback is disabled
        """
        if config is None:
            config = load_config()

        error_log = ErrorLog()
        db_path = config.storage.resolve_db_path()
        try:
            store = RecordStore.open(db_path)
        except StorageFault as e:
            if not config.storage.fallback_to_memory:
                raise
            error_log.record(classify(e, f"open:{db_path}"))
            logger.warning(f"Using in-memory capture store: {e}")
            store = RecordStore(MemoryBackend(), degraded=True)

        return cls(store, config=config, error_log=error_log, transport=transport)

    @property
    def degraded(self) -> bool:
        return self.store.degraded

    @property
    def endpoint(self) -> EndpointConfig:
        return EndpointConfig.from_config(self.config.submission)

    # ============================================================================
    # Storage with fallback
    # ============================================================================

    async def _with_fallback(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except StorageFault as e:
            self.error_log.record(classify(e, context))
            if not self.config.storage.fallback_to_memory or self.store.degraded:
                raise
            await self.store.fallback_to_memory()
            return await operation()

    # ============================================================================
    # Queue operations
    # ============================================================================

    async def capture(self, payload: CapturePayload) -> CaptureItem:
        """Add a new capture to the queue (status ``queued``)."""
        return await self._with_fallback("capture", lambda: self.store.create(payload))

    async def get(self, item_id: str) -> CaptureItem:
        return await self._with_fallback(f"get:{item_id}", lambda: self.store.get(item_id))

    async def list(self, status: CaptureStatus | None = None) -> list[CaptureItem]:
        return await self._with_fallback("list", lambda: self.store.list(status))

    async def counts(self) -> dict[CaptureStatus, int]:
        """Number of captures per status."""
        items = await self.list()
        result = {status: 0 for status in CaptureStatus}
        for item in items:
            result[item.status] += 1
        return result

    async def start_editing(self, item_id: str) -> CaptureItem:
        """Move a queued or ready capture into ``editing``."""
        item = await self.get(item_id)
        if item.status == CaptureStatus.EDITING:
            return item
        return await self.machine.transition(item, CaptureStatus.EDITING)

    async def edit_text(self, item_id: str, raw_text: str) -> CaptureItem:
        """
        Replace the captured text.

        A ready capture goes back to ``editing``, since its curated
        document no longer matches the text.

        Raises:
            IllegalTransitionError: If the capture is submitted, in error or deleted
            ValueError: If raw_text is empty
        """
        if not raw_text.strip():
            raise ValueError("raw_text must not be empty")

        item = await self.get(item_id)
        if item.status not in EDITABLE_STATUSES:
            raise IllegalTransitionError(
                item_id, item.status.value, CaptureStatus.EDITING.value, reason="text is locked"
            )
        if item.status == CaptureStatus.READY:
            return await self.machine.transition(item, CaptureStatus.EDITING, raw_text=raw_text)
        return await self.store.update(item_id, {"raw_text": raw_text})

    async def curate(
        self,
        item_id: str,
        overrides: CurationOverrides | None = None,
        *,
        today: date | None = None,
    ) -> CaptureItem:
        """
        Curate a capture and mark it ``ready``.

        Works from ``queued``, ``editing``, ``ready`` (re-curation) and
        ``error`` (fix and resubmit). Jurisdiction and language overrides
        are stored on the capture as well as in the document header.

        Returns:
            The capture in ``ready`` with its new curated document

        Raises:
            IllegalTransitionError: If the capture is submitted or deleted
        """
        overrides = overrides or CurationOverrides()
        item = await self.get(item_id)

        if item.status in (CaptureStatus.SUBMITTED, CaptureStatus.DELETED):
            raise IllegalTransitionError(
                item_id, item.status.value, CaptureStatus.READY.value, reason="cannot re-curate"
            )

        fields: dict[str, str] = {}
        if overrides.jurisdiction is not None:
            fields["jurisdiction"] = overrides.jurisdiction.strip()
        if overrides.language is not None:
            fields["language"] = overrides.language.strip()

        document = curate(item, overrides, today=today, config=self.config.curation)

        if item.status == CaptureStatus.ERROR:
            # The old failure no longer applies to the new document
            context = submission_context(item_id)
            self.coordinator.cancel(context)
            self.coordinator.reset_context(context)
        elif item.status != CaptureStatus.EDITING:
            item = await self.machine.transition(item, CaptureStatus.EDITING)

        return await self.machine.transition(
            item, CaptureStatus.READY, curated_document=document, **fields
        )

    async def submit(self, item_id: str, *, auto_retry: bool | None = None) -> SubmissionOutcome:
        """
        Submit a ready capture once and schedule an automatic retry on failure.

        Args:
            item_id: Capture id
            auto_retry: Override ``retry.auto_retry`` for this call

        Returns:
            SubmissionOutcome from the client

        Raises:
            IllegalTransitionError: If the capture is not ready
        """
        if auto_retry is None:
            auto_retry = self.config.retry.auto_retry

        item = await self.get(item_id)
        try:
            outcome = await self.client.submit(item, self.endpoint)
        except StorageFault as e:
            self.error_log.record(classify(e, submission_context(item_id)))
            if self.config.storage.fallback_to_memory and not self.store.degraded:
                await self.store.fallback_to_memory()
            raise

        if outcome.success:
            self.coordinator.reset_context(submission_context(item_id))
            return outcome

        if outcome.error is not None:
            self.error_log.record(outcome.error)
            if auto_retry and outcome.item.status == CaptureStatus.ERROR:
                self._schedule_retry(item_id, outcome.error)
        return outcome

    def _schedule_retry(self, item_id: str, error: ClassifiedError) -> RetryDecision:
        key = RetryKey(submission_context(item_id), error.kind)
        decision = self.coordinator.schedule_retry(key)
        if decision.should_retry:
            self.coordinator.defer(key, decision.delay_ms, lambda: self._auto_retry(item_id))
        return decision

    async def _auto_retry(self, item_id: str) -> None:
        item = await self.get(item_id)
        if item.status != CaptureStatus.ERROR:
            logger.info(f"Skipping retry for {item_id}: status is {item.status.value}")
            return
        await self.machine.transition(item, CaptureStatus.READY)
        await self.submit(item_id, auto_retry=True)

    async def retry(self, item_id: str) -> SubmissionOutcome:
        """
        Manually retry a failed submission.

        Resets the automatic retry counters first, so a manual retry always
        runs regardless of how many automatic attempts were made.
        """
        context = submission_context(item_id)
        self.coordinator.cancel(context)
        self.coordinator.reset_context(context)

        item = await self.get(item_id)
        if item.status == CaptureStatus.ERROR:
            await self.machine.transition(item, CaptureStatus.READY)
        return await self.submit(item_id)

    async def delete(self, item_id: str) -> CaptureItem:
        """
        Soft-delete a capture, cancelling any pending retry first.

        Deleting an already deleted capture returns it unchanged.
        """
        self.coordinator.cancel(submission_context(item_id))
        item = await self.get(item_id)
        if item.is_deleted:
            return item
        deleted = await self.machine.transition(item, CaptureStatus.DELETED)
        logger.info(f"Deleted capture {item_id}")
        return deleted

    async def clear(self, status: CaptureStatus | None = None) -> int:
        """
        Bulk-clear: physically remove captures (all, or those with ``status``).

        Returns:
            Number of captures removed
        """
        if status is None:
            self.coordinator.cancel_all()
        else:
            for item in await self.list(status):
                self.coordinator.cancel(submission_context(item.id))
        return await self._with_fallback("clear", lambda: self.store.remove_all(status))

    # ============================================================================
    # ============================================================================
    # Backup
    # ============================================================================

    async def export_items(self) -> QueueBackup:
        """
        Snapshot every capture, deleted ones included, for backup.

        ``backup.model_dump(mode="json")`` is the JSON document written by
        ``lexflow export``.
        """
        items = await self.list()
        return QueueBackup(
            version=__version__,
            exported_at=datetime.now(timezone.utc),
            captures=items,
        )

    async def import_items(self, data: QueueBackup | dict[str, Any] | str | bytes) -> ImportSummary:
        """
        Restore captures from a backup.

        Ids, statuses and timestamps are kept as exported. Captures whose id
        already exists are skipped, so importing the same backup twice is
        harmless. No retries are scheduled for imported ``error`` captures.

        Args:
            data: A QueueBackup, its JSON-mode dict, or the raw JSON text

        Returns:
            ImportSummary with the number imported and the skipped ids

        Raises:
            ValueError: If the backup is not valid (nothing is imported)
        """
        try:
            if isinstance(data, QueueBackup):
                backup = data
            elif isinstance(data, (str, bytes)):
                backup = QueueBackup.model_validate_json(data)
            else:
                backup = QueueBackup.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid queue backup: {e}") from e

        ids = [item.id for item in backup.captures]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Invalid queue backup: duplicate ids {', '.join(sorted(duplicates))}")

        imported = 0
        skipped: list[str] = []
        for item in backup.captures:
            restored = await self._with_fallback(
                f"import:{item.id}", lambda item=item: self.store.restore(item)
            )
            if restored:
                imported += 1
            else:
                skipped.append(item.id)

        logger.info(
            f"Imported {imported} capture(s) from backup {backup.version}, skipped {len(skipped)}"
        )
        return ImportSummary(imported=imported, skipped=tuple(skipped))

    # Errors and retries
    # ============================================================================

    def error_stats(self) -> ErrorStats:
        return self.error_log.stats()

    async def wait_for_retries(self) -> None:
        """Wait until every scheduled retry has run (or been cancelled)."""
        await self.coordinator.wait_pending()

    async def close(self) -> None:
        self.coordinator.cancel_all()


__all__ = ["EDITABLE_STATUSES", "ImportSummary", "QueueService"]

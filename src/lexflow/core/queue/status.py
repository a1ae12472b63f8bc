"""
Capture status state machine.

Every status change of a capture goes through ``StatusMachine.transition``,
which checks the transition table and writes the new status (plus any
extra fields) to the store in one durable write.
"""

import logging
from typing import Any

from lexflow.core.errors import IllegalTransitionError
from lexflow.core.queue.models import CaptureItem, CaptureStatus
from lexflow.core.queue.store import RecordStore

logger = logging.getLogger(__name__)

# Statuses that require a curated document
CURATED_STATUSES = frozenset({CaptureStatus.READY, CaptureStatus.SUBMITTED})


class StatusMachine:
    """
    Enforces legal status transitions for capture items.

    Example:
        >>> machine = StatusMachine(store)
        >>> item = await machine.transition(item, CaptureStatus.EDITING)
        >>> item = await machine.transition(
        ...     item, CaptureStatus.READY, curated_document=document
        ... )
    """

    # Legal transitions (from -> allowed destinations)
    # Primary flow: queued -> editing -> ready -> submitted
    # error -> ready is the retry path; deleted is terminal
    VALID_TRANSITIONS: dict[CaptureStatus, list[CaptureStatus]] = {
        CaptureStatus.QUEUED: [CaptureStatus.EDITING, CaptureStatus.DELETED],
        CaptureStatus.EDITING: [
            CaptureStatus.READY,
            CaptureStatus.QUEUED,
            CaptureStatus.DELETED,
        ],
        CaptureStatus.READY: [
            CaptureStatus.SUBMITTED,
            CaptureStatus.ERROR,
            CaptureStatus.EDITING,
            CaptureStatus.DELETED,
        ],
        CaptureStatus.ERROR: [CaptureStatus.READY, CaptureStatus.DELETED],
        CaptureStatus.SUBMITTED: [CaptureStatus.DELETED],
        CaptureStatus.DELETED: [],
    }

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    @classmethod
    def can_transition(cls, source: CaptureStatus, target: CaptureStatus) -> bool:
        return target in cls.VALID_TRANSITIONS.get(source, [])

    @classmethod
    def allowed_targets(cls, source: CaptureStatus) -> list[CaptureStatus]:
        return list(cls.VALID_TRANSITIONS.get(source, []))

    async def transition(
        self, item: CaptureItem, target: CaptureStatus, **patch: Any
    ) -> CaptureItem:
        """
        Move a capture to ``target``, writing ``patch`` in the same write.

        The check runs against the stored status inside the store's write
        transaction, not against the passed-in copy.

        Args:
            item: Capture to move
            target: Destination status
            **patch: Extra fields to persist with the status change

        Returns:
            The updated capture

        Raises:
            IllegalTransitionError: If target is not reachable, or the
                destination needs a curated document the item lacks
            NotFoundError: If the capture no longer exists
        """
        source = item.status

        def check(current: CaptureItem) -> None:
            nonlocal source
            source = current.status
            if not self.can_transition(source, target):
                raise IllegalTransitionError(item.id, source.value, target.value)
            if target in CURATED_STATUSES:
                if not patch.get("curated_document", current.curated_document):
                    raise IllegalTransitionError(
                        item.id, source.value, target.value, reason="no curated document"
                    )

        updated = await self.store.apply_transition(item.id, target, patch, guard=check)
        logger.debug(f"Capture {item.id}: {source.value} -> {target.value}")
        return updated


__all__ = ["CURATED_STATUSES", "StatusMachine"]

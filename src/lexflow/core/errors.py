"""
Exceptions for the LexFlow capture queue.

Exception Hierarchy:
    LexflowError (base)
    ├── StorageFault (backing store unavailable)
    ├── NotFoundError (no capture with the given id)
    ├── IllegalTransitionError (status change not allowed)
    ├── ItemDeletedError (mutation of a soft-deleted capture)
    └── ConfigError (configuration cannot be loaded)

Example:
    >>> from lexflow.core.errors import StorageFault
    >>> try:
    ...     raise StorageFault("database is locked", fallback="memory", path="/tmp/q.db")
    ... except StorageFault as e:
    ...     print(e.fallback, e.context)
    memory {'path': '/tmp/q.db'}
"""

from __future__ import annotations


class LexflowError(Exception):
    """
    Base exception for all LexFlow errors.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary of additional context
    """

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class StorageFault(LexflowError):
    """
    Raised when the backing store cannot be read or written.

    Carries a ``fallback`` hint naming the lower-durability backend the
    caller may switch to (see ``RecordStore.fallback_to_memory``).
    """

    def __init__(self, message: str, *, fallback: str = "memory", **context: object) -> None:
        super().__init__(message, **context)
        self.fallback = fallback


class NotFoundError(LexflowError):
    """Raised when no capture exists for an id."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Capture not found: {item_id}", item_id=item_id)
        self.item_id = item_id


class IllegalTransitionError(LexflowError):
    """Raised when a status change is not reachable from the current status."""

    def __init__(self, item_id: str, source: str, target: str, reason: str | None = None) -> None:
        message = f"Illegal transition for {item_id}: {source} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, item_id=item_id, source=source, target=target)
        self.item_id = item_id
        self.source = source
        self.target = target
        self.reason = reason


class ItemDeletedError(LexflowError):
    """Raised when a write targets a capture that is already deleted."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Capture {item_id} is deleted and cannot be modified", item_id=item_id)
        self.item_id = item_id


class ConfigError(LexflowError):
    """Raised when configuration values cannot be parsed."""


__all__ = [
    "LexflowError",
    "StorageFault",
    "NotFoundError",
    "IllegalTransitionError",
    "ItemDeletedError",
    "ConfigError",
]

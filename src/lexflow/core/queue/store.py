"""
Record store for capture items.

Two backends share one contract:
1. SqliteBackend (default): durable, one row per capture, indexed by status.
   Blocking sqlite3 calls run in a worker thread (``asyncio.to_thread``).
   Writes hold a lock, and ``merge`` keeps it (inside a ``BEGIN IMMEDIATE``
   transaction) from the read to the write, so a read-modify-write on one
   id is never interleaved with another write.
2. MemoryBackend: process-local dict. Used in tests and as the degraded-mode
   fallback when the database becomes unavailable.

Every successful create/update/remove is committed before the coroutine
returns. Storage failures surface as ``StorageFault`` with a fallback hint;
``RecordStore.fallback_to_memory()`` switches backends and flips
``RecordStore.degraded``.

Example:
    store = RecordStore.open(Path("~/.local/share/lexflow/queue.db").expanduser())
    item = await store.create(CapturePayload(raw_text="Art. 5º ..."))
    ready = await store.list(CaptureStatus.READY)
"""

import asyncio
import logging
import secrets
import sqlite3
import string
import threading
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

from lexflow.core.errors import ItemDeletedError, NotFoundError, StorageFault
from lexflow.core.queue.db import CAPTURE_COLUMNS, get_connection, init_db
from lexflow.core.queue.models import CaptureItem, CapturePayload, CaptureStatus, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Receives the stored item (None if absent) and returns the item to write
Merger = Callable[[CaptureItem | None], CaptureItem]

# Characters for random ID generation (lowercase alphanumeric)
ID_CHARS = string.ascii_lowercase + string.digits
ID_LENGTH = 8

# Fields callers may patch through RecordStore.update
MUTABLE_FIELDS = frozenset(
    {
        "source_url",
        "source_title",
        "raw_text",
        "jurisdiction",
        "language",
        "curated_document",
        "submitted_at",
        "submission_result",
    }
)


class StoreBackend(Protocol):
    """Synchronous storage primitives wrapped by RecordStore."""

    blocking: bool

    def insert(self, item: CaptureItem) -> None: ...

    def fetch(self, item_id: str) -> CaptureItem | None: ...

    def fetch_many(
        self, status: CaptureStatus | None, limit: int | None = None, offset: int = 0
    ) -> list[CaptureItem]: ...

    def merge(self, item_id: str, fn: Merger) -> CaptureItem: ...

    def delete(self, item_id: str) -> bool: ...

    def delete_many(self, status: CaptureStatus | None) -> int: ...

    def count(self, status: CaptureStatus | None) -> int: ...

    def exists(self, item_id: str) -> bool: ...


def _sort_key(item: CaptureItem) -> tuple[int, str]:
    return (item.created_at, item.id)


class MemoryBackend:
    """In-process backend. Lost on exit."""

    blocking = False

    def __init__(self) -> None:
        self._items: dict[str, CaptureItem] = {}

    def insert(self, item: CaptureItem) -> None:
        if item.id in self._items:
            raise ValueError(f"Duplicate capture id: {item.id}")
        self._items[item.id] = item.model_copy(deep=True)

    def fetch(self, item_id: str) -> CaptureItem | None:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item is not None else None

    def fetch_many(
        self, status: CaptureStatus | None, limit: int | None = None, offset: int = 0
    ) -> list[CaptureItem]:
        items = [i for i in self._items.values() if status is None or i.status == status]
        items.sort(key=_sort_key, reverse=True)
        end = None if limit is None else offset + limit
        return [i.model_copy(deep=True) for i in items[offset:end]]

    def merge(self, item_id: str, fn: Merger) -> CaptureItem:
        # No await between read and write, so nothing can interleave
        merged = fn(self.fetch(item_id))
        self._items[merged.id] = merged.model_copy(deep=True)
        return merged

    def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def delete_many(self, status: CaptureStatus | None) -> int:
        doomed = [k for k, v in self._items.items() if status is None or v.status == status]
        for key in doomed:
            del self._items[key]
        return len(doomed)

    def count(self, status: CaptureStatus | None) -> int:
        return sum(1 for i in self._items.values() if status is None or i.status == status)

    def exists(self, item_id: str) -> bool:
        return item_id in self._items


class SqliteBackend:
    """
    SQLite backend.

    Each call opens its own connection and commits before returning, so a
    write is on disk by the time the caller sees the result.
    """

    blocking = True

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        init_db(self.db_path)

    def insert(self, item: CaptureItem) -> None:
        row = item.to_row()
        placeholders = ",".join("?" * len(CAPTURE_COLUMNS))
        query = f"INSERT INTO captures ({','.join(CAPTURE_COLUMNS)}) VALUES ({placeholders})"
        with self._lock, get_connection(self.db_path) as conn:
            try:
                conn.execute(query, tuple(row[c] for c in CAPTURE_COLUMNS))
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Duplicate capture id: {item.id}") from e
            conn.commit()

    def fetch(self, item_id: str) -> CaptureItem | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM captures WHERE id = ?", (item_id,)).fetchone()
        return CaptureItem.from_row(row) if row else None

    def fetch_many(
        self, status: CaptureStatus | None, limit: int | None = None, offset: int = 0
    ) -> list[CaptureItem]:
        query = "SELECT * FROM captures"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        with get_connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [CaptureItem.from_row(r) for r in rows]

    def merge(self, item_id: str, fn: Merger) -> CaptureItem:
        """
        Read, transform and write one capture in a single transaction.

        ``fn`` runs while the lock and the write transaction are held; if it
        raises, nothing is written.
        """
        columns = [c for c in CAPTURE_COLUMNS if c != "id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        with self._lock, get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM captures WHERE id = ?", (item_id,)).fetchone()
            merged = fn(CaptureItem.from_row(row) if row else None)
            values = merged.to_row()
            conn.execute(
                f"UPDATE captures SET {assignments} WHERE id = ?",
                tuple(values[c] for c in columns) + (item_id,),
            )
            conn.commit()
        return merged

    def delete(self, item_id: str) -> bool:
        with self._lock, get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM captures WHERE id = ?", (item_id,))
            conn.commit()
            return cursor.rowcount > 0

    def delete_many(self, status: CaptureStatus | None) -> int:
        with self._lock, get_connection(self.db_path) as conn:
            if status is None:
                cursor = conn.execute("DELETE FROM captures")
            else:
                cursor = conn.execute("DELETE FROM captures WHERE status = ?", (status.value,))
            conn.commit()
            return cursor.rowcount

    def count(self, status: CaptureStatus | None) -> int:
        with get_connection(self.db_path) as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM captures").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM captures WHERE status = ?", (status.value,)
                ).fetchone()
        return int(row["n"])

    def exists(self, item_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT 1 AS hit FROM captures WHERE id = ?", (item_id,)).fetchone()
        return row is not None


class RecordStore:
    """
    Durable keyed storage for capture items.

    All public methods are coroutines. ``status`` is never written through
    ``update``; the StatusMachine uses ``apply_transition`` so that every
    status change goes through the transition table.

    Example:
        >>> store = RecordStore.in_memory()
        >>> item = await store.create(CapturePayload(raw_text="Art. 1º"))
        >>> item.status
        <CaptureStatus.QUEUED: 'queued'>
    """

    def __init__(self, backend: StoreBackend, *, degraded: bool = False) -> None:
        self._backend = backend
        self._degraded = degraded

    @classmethod
    def open(cls, db_path: Path | str) -> "RecordStore":
        """
        Open (and create if needed) a SQLite-backed store.

        Raises:
            StorageFault: If the database cannot be created or opened
        """
        try:
            backend = SqliteBackend(db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageFault(
                f"Cannot open capture database at {db_path}: {e}",
                fallback="memory",
                path=str(db_path),
            ) from e
        return cls(backend)

    @classmethod
    def in_memory(cls) -> "RecordStore":
        return cls(MemoryBackend())

    @property
    def degraded(self) -> bool:
        """True once the store has fallen back to the in-memory backend."""
        return self._degraded

    @property
    def backend(self) -> StoreBackend:
        return self._backend

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            if self._backend.blocking:
                return await asyncio.to_thread(fn, *args)
            return fn(*args)
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Storage fault during {operation}: {e}")
            raise StorageFault(
                f"Storage unavailable during {operation}: {e}",
                fallback="memory",
                operation=operation,
            ) from e

    def _next_id(self, max_attempts: int = 10) -> str:
        for _ in range(max_attempts):
            suffix = "".join(secrets.choice(ID_CHARS) for _ in range(ID_LENGTH))
            new_id = f"cap-{suffix}"
            if not self._backend.exists(new_id):
                return new_id
        raise RuntimeError(f"Failed to generate unique capture ID after {max_attempts} attempts")

    async def create(self, payload: CapturePayload) -> CaptureItem:
        """
        Insert a new capture with status ``queued``.

        Args:
            payload: Raw capture handed over by the producer

        Returns:
            The stored CaptureItem

        Raises:
            StorageFault: If the backing store is unavailable
        """

        def _create() -> CaptureItem:
            now = now_ms()
            item = CaptureItem(
                id=self._next_id(),
                created_at=now,
                source_url=payload.source_url,
                source_title=payload.source_title,
                raw_text=payload.raw_text,
                jurisdiction=payload.jurisdiction_hint,
                language=payload.language,
                status=CaptureStatus.QUEUED,
                updated_at=now,
            )
            self._backend.insert(item)
            return item

        item = await self._call("create", _create)
        logger.info(f"Created capture {item.id} ({len(item.raw_text)} chars)")
        return item

    async def get(self, item_id: str) -> CaptureItem:
        """
        Fetch one capture.

        Raises:
            NotFoundError: If no capture has this id
            StorageFault: If the backing store is unavailable
        """
        item = await self._call("get", self._backend.fetch, item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    async def list(self, status: CaptureStatus | None = None) -> list[CaptureItem]:
        """
        All captures, newest first, optionally restricted to one status.

        Raises:
            StorageFault: If the backing store is unavailable
        """
        return await self._call("list", self._backend.fetch_many, status)

    async def iter_items(
        self, status: CaptureStatus | None = None, page_size: int = 100
    ) -> AsyncIterator[CaptureItem]:
        """
        Lazily iterate captures page by page, newest first.

        Each call starts a fresh iteration from the newest capture.
        """
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        offset = 0
        while True:
            page = await self._call(
                "iter_items", self._backend.fetch_many, status, page_size, offset
            )
            for item in page:
                yield item
            if len(page) < page_size:
                return
            offset += page_size

    async def count(self, status: CaptureStatus | None = None) -> int:
        return await self._call("count", self._backend.count, status)

    def _merge(
        self,
        item_id: str,
        patch: dict[str, Any],
        guard: Callable[[CaptureItem], None] | None = None,
    ) -> CaptureItem:
        def apply(current: CaptureItem | None) -> CaptureItem:
            if current is None:
                raise NotFoundError(item_id)
            if guard is not None:
                guard(current)
            if current.is_deleted:
                raise ItemDeletedError(item_id)
            data = current.model_dump()
            data.update(patch)
            data["updated_at"] = now_ms()
            return CaptureItem.model_validate(data)

        return self._backend.merge(item_id, apply)

    async def update(self, item_id: str, patch: dict[str, Any]) -> CaptureItem:
        """
        Merge fields into a stored capture.

        Args:
            item_id: Capture id
            patch: Field values to overwrite (see MUTABLE_FIELDS)

        Returns:
            The updated capture

        Raises:
            NotFoundError: If no capture has this id
            ItemDeletedError: If the capture is soft-deleted
            ValueError: If the patch names status, identity or unknown fields
            StorageFault: If the backing store is unavailable
        """
        if "status" in patch:
            raise ValueError("status changes must go through StatusMachine.transition")
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        return await self._call("update", self._merge, item_id, dict(patch))

    async def apply_transition(
        self,
        item_id: str,
        status: CaptureStatus,
        patch: dict[str, Any] | None = None,
        *,
        guard: Callable[[CaptureItem], None] | None = None,
    ) -> CaptureItem:
        """
        Write a status change together with any extra fields in one write.

        Only called by ``StatusMachine.transition``. ``guard`` receives the
        stored item inside the write transaction and raises to veto the
        change, so the transition table is checked against the status that
        is actually overwritten.
        """
        fields = dict(patch or {})
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        fields["status"] = status
        return await self._call("transition", self._merge, item_id, fields, guard)

    async def restore(self, item: CaptureItem) -> bool:
        """
        Insert a capture as-is, keeping its id, status and timestamps.

        Used when importing a backup.

        Returns:
            False if a capture with the same id already exists
        """

        def _restore() -> bool:
            try:
                self._backend.insert(item)
            except ValueError:
                return False
            return True

        return await self._call("restore", _restore)

    async def remove(self, item_id: str) -> None:
        """
        Physically delete a capture. Used by bulk-clear only.

        Raises:
            NotFoundError: If no capture has this id
        """
        removed = await self._call("remove", self._backend.delete, item_id)
        if not removed:
            raise NotFoundError(item_id)
        logger.info(f"Removed capture {item_id}")

    async def remove_all(self, status: CaptureStatus | None = None) -> int:
        """Physically delete every capture (or every capture with ``status``)."""
        removed = await self._call("remove_all", self._backend.delete_many, status)
        logger.info(f"Removed {removed} capture(s)")
        return removed

    async def fallback_to_memory(self) -> int:
        """
        Switch to the in-memory backend, carrying over what is still readable.

        Returns:
            Number of captures copied into the memory backend
        """
        if self._degraded:
            return self._backend.count(None)

        memory = MemoryBackend()
        copied = 0
        try:
            existing = await self._call("fallback", self._backend.fetch_many, None)
        except StorageFault:
            existing = []
        for item in existing:
            memory.insert(item)
            copied += 1

        self._backend = memory
        self._degraded = True
        logger.warning(
            f"Capture store degraded to memory backend ({copied} capture(s) carried over); "
            "new captures will not survive a restart"
        )
        return copied


__all__ = [
    "MUTABLE_FIELDS",
    "MemoryBackend",
    "RecordStore",
    "SqliteBackend",
    "StoreBackend",
]

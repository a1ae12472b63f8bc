"""
SQLite layout for the capture queue.

Everything lives in one ``captures`` table keyed by capture id. Listing by
status is the only query besides lookup by id, hence the status index.
The schema version is kept in ``PRAGMA user_version``.

Usage:
    from lexflow.core.queue.db import get_connection, init_db

    init_db(Path("queue.db"))
    with get_connection(Path("queue.db")) as conn:
        rows = conn.execute("SELECT * FROM captures WHERE status = ?", ("ready",)).fetchall()
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1

CAPTURE_COLUMNS = [
    "id",
    "created_at",
    "source_url",
    "source_title",
    "raw_text",
    "jurisdiction",
    "language",
    "curated_document",
    "status",
    "submitted_at",
    "submission_result",
    "updated_at",
]

CAPTURES_DDL = """
CREATE TABLE IF NOT EXISTS captures (
    id TEXT PRIMARY KEY,
    created_at INTEGER NOT NULL,
    source_url TEXT NOT NULL DEFAULT '',
    source_title TEXT NOT NULL DEFAULT '',
    raw_text TEXT NOT NULL,
    jurisdiction TEXT NOT NULL DEFAULT '',
    language TEXT NOT NULL DEFAULT '',
    curated_document TEXT,
    status TEXT NOT NULL CHECK (
        status IN ('queued', 'editing', 'ready', 'submitted', 'error', 'deleted')
    ),
    submitted_at INTEGER,
    submission_result TEXT,
    updated_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_captures_status ON captures(status);
CREATE INDEX IF NOT EXISTS idx_captures_created_at ON captures(created_at);
"""


def row_to_dict(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    return {desc[0]: value for desc, value in zip(cursor.description, row)}


def _open(db_path: Path | str) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = row_to_dict
    # Readers keep working while a submission result is written
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Version recorded in the file; 0 for a database never initialised."""
    row = conn.execute("PRAGMA user_version").fetchone()
    return row["user_version"] if isinstance(row, dict) else row[0]


def init_db(db_path: Path | str) -> None:
    """
    Create the database file, its directory and the captures table.

    Safe to call on an existing database.

    Raises:
        sqlite3.Error: If the file cannot be opened or written
        OSError: If the parent directory cannot be created
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = _open(db_path)
    try:
        if get_schema_version(conn) < SCHEMA_VERSION:
            conn.executescript(CAPTURES_DDL)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            conn.commit()
    finally:
        conn.close()


@contextmanager
def get_connection(db_path: Path | str) -> Iterator[sqlite3.Connection]:
    """
    Yield a connection to ``db_path`` and close it afterwards.

    Work left uncommitted is rolled back when the block raises.
    """
    conn = _open(db_path)
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


__all__ = [
    "CAPTURE_COLUMNS",
    "SCHEMA_VERSION",
    "get_connection",
    "get_schema_version",
    "init_db",
    "row_to_dict",
]

"""
LexFlow capture queue.

Provides the capture data models, the record store that persists them and
the status machine that governs their lifecycle.

Storage backends:
1. SQLite (default): ~/.local/share/lexflow/queue.db
2. Memory: process-local, used in tests and in degraded mode
"""

from lexflow.core.queue.models import CaptureItem, CapturePayload, CaptureStatus, SubmissionResult
from lexflow.core.queue.status import StatusMachine
from lexflow.core.queue.store import MemoryBackend, RecordStore, SqliteBackend

__all__ = [
    "CaptureItem",
    "CapturePayload",
    "CaptureStatus",
    "MemoryBackend",
    "RecordStore",
    "SqliteBackend",
    "StatusMachine",
    "SubmissionResult",
]

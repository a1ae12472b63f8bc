"""
Service layer for LexFlow.

Services compose domain operations into clean API surfaces. Any interface
(CLI, extension bridge, future UIs) calls service methods instead of
reaching into core packages directly.

Design principles:
- Every user-facing action maps to a service method.
- Methods accept typed inputs, return typed outputs, raise typed exceptions.
- No Rich, no sys.exit, no print statements; presentation is the caller's job.

Modules:
    queue: QueueService wraps the capture queue, curation and delivery.
"""

from lexflow.core.services.queue import QueueService

__all__ = ["QueueService"]

"""
Bounded exponential-backoff retry scheduling.

The RetryCoordinator keeps one attempt counter per (context, error kind)
and decides whether another automatic attempt is allowed:

    delay_ms = 2 ** attempt * base_unit_ms     (1s, 2s, 4s with defaults)

Deferred retries run as cancellable asyncio tasks, so deleting a capture
can drop its pending retry before it fires. Counters live in memory only;
a restart starts every key from zero.

Example:
    >>> coordinator = RetryCoordinator(max_retries=3)
    >>> key = RetryKey("submit:cap-a7x3m2q9", ErrorKind.SERVER_FAULT)
    >>> decision = coordinator.schedule_retry(key)
    >>> decision.should_retry, decision.delay_ms
    (True, 1000)
    >>> handle = coordinator.defer(key, decision.delay_ms, resubmit)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from lexflow.core.delivery.classifier import KIND_TABLE, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_UNIT_MS = 1000


@dataclass(frozen=True)
class RetryKey:
    """Counter key: one operation context plus one error kind."""

    context: str
    kind: ErrorKind


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay_ms: int
    attempt_number: int


@dataclass
class RetryHandle:
    """A deferred retry. Cancelling the handle cancels the task."""

    key: RetryKey
    delay_ms: int
    task: "asyncio.Task[Any]" = field(repr=False)
    fired: bool = False

    def cancel(self) -> bool:
        return self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task.done()


class RetryCoordinator:
    """
    Schedules automatic retries with a per-key attempt cap.

    A manual retry calls ``reset`` or ``reset_context`` before re-attempting,
    so the cap never blocks the user.

    Attributes:
        max_retries: Automatic attempts allowed per key
        base_unit_ms: Backoff base unit in milliseconds
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_unit_ms: int = DEFAULT_BASE_UNIT_MS,
    ) -> None:
        """
        Args:
            max_retries: Automatic attempts allowed per key
            base_unit_ms: Delay of the first retry in milliseconds

        Raises:
            ValueError: If either value is negative
        """
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_unit_ms < 0:
            raise ValueError("base_unit_ms must be non-negative")

        self.max_retries = max_retries
        self.base_unit_ms = base_unit_ms
        self._attempts: dict[RetryKey, int] = {}
        self._pending: dict[str, list[RetryHandle]] = {}

    def calculate_delay(self, attempt: int) -> int:
        """Delay before retry number ``attempt + 1`` (attempt is 0-indexed)."""
        return (2**attempt) * self.base_unit_ms

    def attempts(self, key: RetryKey) -> int:
        return self._attempts.get(key, 0)

    def schedule_retry(self, key: RetryKey) -> RetryDecision:
        """
        Decide whether another automatic attempt is allowed for ``key``.

        A positive decision consumes one attempt.

        Args:
            key: Context and error kind of the failure

        Returns:
            RetryDecision; ``should_retry`` is False for non-retryable kinds
            and once ``max_retries`` attempts have been used
        """
        attempt = self._attempts.get(key, 0)

        if not KIND_TABLE[key.kind].retryable:
            logger.debug(f"Not retrying {key.context}: {key.kind.value} is not retryable")
            return RetryDecision(should_retry=False, delay_ms=0, attempt_number=attempt)

        if attempt >= self.max_retries:
            logger.info(
                f"Retry limit reached for {key.context} ({key.kind.value}, "
                f"{attempt}/{self.max_retries})"
            )
            return RetryDecision(should_retry=False, delay_ms=0, attempt_number=attempt)

        self._attempts[key] = attempt + 1
        return RetryDecision(
            should_retry=True,
            delay_ms=self.calculate_delay(attempt),
            attempt_number=attempt + 1,
        )

    def reset(self, key: RetryKey) -> None:
        self._attempts.pop(key, None)

    def reset_context(self, context: str) -> None:
        """Forget the counters of every error kind for ``context``."""
        for key in [k for k in self._attempts if k.context == context]:
            del self._attempts[key]

    def defer(
        self,
        key: RetryKey,
        delay_ms: int,
        operation: Callable[[], Awaitable[Any]],
    ) -> RetryHandle:
        """
        Run ``operation`` after ``delay_ms`` as a cancellable task.

        A retry for the same key that has not fired yet is replaced.
        Must be called from a running event loop.

        Returns:
            Handle for the scheduled retry
        """
        for existing in self._pending.get(key.context, []):
            if existing.key == key and not existing.fired:
                existing.cancel()

        handle: RetryHandle

        async def _run() -> None:
            await asyncio.sleep(delay_ms / 1000)
            handle.fired = True
            logger.info(f"Running retry for {key.context} ({key.kind.value})")
            try:
                await operation()
            except Exception:
                logger.exception(f"Retry for {key.context} failed unexpectedly")

        task = asyncio.get_running_loop().create_task(_run())
        handle = RetryHandle(key=key, delay_ms=delay_ms, task=task)
        self._pending.setdefault(key.context, []).append(handle)
        task.add_done_callback(lambda _t: self._discard(handle))

        logger.info(f"Scheduled retry for {key.context} ({key.kind.value}) in {delay_ms}ms")
        return handle

    def _discard(self, handle: RetryHandle) -> None:
        handles = self._pending.get(handle.key.context)
        if handles is None:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._pending[handle.key.context]

    def cancel(self, context: str) -> int:
        """
        Cancel every pending retry for ``context``.

        The calling task itself is never cancelled.

        Returns:
            Number of retries cancelled
        """
        current = asyncio.current_task() if _loop_running() else None
        cancelled = 0
        for handle in list(self._pending.get(context, [])):
            if handle.task is current or handle.done:
                continue
            if handle.cancel():
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending retry(ies) for {context}")
        return cancelled

    def cancel_all(self) -> int:
        return sum(self.cancel(context) for context in list(self._pending))

    def pending(self, context: str | None = None) -> list[RetryHandle]:
        """Retries that have not finished yet, optionally for one context."""
        if context is not None:
            return [h for h in self._pending.get(context, []) if not h.done]
        return [h for handles in self._pending.values() for h in handles if not h.done]

    async def wait_pending(self) -> None:
        """Wait until no retry is pending, including retries scheduled meanwhile."""
        current = asyncio.current_task()
        while True:
            tasks = [h.task for h in self.pending() if h.task is not current]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = [
    "DEFAULT_BASE_UNIT_MS",
    "DEFAULT_MAX_RETRIES",
    "RetryCoordinator",
    "RetryDecision",
    "RetryHandle",
    "RetryKey",
]

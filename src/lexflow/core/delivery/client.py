"""
Delivery of curated documents to the remote collection endpoint.

The SubmissionClient makes exactly one attempt per call. It validates the
endpoint configuration, POSTs the document as JSON, interprets the
response and moves the capture to ``submitted`` or ``error``. Retry
decisions belong to the caller (see RetryCoordinator).

Expected endpoint protocol:
    POST <endpoint_url>
    {"title": "[LexFlow] New Legal Extract: <title>",
     "markdown": "<curated document>",
     "metadata": {"source_url": ..., "jurisdiction": ..., "language": ...,
                  "file_slug": ..., "version_date": ...}}

    200 {"success": true, "message": "...", "data": {"pr_url": "...", "pr_number": 42}}
    200 {"ok": true, "url": "...", "branch": "...", "path": "..."}
    200 {"success": false, "message": "..."}
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from lexflow.core.config.models import SubmissionConfig
from lexflow.core.curation.curator import parse_document, slugify
from lexflow.core.delivery.classifier import (
    ClassifiedError,
    DeliveryFailure,
    FailureCause,
    classify,
)
from lexflow.core.errors import IllegalTransitionError, ItemDeletedError
from lexflow.core.queue.models import CaptureItem, CaptureStatus, SubmissionResult, now_ms
from lexflow.core.queue.status import StatusMachine
from lexflow.core.queue.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
MIN_ENDPOINT_LENGTH = 12
TITLE_PREFIX = "[LexFlow] New Legal Extract: "


def submission_context(item_id: str) -> str:
    """Operation context used for classification and retry keys."""
    return f"submit:{item_id}"


class EndpointConfig(BaseModel):
    """Read-only view of the configured endpoint."""

    url: str | None = Field(default=None, description="HTTPS endpoint URL")
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)

    @classmethod
    def from_config(cls, config: SubmissionConfig) -> "EndpointConfig":
        return cls(url=config.endpoint_url, timeout_seconds=config.timeout_seconds)


class SubmissionOutcome(BaseModel):
    """Result of one submission attempt."""

    success: bool
    item: CaptureItem
    result: SubmissionResult | None = None
    error: ClassifiedError | None = None

    @property
    def message(self) -> str:
        if self.result is not None:
            return self.result.display_message()
        if self.error is not None:
            return self.error.message
        return ""


def validate_endpoint(config: EndpointConfig) -> DeliveryFailure | None:
    """
    Check the endpoint URL before any network call.

    Returns:
        A config_missing / config_invalid failure, or None when the URL is usable
    """
    url = (config.url or "").strip()
    if not url:
        return DeliveryFailure(FailureCause.CONFIG_MISSING, message="Endpoint URL is not configured")

    if not url.lower().startswith("https://"):
        return DeliveryFailure(
            FailureCause.CONFIG_INVALID, message="Endpoint URL must start with https://"
        )

    if len(url) < MIN_ENDPOINT_LENGTH:
        return DeliveryFailure(FailureCause.CONFIG_INVALID, message="Endpoint URL is too short")

    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        return DeliveryFailure(FailureCause.CONFIG_INVALID, message=f"Malformed endpoint URL: {e}")

    if "." not in parsed.host:
        return DeliveryFailure(
            FailureCause.CONFIG_INVALID,
            message=f"Endpoint host '{parsed.host}' is not a domain name",
        )

    return None


def build_payload(item: CaptureItem) -> dict[str, Any]:
    """
    Build the JSON body for a curated capture.

    Header values from the curated document win over the raw capture fields.

    Raises:
        ValueError: If the curated document's header cannot be parsed
    """
    document = item.curated_document or ""
    header = parse_document(document).metadata if document else {}

    title = str(header.get("title") or item.source_title or "Untitled Extract")
    metadata: dict[str, Any] = {
        "source_url": str(header.get("source_url") or item.source_url),
        "jurisdiction": str(header.get("jurisdiction") or item.jurisdiction),
        "language": str(header.get("language") or item.language),
        "file_slug": slugify(title),
    }
    if header.get("version_date"):
        metadata["version_date"] = str(header["version_date"])

    return {
        "title": f"{TITLE_PREFIX}{title}",
        "markdown": document,
        "metadata": metadata,
    }


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def interpret_response(body: Any, status_code: int) -> SubmissionResult | DeliveryFailure:
    """
    Interpret a parsed 2xx response body.

    ``success`` (or the worker's ``ok``) decides the outcome; when both are
    absent the submission counts as successful.
    """
    if not isinstance(body, dict):
        return DeliveryFailure(
            FailureCause.MALFORMED_BODY,
            status_code=status_code,
            message="Expected a JSON object",
        )

    if "success" in body:
        flag = body["success"]
    else:
        flag = body.get("ok")

    if flag is not True and flag is not None:
        message = body.get("message") or body.get("error") or "Submission failed"
        return DeliveryFailure(FailureCause.REJECTED, status_code=status_code, message=str(message))

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    reference_url = data.get("pr_url") or data.get("issue_url") or body.get("url")
    reference_number = _as_int(data.get("pr_number") or data.get("issue_number"))

    return SubmissionResult(
        success=True,
        message=str(body.get("message") or "Submitted successfully"),
        reference_url=str(reference_url) if reference_url else None,
        reference_number=reference_number,
        status_code=status_code,
        implicit_success=flag is None,
    )


class SubmissionClient:
    """
    Sends curated captures to the remote endpoint.

    Example:
        >>> client = SubmissionClient(store, machine)
        >>> outcome = await client.submit(item, EndpointConfig(url="https://collector.example.org/submit"))
        >>> outcome.item.status
        <CaptureStatus.SUBMITTED: 'submitted'>
    """

    def __init__(
        self,
        store: RecordStore,
        machine: StatusMachine,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Args:
            store: Store holding the captures
            machine: Status machine used for every status change
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.store = store
        self.machine = machine
        self._transport = transport

    async def submit(self, item: CaptureItem, endpoint: EndpointConfig) -> SubmissionOutcome:
        """
        Make one submission attempt.

        Args:
            item: Capture to submit; must be ``ready`` with a curated document
            endpoint: Endpoint configuration

        Returns:
            SubmissionOutcome; on failure it carries the classified error and,
            unless the endpoint configuration was at fault, the item is in ``error``

        Raises:
            IllegalTransitionError: If the item is not ready (no network call is made)
            NotFoundError: If the capture does not exist
            StorageFault: If the store fails while recording the outcome
        """
        current = await self.store.get(item.id)
        if current.status != CaptureStatus.READY:
            raise IllegalTransitionError(
                item.id,
                current.status.value,
                CaptureStatus.SUBMITTED.value,
                reason="only ready captures can be submitted",
            )
        if not current.curated_document:
            raise IllegalTransitionError(
                item.id,
                current.status.value,
                CaptureStatus.SUBMITTED.value,
                reason="no curated document",
            )

        context = submission_context(item.id)

        config_failure = validate_endpoint(endpoint)
        if config_failure is not None:
            error = classify(config_failure, context)
            logger.warning(f"Not submitting {item.id}: {config_failure.message}")
            return SubmissionOutcome(success=False, item=current, error=error)

        url = (endpoint.url or "").strip()
        try:
            payload = build_payload(current)
        except ValueError as e:
            failure = DeliveryFailure(
                FailureCause.UNEXPECTED, message=f"Unreadable curated document: {e}"
            )
            return await self._fail(current, failure)
        logger.info(f"Submitting {item.id} to {url}")

        try:
            response = await asyncio.wait_for(
                self._post(url, payload, endpoint.timeout_seconds),
                timeout=endpoint.timeout_seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return await self._fail(
                current,
                DeliveryFailure(
                    FailureCause.TIMEOUT,
                    message=f"No response after {endpoint.timeout_seconds:g}s",
                ),
            )
        except httpx.RequestError as e:
            return await self._fail(
                current, DeliveryFailure(FailureCause.TRANSPORT, message=f"Network error: {e}")
            )
        except Exception as e:
            logger.exception(f"Unexpected error submitting {item.id}")
            return await self._fail(
                current, DeliveryFailure(FailureCause.UNEXPECTED, message=f"Unexpected error: {e}")
            )

        if not response.is_success:
            return await self._fail(
                current,
                DeliveryFailure(
                    FailureCause.HTTP_STATUS,
                    status_code=response.status_code,
                    message=f"HTTP {response.status_code}: {response.reason_phrase}",
                ),
            )

        try:
            body = response.json()
        except ValueError as e:
            return await self._fail(
                current,
                DeliveryFailure(
                    FailureCause.MALFORMED_BODY,
                    status_code=response.status_code,
                    message=f"Invalid JSON response: {e}",
                ),
            )

        interpreted = interpret_response(body, response.status_code)
        if isinstance(interpreted, DeliveryFailure):
            return await self._fail(current, interpreted)

        if interpreted.implicit_success:
            logger.warning(
                f"Endpoint response for {item.id} has no success flag; treating as success"
            )
        return await self._succeed(current, interpreted)

    async def _post(self, url: str, payload: dict[str, Any], timeout: float) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            return await client.post(url, json=payload)

    async def _succeed(self, item: CaptureItem, result: SubmissionResult) -> SubmissionOutcome:
        try:
            updated = await self.machine.transition(
                item,
                CaptureStatus.SUBMITTED,
                submitted_at=now_ms(),
                submission_result=result.model_dump(mode="json"),
            )
        except (IllegalTransitionError, ItemDeletedError):
            # Deleted while the request was in flight
            updated = await self.store.get(item.id)
            logger.warning(f"Capture {item.id} changed to {updated.status.value} during submission")
        logger.info(f"Submitted {item.id}: {result.display_message()}")
        return SubmissionOutcome(success=True, item=updated, result=result)

    async def _fail(self, item: CaptureItem, failure: DeliveryFailure) -> SubmissionOutcome:
        error = classify(failure, submission_context(item.id))
        try:
            updated = await self.machine.transition(
                item, CaptureStatus.ERROR, submission_result=error.to_result()
            )
        except (IllegalTransitionError, ItemDeletedError):
            updated = await self.store.get(item.id)
            logger.warning(f"Capture {item.id} changed to {updated.status.value} during submission")
        logger.info(f"Submission of {item.id} failed: {error.kind.value}")
        return SubmissionOutcome(success=False, item=updated, error=error)


__all__ = [
    "EndpointConfig",
    "SubmissionClient",
    "SubmissionOutcome",
    "build_payload",
    "interpret_response",
    "submission_context",
    "validate_endpoint",
]

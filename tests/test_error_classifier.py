"""
Tests for delivery failure classification and the error log.
"""

import asyncio
import json
import sqlite3

import httpx
import pytest

from lexflow.core.delivery.classifier import (
    KIND_TABLE,
    DeliveryFailure,
    ErrorKind,
    ErrorLog,
    FailureCause,
    Severity,
    classify,
    failure_from_exception,
)
from lexflow.core.errors import ConfigError, StorageFault

CONTEXT = "submit:cap-a7x3m2q9"


class TestClassifyHttpStatus:
    """Test classification of HTTP status failures."""

    @pytest.mark.parametrize(
        ("status_code", "kind", "retryable"),
        [
            (404, ErrorKind.NOT_FOUND, True),
            (401, ErrorKind.AUTH_DENIED, False),
            (403, ErrorKind.AUTH_DENIED, False),
            (500, ErrorKind.SERVER_FAULT, True),
            (503, ErrorKind.SERVER_FAULT, True),
            (418, ErrorKind.UNKNOWN, True),
        ],
    )
    def test_status_mapping(self, status_code: int, kind: ErrorKind, retryable: bool) -> None:
        error = classify(DeliveryFailure(FailureCause.HTTP_STATUS, status_code=status_code))

        assert error.kind == kind
        assert error.retryable is retryable
        assert error.status_code == status_code

    def test_unknown_status_in_message(self) -> None:
        error = classify(DeliveryFailure(FailureCause.HTTP_STATUS, status_code=418))
        assert error.message == "Submission failed (HTTP 418)"

    def test_context_carried(self) -> None:
        error = classify(DeliveryFailure(FailureCause.HTTP_STATUS, status_code=404), CONTEXT)
        assert error.context == CONTEXT


class TestClassifyCauses:
    """Test classification of non-HTTP causes."""

    @pytest.mark.parametrize(
        ("cause", "kind"),
        [
            (FailureCause.CONFIG_MISSING, ErrorKind.CONFIG_MISSING),
            (FailureCause.CONFIG_INVALID, ErrorKind.CONFIG_INVALID),
            (FailureCause.TIMEOUT, ErrorKind.TIMEOUT),
            (FailureCause.TRANSPORT, ErrorKind.NETWORK),
            (FailureCause.MALFORMED_BODY, ErrorKind.MALFORMED_RESPONSE),
            (FailureCause.STORAGE, ErrorKind.STORAGE),
            (FailureCause.UNEXPECTED, ErrorKind.UNKNOWN),
        ],
    )
    def test_cause_mapping(self, cause: FailureCause, kind: ErrorKind) -> None:
        assert classify(DeliveryFailure(cause)).kind == kind

    def test_config_errors_not_retryable(self) -> None:
        for cause in (FailureCause.CONFIG_MISSING, FailureCause.CONFIG_INVALID):
            error = classify(DeliveryFailure(cause))
            assert error.retryable is False
            assert error.severity == Severity.HIGH

    def test_timeout_is_low_severity(self) -> None:
        error = classify(DeliveryFailure(FailureCause.TIMEOUT))
        assert error.severity == Severity.LOW
        assert error.display_ms == 5000

    def test_high_severity_display_time(self) -> None:
        assert classify(DeliveryFailure(FailureCause.CONFIG_MISSING)).display_ms == 8000


class TestClassifyRejected:
    """Test failures reported by the endpoint in its body."""

    def test_server_message_is_shown(self) -> None:
        error = classify(
            DeliveryFailure(FailureCause.REJECTED, status_code=200, message="Branch already exists")
        )

        assert error.kind == ErrorKind.SERVER_FAULT
        assert error.message == "Branch already exists"

    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("Repository not found", ErrorKind.NOT_FOUND),
            ("Repositório não encontrado", ErrorKind.NOT_FOUND),
            ("Acesso negado", ErrorKind.AUTH_DENIED),
            ("Forbidden by policy", ErrorKind.AUTH_DENIED),
            ("Upstream timed out", ErrorKind.TIMEOUT),
        ],
    )
    def test_rejection_patterns(self, message: str, kind: ErrorKind) -> None:
        error = classify(DeliveryFailure(FailureCause.REJECTED, message=message))
        assert error.kind == kind


class TestFailureFromException:
    """Test conversion of raw exceptions by type."""

    def test_httpx_timeout(self) -> None:
        failure = failure_from_exception(httpx.ReadTimeout("read timed out"))
        assert failure.cause == FailureCause.TIMEOUT

    def test_asyncio_timeout(self) -> None:
        assert failure_from_exception(asyncio.TimeoutError()).cause == FailureCause.TIMEOUT

    def test_http_status_error(self) -> None:
        request = httpx.Request("POST", "https://collector.example.org/submit")
        response = httpx.Response(503, request=request)
        exc = httpx.HTTPStatusError("Service Unavailable", request=request, response=response)

        failure = failure_from_exception(exc)

        assert failure.cause == FailureCause.HTTP_STATUS
        assert failure.status_code == 503

    def test_connect_error(self) -> None:
        failure = failure_from_exception(httpx.ConnectError("connection refused"))
        assert failure.cause == FailureCause.TRANSPORT

    def test_json_error(self) -> None:
        with pytest.raises(json.JSONDecodeError) as exc_info:
            json.loads("<html>")
        assert failure_from_exception(exc_info.value).cause == FailureCause.MALFORMED_BODY

    def test_storage_errors(self) -> None:
        assert failure_from_exception(StorageFault("disk full")).cause == FailureCause.STORAGE
        assert (
            failure_from_exception(sqlite3.OperationalError("locked")).cause
            == FailureCause.STORAGE
        )

    def test_config_error(self) -> None:
        assert failure_from_exception(ConfigError("bad")).cause == FailureCause.CONFIG_INVALID

    def test_anything_else(self) -> None:
        failure = failure_from_exception(RuntimeError("boom"))
        assert failure.cause == FailureCause.UNEXPECTED
        assert failure.message == "boom"

    def test_classify_accepts_exceptions(self) -> None:
        error = classify(httpx.ConnectError("connection refused"), CONTEXT)

        assert error.kind == ErrorKind.NETWORK
        assert error.detail == "connection refused"


class TestDeterminism:
    """Classification is a pure function."""

    def test_same_input_same_output(self) -> None:
        failure = DeliveryFailure(FailureCause.HTTP_STATUS, status_code=500, message="HTTP 500")
        assert classify(failure, CONTEXT) == classify(failure, CONTEXT)

    def test_every_kind_has_text(self) -> None:
        for kind in ErrorKind:
            info = KIND_TABLE[kind]
            assert info.message
            assert info.suggestion


class TestToResult:
    """Test the stored shape of a classified error."""

    def test_to_result(self) -> None:
        error = classify(DeliveryFailure(FailureCause.HTTP_STATUS, status_code=404), CONTEXT)

        result = error.to_result()

        assert result["success"] is False
        assert result["kind"] == "not_found"
        assert result["severity"] == "medium"
        assert result["message"] == "Endpoint not found"
        assert json.loads(json.dumps(result)) == result


class TestErrorLog:
    """Test the bounded error log."""

    def test_record_and_stats(self) -> None:
        log = ErrorLog()
        log.record(classify(DeliveryFailure(FailureCause.TIMEOUT), "submit:cap-1"))
        log.record(classify(DeliveryFailure(FailureCause.TIMEOUT), "submit:cap-2"))
        log.record(classify(DeliveryFailure(FailureCause.HTTP_STATUS, status_code=404), "x"))

        stats = log.stats()

        assert stats.total_errors == 3
        assert stats.error_kinds == {"timeout": 2, "not_found": 1}
        assert stats.last_error is not None
        assert stats.last_error.error.kind == ErrorKind.NOT_FOUND

    def test_bounded(self) -> None:
        log = ErrorLog(max_entries=2)
        for i in range(5):
            log.record(classify(DeliveryFailure(FailureCause.TIMEOUT), f"submit:cap-{i}"))

        assert len(log) == 2
        assert [e.error.context for e in log.entries()] == ["submit:cap-3", "submit:cap-4"]

    def test_clear(self) -> None:
        log = ErrorLog()
        log.record(classify(DeliveryFailure(FailureCause.TIMEOUT)))

        log.clear()

        assert len(log) == 0
        assert log.stats().last_error is None

    def test_record_logs_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        log = ErrorLog()

        with caplog.at_level("WARNING", logger="lexflow.core.delivery.classifier"):
            log.record(classify(DeliveryFailure(FailureCause.TIMEOUT, message="slow"), CONTEXT))

        assert "timeout in submit:cap-a7x3m2q9" in caplog.text

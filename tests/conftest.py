"""
Pytest configuration and shared fixtures.

Provides fixtures for isolated configuration, capture stores, sample
payloads and a recording stand-in for the remote collection endpoint.
"""

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest

from lexflow.core.config import clear_cache
from lexflow.core.queue.models import CapturePayload
from lexflow.core.queue.status import StatusMachine
from lexflow.core.queue.store import RecordStore

ENDPOINT_URL = "https://collector.example.org/submit"

LEXFLOW_ENV_VARS = (
    "LEXFLOW_ENDPOINT_URL",
    "LEXFLOW_TIMEOUT_SECONDS",
    "LEXFLOW_MAX_RETRIES",
    "LEXFLOW_RETRY_BASE_MS",
    "LEXFLOW_DB_PATH",
    "LEXFLOW_LOG_LEVEL",
)


# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """
    Isolate configuration from the developer's machine.

    Clears LEXFLOW_* variables, points XDG config/data homes into tmp_path,
    runs the test from an empty project directory and resets the config cache.

    Returns:
        The project directory (current working directory during the test)
    """
    for key in LEXFLOW_ENV_VARS:
        monkeypatch.delenv(key, raising=False)

    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)

    clear_cache()
    yield project
    clear_cache()


# ==============================================================================
# Store Fixtures
# ==============================================================================


@pytest.fixture
def store() -> RecordStore:
    """In-memory capture store."""
    return RecordStore.in_memory()


@pytest.fixture
def sqlite_store(tmp_path: Path) -> RecordStore:
    """SQLite capture store in a temporary directory."""
    return RecordStore.open(tmp_path / "queue.db")


@pytest.fixture
def machine(store: RecordStore) -> StatusMachine:
    return StatusMachine(store)


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def payload() -> CapturePayload:
    """A capture as handed over by the browser producer."""
    return CapturePayload(
        raw_text="  Art. 5º Todos são iguais perante a lei, sem distinção de qualquer natureza.\n",
        source_url="https://www.planalto.gov.br/ccivil_03/constituicao/constituicao.htm",
        source_title="Constituição Federal",
        language="pt-BR",
        jurisdiction_hint="BR/Federal",
    )


# ==============================================================================
# Endpoint Fixtures
# ==============================================================================


class RecordingEndpoint:
    """
    httpx.MockTransport wrapper that records every request.

    ``responses`` is consumed in order; the last entry repeats once the
    list is exhausted. An entry is an httpx.Response, an exception to raise,
    or a callable taking the request.
    """

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        # Fresh copy so a repeated entry is never a consumed response
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    @property
    def calls(self) -> int:
        return len(self.requests)

    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def mock_endpoint() -> Callable[..., RecordingEndpoint]:
    """
    Factory for a recording endpoint.

    Usage:
        def test_something(mock_endpoint):
            endpoint = mock_endpoint(httpx.Response(200, json={"success": True}))
            client = SubmissionClient(store, machine, transport=endpoint.transport)
    """

    def configure(*responses: Any) -> RecordingEndpoint:
        return RecordingEndpoint(list(responses))

    return configure

"""
Unit tests for configuration loading.

Tests multi-layer config merging, environment variable overrides,
caching, XDG directory handling and layered .env files.
"""

import json
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from lexflow.core.config import (
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    load_config,
    load_layered_env,
)
from lexflow.core.config.loader import (
    apply_env_overrides,
    deep_merge,
    get_default_config,
    load_json_file,
)
from lexflow.core.config.models import (
    LexflowConfig,
    LoggingConfig,
    StorageConfig,
    SubmissionConfig,
)
from lexflow.core.errors import ConfigError

# ==============================================================================
# Helper Functions Tests
# ==============================================================================


class TestDeepMerge:
    """Test the deep_merge helper function."""

    def test_nested_merge(self):
        base = {"retry": {"max_retries": 3, "base_delay_ms": 1000}}
        override = {"retry": {"base_delay_ms": 10}, "logging": {"level": "DEBUG"}}

        result = deep_merge(base, override)

        assert result == {
            "retry": {"max_retries": 3, "base_delay_ms": 10},
            "logging": {"level": "DEBUG"},
        }

    def test_override_replaces_non_dict(self):
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_base_not_modified(self):
        base = {"retry": {"max_retries": 3}}
        deep_merge(base, {"retry": {"max_retries": 5}})
        assert base == {"retry": {"max_retries": 3}}


class TestLoadJsonFile:
    """Test JSON file loading."""

    def test_missing_file(self, tmp_path: Path):
        assert load_json_file(tmp_path / "missing.json") is None

    def test_valid_file(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"retry": {"max_retries": 1}}))
        assert load_json_file(path) == {"retry": {"max_retries": 1}}

    def test_invalid_json_is_skipped(self, tmp_path: Path, caplog: pytest.LogCaptureFixture):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        assert load_json_file(path) is None
        assert "Failed to parse config" in caplog.text

    def test_non_object_is_skipped(self, tmp_path: Path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2, 3]")
        assert load_json_file(path) is None


class TestEnvOverrides:
    """Test LEXFLOW_* environment overrides."""

    def test_all_overrides(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LEXFLOW_ENDPOINT_URL", "https://collector.example.org/submit")
        monkeypatch.setenv("LEXFLOW_TIMEOUT_SECONDS", "7.5")
        monkeypatch.setenv("LEXFLOW_MAX_RETRIES", "5")
        monkeypatch.setenv("LEXFLOW_RETRY_BASE_MS", "250")
        monkeypatch.setenv("LEXFLOW_DB_PATH", "/tmp/lexflow-test.db")
        monkeypatch.setenv("LEXFLOW_LOG_LEVEL", "debug")

        result = apply_env_overrides(get_default_config())

        assert result["submission"] == {
            "endpoint_url": "https://collector.example.org/submit",
            "timeout_seconds": 7.5,
        }
        assert result["retry"]["max_retries"] == 5
        assert result["retry"]["base_delay_ms"] == 250
        assert result["storage"]["db_path"] == "/tmp/lexflow-test.db"
        assert result["logging"]["level"] == "DEBUG"

    def test_invalid_values_ignored(
        self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ):
        monkeypatch.setenv("LEXFLOW_MAX_RETRIES", "many")
        monkeypatch.setenv("LEXFLOW_TIMEOUT_SECONDS", "0")

        result = apply_env_overrides(get_default_config())

        assert result["retry"]["max_retries"] == 3
        assert result["submission"]["timeout_seconds"] == 30.0
        assert "Invalid LEXFLOW_MAX_RETRIES" in caplog.text

    def test_empty_value_skipped(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LEXFLOW_ENDPOINT_URL", "")
        result = apply_env_overrides(get_default_config())
        assert result["submission"]["endpoint_url"] is None

    def test_input_not_modified(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LEXFLOW_MAX_RETRIES", "9")
        defaults = get_default_config()

        apply_env_overrides(defaults)

        assert defaults["retry"]["max_retries"] == 3


# ==============================================================================
# load_config Tests
# ==============================================================================


class TestLoadConfig:
    """Test the full precedence chain."""

    def test_defaults(self, isolated_env: Path):
        config = load_config()

        assert config.submission.endpoint_url is None
        assert config.retry.max_retries == 3
        assert config.retry.base_delay_ms == 1000
        assert config.storage.fallback_to_memory is True
        assert config.logging.level == "WARNING"

    def test_paths(self, isolated_env: Path, tmp_path: Path):
        assert get_user_config_path() == tmp_path / "config" / "lexflow" / "config.json"
        assert get_project_config_path() == isolated_env / ".lexflow.json"

    def test_precedence(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch):
        user_path = get_user_config_path()
        user_path.parent.mkdir(parents=True)
        user_path.write_text(
            json.dumps(
                {
                    "submission": {"endpoint_url": "https://user.example.org/submit"},
                    "retry": {"max_retries": 1, "base_delay_ms": 10},
                }
            )
        )
        (isolated_env / ".lexflow.json").write_text(json.dumps({"retry": {"max_retries": 2}}))
        monkeypatch.setenv("LEXFLOW_RETRY_BASE_MS", "20")

        config = load_config()

        assert config.submission.endpoint_url == "https://user.example.org/submit"
        assert config.retry.max_retries == 2
        assert config.retry.base_delay_ms == 20

    def test_invalid_project_json_skipped(self, isolated_env: Path):
        (isolated_env / ".lexflow.json").write_text("{oops")
        assert load_config().retry.max_retries == 3

    def test_invalid_values_raise_config_error(self, isolated_env: Path):
        (isolated_env / ".lexflow.json").write_text(json.dumps({"retry": {"max_retries": -1}}))

        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config()

    def test_cache(self, isolated_env: Path):
        first = load_config()
        (isolated_env / ".lexflow.json").write_text(json.dumps({"retry": {"max_retries": 7}}))

        assert load_config() is first
        assert load_config(use_cache=False).retry.max_retries == 7

        clear_cache()
        assert load_config().retry.max_retries == 7

    def test_explicit_project_dir(self, isolated_env: Path, tmp_path: Path):
        other = tmp_path / "other"
        other.mkdir()
        (other / ".lexflow.json").write_text(json.dumps({"retry": {"auto_retry": False}}))

        assert load_config(project_dir=other).retry.auto_retry is False


# ==============================================================================
# Model Tests
# ==============================================================================


class TestModels:
    """Test config model validation."""

    def test_blank_endpoint_is_none(self):
        assert SubmissionConfig(endpoint_url="   ").endpoint_url is None

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            SubmissionConfig(timeout_seconds=0)

    def test_log_level_normalized(self):
        assert LoggingConfig(level="info").level == "INFO"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(level="loud")

    def test_default_db_path_uses_xdg(self, isolated_env: Path, tmp_path: Path):
        assert StorageConfig().resolve_db_path() == tmp_path / "data" / "lexflow" / "queue.db"

    def test_extra_fields_allowed(self):
        config = LexflowConfig(**{"future_section": {"x": 1}})
        assert config.retry.max_retries == 3


# ==============================================================================
# .env Loading Tests
# ==============================================================================


class TestLayeredEnv:
    """Test layered .env loading."""

    def test_project_overrides_user(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        # setenv then delenv so monkeypatch removes whatever the loader sets
        for key in ("LEXFLOW_ENDPOINT_URL", "LEXFLOW_MAX_RETRIES"):
            monkeypatch.setenv(key, "")
            monkeypatch.delenv(key)
        user_env = tmp_path / "user.env"
        user_env.write_text(
            "LEXFLOW_ENDPOINT_URL=https://user.example.org/submit\nLEXFLOW_MAX_RETRIES=1\n"
        )
        project_env = tmp_path / ".env"
        project_env.write_text("LEXFLOW_ENDPOINT_URL=https://project.example.org/submit\n")

        loaded = load_layered_env(user_env_paths=[user_env], project_env_paths=[project_env])

        assert loaded == ["LEXFLOW_ENDPOINT_URL", "LEXFLOW_MAX_RETRIES"]
        assert os.environ["LEXFLOW_ENDPOINT_URL"] == "https://project.example.org/submit"
        assert os.environ["LEXFLOW_MAX_RETRIES"] == "1"

    def test_os_environment_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LEXFLOW_ENDPOINT_URL", "https://shell.example.org/submit")
        project_env = tmp_path / ".env"
        project_env.write_text("LEXFLOW_ENDPOINT_URL=https://project.example.org/submit\n")

        loaded = load_layered_env(user_env_paths=[], project_env_paths=[project_env])

        assert loaded == []
        assert os.environ["LEXFLOW_ENDPOINT_URL"] == "https://shell.example.org/submit"

    def test_missing_files(self, tmp_path: Path):
        assert load_layered_env(project_dir=tmp_path, user_env_paths=[tmp_path / "none.env"]) == []

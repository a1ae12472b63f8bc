"""
Layered configuration for LexFlow.

Each layer is a partial dict merged over the one below it, and the
result is validated once as a LexflowConfig:

    built-in defaults -> user config.json -> project .lexflow.json -> LEXFLOW_* vars

A file that is missing or not valid JSON simply contributes nothing.
Values that pass parsing but fail validation raise ConfigError.
"""

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from lexflow.core.errors import ConfigError

from .models import LexflowConfig

logger = logging.getLogger(__name__)

_config_cache: LexflowConfig | None = None


def get_xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")


def get_user_config_path() -> Path:
    """Per-user config file, e.g. ~/.config/lexflow/config.json."""
    return get_xdg_config_home() / "lexflow" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """``.lexflow.json`` in ``cwd`` (the current directory by default)."""
    return (cwd or Path.cwd()) / ".lexflow.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Return ``base`` updated with ``override``, recursing into sections.

    Neither argument is modified.

    Example:
        >>> deep_merge({"retry": {"max_retries": 3}}, {"retry": {"base_delay_ms": 10}})
        {'retry': {'max_retries': 3, 'base_delay_ms': 10}}
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = deep_merge(current, value)
        merged[key] = value
    return merged


def load_json_file(path: Path) -> dict[str, Any] | None:
    """Read one config layer; None when absent, unreadable or not an object."""
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to parse config at {path}: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Ignoring config at {path}: top level is not an object")
        return None
    return data


def _parse_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError(f"must be >= 0, got {value}")
    return value


def _parse_positive_float(raw: str) -> float:
    value = float(raw)
    if value <= 0:
        raise ValueError(f"must be > 0, got {value}")
    return value


# env var -> (section, key, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "LEXFLOW_ENDPOINT_URL": ("submission", "endpoint_url", str),
    "LEXFLOW_TIMEOUT_SECONDS": ("submission", "timeout_seconds", _parse_positive_float),
    "LEXFLOW_MAX_RETRIES": ("retry", "max_retries", _parse_int),
    "LEXFLOW_RETRY_BASE_MS": ("retry", "base_delay_ms", _parse_int),
    "LEXFLOW_DB_PATH": ("storage", "db_path", str),
    "LEXFLOW_LOG_LEVEL": ("logging", "level", str.upper),
}


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence. Unparseable values are logged
    and ignored.

    Supported env vars:
        LEXFLOW_ENDPOINT_URL - overrides submission.endpoint_url
        LEXFLOW_TIMEOUT_SECONDS - overrides submission.timeout_seconds
        LEXFLOW_MAX_RETRIES - overrides retry.max_retries
        LEXFLOW_RETRY_BASE_MS - overrides retry.base_delay_ms
        LEXFLOW_DB_PATH - overrides storage.db_path
        LEXFLOW_LOG_LEVEL - overrides logging.level
    """
    result = {k: (dict(v) if isinstance(v, dict) else v) for k, v in config_dict.items()}

    for env_name, (section, key, parse) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError as e:
            logger.warning(f"Invalid {env_name} value '{raw}', ignoring: {e}")
            continue
        result.setdefault(section, {})[key] = value

    return result


def get_default_config() -> dict[str, Any]:
    """Hardcoded defaults (the model defaults, spelled out for merging)."""
    return {
        "submission": {"endpoint_url": None, "timeout_seconds": 30.0},
        "retry": {"max_retries": 3, "base_delay_ms": 1000, "auto_retry": True},
        "storage": {"db_path": None, "fallback_to_memory": True},
        "logging": {"level": "WARNING"},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> LexflowConfig:
    """
    Build the effective configuration.

    Args:
        project_dir: Where to look for .lexflow.json (defaults to cwd)
        use_cache: Reuse the result of an earlier call in this process

    Returns:
        Validated LexflowConfig

    Raises:
        ConfigError: If the merged values fail validation
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()
    for path in (get_user_config_path(), get_project_config_path(project_dir)):
        layer = load_json_file(path)
        if layer:
            merged = deep_merge(merged, layer)
    merged = apply_env_overrides(merged)

    try:
        config = LexflowConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    _config_cache = config
    return config


def clear_cache() -> None:
    """Forget the cached configuration so the next load rereads every layer."""
    global _config_cache
    _config_cache = None

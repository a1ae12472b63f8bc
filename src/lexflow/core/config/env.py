"""
.env file loading for LexFlow.

Layers, highest precedence first:
    1. Variables already exported in the shell
    2. Project files: ./.env, then ./.env.local
    3. User file: ~/.config/lexflow/.env (XDG_CONFIG_HOME respected)

Only LEXFLOW_* values matter to the loader, but every variable in the
files is exported so that wrapper scripts see the same environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def default_user_env_paths() -> list[Path]:
    xdg_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return [Path(xdg_home) / "lexflow" / ".env"]


def default_project_env_paths(project_dir: Path) -> list[Path]:
    return [project_dir / ".env", project_dir / ".env.local"]


def _apply_layer(paths: Iterable[Path], protected: frozenset[str]) -> set[str]:
    """
    Export the values of one layer, later files winning over earlier ones.

    Keys in ``protected`` (pre-existing shell variables) are never touched.
    """
    applied: set[str] = set()
    for path in map(Path, paths):
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if key is None or value is None or key in protected:
                continue
            os.environ[key] = value
            applied.add(key)
        logger.debug(f"Read environment file {path}")
    return applied


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> list[str]:
    """
    Export variables from the user and project .env files.

    Args:
        project_dir: Directory holding the project .env files (defaults to cwd)
        user_env_paths: Override the user file locations
        project_env_paths: Override the project file locations

    Returns:
        Sorted names of the variables exported by this call

    Example:
        >>> load_layered_env(project_dir=Path("/work/corpus"))
        ['LEXFLOW_ENDPOINT_URL']
    """
    if user_env_paths is None:
        user_env_paths = default_user_env_paths()
    if project_env_paths is None:
        project_env_paths = default_project_env_paths(project_dir or Path.cwd())

    shell = frozenset(os.environ)
    # User first so project values overwrite them
    exported = _apply_layer(user_env_paths, shell)
    exported |= _apply_layer(project_env_paths, shell)
    return sorted(exported)

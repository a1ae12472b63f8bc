"""
LexFlow settings: pydantic models plus the layered loader.

See loader.py for the precedence order and env.py for .env handling.
"""

from .env import load_layered_env
from .loader import (
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
)
from .models import (
    CurationConfig,
    LexflowConfig,
    LoggingConfig,
    RetryConfig,
    StorageConfig,
    SubmissionConfig,
)

__all__ = [
    # Models
    "CurationConfig",
    "LexflowConfig",
    "LoggingConfig",
    "RetryConfig",
    "StorageConfig",
    "SubmissionConfig",
    # Loader functions
    "clear_cache",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
    "load_layered_env",
]

"""Shared utilities for runledger.

This module provides common utilities used across the application.
"""

from .constants import (
    APP_NAME,
    APP_VERSION,
    DEFAULT_ROOT_DIR,
    EXIT_INVALID_ARGUMENTS,
    EXIT_NOT_FOUND,
    EXIT_RUNTIME_ERROR,
    EXIT_SUCCESS,
    ROOT_DIR_ENV_VAR,
)
from .file_helpers import (
    PathValidationError,
    atomic_write_bytes,
    atomic_write_text,
    ensure_directory,
    generate_run_id,
    get_file_extension,
    is_supported_config_format,
    sanitize_path_component,
    utc_now,
    validate_path_safe,
)
from .logging import get_logger, setup_logging

__all__ = [
    "APP_NAME",
    "APP_VERSION",
    "DEFAULT_ROOT_DIR",
    "EXIT_INVALID_ARGUMENTS",
    "EXIT_NOT_FOUND",
    "EXIT_RUNTIME_ERROR",
    "EXIT_SUCCESS",
    "ROOT_DIR_ENV_VAR",
    "PathValidationError",
    "atomic_write_bytes",
    "atomic_write_text",
    "ensure_directory",
    "generate_run_id",
    "get_file_extension",
    "get_logger",
    "is_supported_config_format",
    "sanitize_path_component",
    "setup_logging",
    "utc_now",
    "validate_path_safe",
]

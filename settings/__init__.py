"""Workspace settings: schema and YAML/JSON loading."""

from .loader import SettingsValidationError, load_config_file, load_settings, validate_settings
from .schema import RecorderSettings

__all__ = [
    "RecorderSettings",
    "SettingsValidationError",
    "load_config_file",
    "load_settings",
    "validate_settings",
]

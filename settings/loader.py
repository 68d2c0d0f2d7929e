"""Load RecorderSettings from a YAML or JSON file, or from the environment.

Every failure surfaces as SettingsValidationError with a message that names
the file and, for schema violations, each offending field.
"""

import json
import os
import pathlib
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from settings.schema import RecorderSettings
from utils import PathValidationError, get_file_extension, is_supported_config_format, validate_path_safe
from utils.constants import ROOT_DIR_ENV_VAR


class SettingsValidationError(Exception):
    """Settings could not be loaded or did not validate."""


def load_config_file(config_path: Union[str, pathlib.Path]) -> dict:
    """Read a settings file into a plain mapping.

    Args:
        config_path: ``.yaml``, ``.yml`` or ``.json`` file

    Returns:
        The parsed top-level mapping

    Raises:
        SettingsValidationError: Missing, unreadable, unparsable or non-mapping file
    """
    try:
        path = validate_path_safe(config_path, must_exist=True, must_be_file=True)
    except PathValidationError as e:
        raise SettingsValidationError(f"Invalid configuration path: {e}") from e
    except FileNotFoundError as e:
        raise SettingsValidationError(f"Configuration file not found: {config_path}") from e

    if not is_supported_config_format(path):
        raise SettingsValidationError(
            f"Unsupported file format: {path.suffix or '(none)'}. Use .yaml, .yml or .json"
        )

    is_json = get_file_extension(path) == "json"
    try:
        text = path.read_text(encoding="utf-8")
        config = json.loads(text) if is_json else yaml.safe_load(text)
    except UnicodeDecodeError as e:
        raise SettingsValidationError(f"{path} is not valid UTF-8: {e}") from e
    except OSError as e:
        raise SettingsValidationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SettingsValidationError(f"Invalid YAML syntax in {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise SettingsValidationError(f"Invalid JSON syntax in {path}: {e}") from e

    if config is None:
        raise SettingsValidationError(f"Configuration file is empty: {path}")
    if not isinstance(config, dict):
        raise SettingsValidationError(
            f"Configuration must be a dictionary, got {type(config).__name__}"
        )
    return config


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(part) for part in err.get("loc", ())) or "(root)"
        lines.append(f"  {location}: {err.get('msg', 'invalid value')} ({err.get('type', 'unknown')})")
    return "\n".join(lines)


def validate_settings(config: dict) -> RecorderSettings:
    """Build RecorderSettings from a mapping, reporting every invalid field."""
    try:
        return RecorderSettings.model_validate(config)
    except ValidationError as e:
        raise SettingsValidationError(f"Settings validation failed:\n{_describe_errors(e)}") from e


def load_settings(config_path: Optional[Union[str, pathlib.Path]] = None) -> RecorderSettings:
    """Resolve the settings for a workspace.

    With no file, defaults apply and ``RUNLEDGER_ROOT``, when set, supplies
    the root directory.

    Raises:
        SettingsValidationError: If loading or validation fails
    """
    if config_path is not None:
        return validate_settings(load_config_file(config_path))

    config = {}
    env_root = os.environ.get(ROOT_DIR_ENV_VAR)
    if env_root:
        config["root_dir"] = env_root
    return validate_settings(config)

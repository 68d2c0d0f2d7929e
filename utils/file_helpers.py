"""Path checks and atomic file writes for the on-disk stores.

All durable writes go through a temporary sibling file followed by an
atomic rename, so readers never observe a half-written file.
"""

import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = frozenset("\x00<>:\"|?*/\\")


class PathValidationError(Exception):
    """A user-supplied path was unsafe or unusable."""


def ensure_directory(path: Path) -> Path:
    """Create a directory (and parents) if missing and return its resolved path."""
    try:
        resolved_path = Path(path).resolve()
        resolved_path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Directory ensured: {resolved_path}")
        return resolved_path
    except (OSError, RuntimeError) as e:
        logger.error(f"Failed to resolve or create directory {path}: {e}")
        raise


CONFIG_EXTENSIONS = ("yaml", "yml", "json")


def get_file_extension(file_path: str | Path) -> str:
    """Lowercase extension of a path, without the dot ("" when absent)."""
    return Path(file_path).suffix.lstrip(".").lower()


def is_supported_config_format(file_path: str | Path) -> bool:
    return get_file_extension(file_path) in CONFIG_EXTENSIONS


def validate_path_safe(file_path: str | Path, must_exist: bool = False, must_be_file: bool = False) -> Path:
    """Resolve a user-supplied path, refusing ``..`` components.

    Args:
        file_path: Path as given on the command line or in settings
        must_exist: Require the path to exist
        must_be_file: Require the path to be a regular file

    Returns:
        Resolved Path

    Raises:
        PathValidationError: On traversal, resolution failure, or a non-file
            where a file is required
        FileNotFoundError: If the path is required to exist and does not
    """
    if ".." in Path(file_path).parts:
        raise PathValidationError(f"Refusing path with '..' component: {file_path}")

    try:
        resolved = Path(file_path).expanduser().resolve()
    except (OSError, RuntimeError) as e:
        raise PathValidationError(f"Cannot resolve {file_path}: {e}") from e

    if (must_exist or must_be_file) and not resolved.exists():
        raise FileNotFoundError(f"No such path: {file_path}")
    if must_be_file and not resolved.is_file():
        raise PathValidationError(f"Expected a file, found a directory or special file: {file_path}")
    return resolved


def sanitize_path_component(component: str) -> str:
    """Strip characters that are unsafe in a single file or directory name.

    Asset names and run ids become directory names, so separators, control
    characters and reserved punctuation are removed along with leading and
    trailing dots and spaces.
    """
    kept = "".join(c for c in component if c.isprintable() and c not in _UNSAFE_NAME_CHARS)
    return " ".join(kept.strip(". ").split())


def atomic_write_bytes(data: bytes, file_path: Path, overwrite: bool = False) -> Path:
    """Write bytes to a file atomically.

    The data lands in a temporary file in the same directory which is then
    renamed over the target.

    Args:
        data: Bytes to write
        file_path: Destination path
        overwrite: If False, raise FileExistsError when the target exists

    Returns:
        Resolved destination path

    Raises:
        FileExistsError: If the target exists and overwrite=False
        OSError: If the write or rename fails
    """
    resolved_path = Path(file_path).resolve()
    if resolved_path.exists() and not overwrite:
        raise FileExistsError(f"File already exists: {resolved_path}")

    ensure_directory(resolved_path.parent)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{resolved_path.name}.", suffix=".tmp", dir=resolved_path.parent
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, resolved_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug(f"Bytes written to: {resolved_path}")
    return resolved_path


def atomic_write_text(text: str, file_path: Path, overwrite: bool = False) -> Path:
    """Write text to a file atomically (UTF-8).

    Args:
        text: Text content to write
        file_path: Destination path
        overwrite: If False, raise FileExistsError when the target exists

    Returns:
        Resolved destination path
    """
    return atomic_write_bytes(text.encode("utf-8"), file_path, overwrite=overwrite)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_run_id() -> str:
    """Generate a unique run ID.

    Returns:
        Run ID string (timestamp-based, with a random suffix so concurrent
        callers within the same microsecond never collide)
    """
    timestamp = utc_now().strftime("%Y%m%d_%H%M%S_%f")
    return f"run_{timestamp}_{uuid.uuid4().hex[:8]}"

"""Content-addressed columnar asset store.

Each asset name is a directory and each version a Parquet file named
``v000001.parquet``, ``v000002.parquet``, ... The asset descriptor (semantic
schema, row count, content hash, creation time) is embedded in the file's
schema metadata, so a version can be described from its footer alone.

Version files are written once, atomically, and never modified.
"""

import hashlib
import json
import re
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from utils import (
    atomic_write_bytes,
    atomic_write_text,
    ensure_directory,
    get_logger,
    sanitize_path_component,
    utc_now,
)
from utils.constants import EXT_PARQUET
from utils.logging import log_asset_written

from .asset import Asset, ColumnSpec
from .lazy_handle import LazyHandle
from .schema_inferencer import infer_schema

logger = get_logger(__name__)

VAULT_METADATA_KEY = b"runledger.asset"
VERSION_FILE_PATTERN = re.compile(r"^v(\d{6,})\.parquet$")
# Highest version ever assigned; deleted versions are never reissued
HIGH_WATER_FILENAME = ".high_water"

# Version assignment is serialized per asset directory across every vault
# instance in the process.
_name_locks: dict[str, threading.Lock] = {}
_name_locks_guard = threading.Lock()


def _lock_for(directory: Path) -> threading.Lock:
    key = str(directory)
    with _name_locks_guard:
        lock = _name_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _name_locks[key] = lock
        return lock


class AssetNotFoundError(Exception):
    """Raised when a requested asset name or version does not exist."""

    pass


class SchemaConflictError(Exception):
    """Raised when strict schema enforcement rejects a write."""

    pass


class VaultStorageError(Exception):
    """Raised when the vault cannot read or write its storage."""

    pass


class InvalidTabularDataError(Exception):
    """Raised when data passed to ``write`` cannot be stored as a table."""

    pass


def validate_asset_name(name: str) -> str:
    """Validate an asset name.

    Names double as directory names, so they must survive path sanitization
    unchanged.

    Args:
        name: Asset name

    Returns:
        The name, unchanged

    Raises:
        ValueError: If the name is empty or contains unsafe characters
    """
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Asset name cannot be empty")
    if sanitize_path_component(name) != name:
        raise ValueError(f"Asset name contains unsupported characters: {name!r}")
    return name


def _to_dataframe(tabular_data: Any) -> pd.DataFrame:
    if isinstance(tabular_data, pd.DataFrame):
        df = tabular_data
    elif isinstance(tabular_data, pa.Table):
        df = tabular_data.to_pandas()
    elif isinstance(tabular_data, Mapping):
        try:
            df = pd.DataFrame(dict(tabular_data))
        except ValueError as e:
            raise InvalidTabularDataError(f"Cannot build a table from mapping: {e}") from e
    else:
        raise InvalidTabularDataError(
            f"Unsupported tabular data type: {type(tabular_data).__name__}. "
            "Expected a pandas DataFrame, pyarrow Table or mapping of columns"
        )

    if isinstance(df.columns, pd.MultiIndex):
        raise InvalidTabularDataError("MultiIndex columns are not supported")
    if not all(isinstance(c, str) for c in df.columns):
        raise InvalidTabularDataError("All column names must be strings")
    if df.columns.has_duplicates:
        raise InvalidTabularDataError("Column names must be unique")
    return df


class DataVault:
    """Versioned columnar asset store.

    This class:
    - Writes each new table as a new immutable version of an asset
    - Resolves reads to a specific version at call time
    - Returns lazy handles; no data is read until ``materialize``
    - Describes versions from Parquet footers only
    """

    def __init__(self, vault_dir: Path, strict_schema: bool = False):
        """Initialize the vault.

        Args:
            vault_dir: Directory holding one subdirectory per asset
            strict_schema: Default for schema enforcement on ``write``

        Raises:
            VaultStorageError: If the directory cannot be created
        """
        try:
            self.vault_dir = ensure_directory(Path(vault_dir))
        except OSError as e:
            raise VaultStorageError(f"Cannot create vault directory {vault_dir}: {e}") from e
        self.strict_schema = strict_schema
        logger.debug(f"DataVault initialized: {self.vault_dir}")

    def _asset_dir(self, name: str) -> Path:
        return self.vault_dir / validate_asset_name(name)

    def _version_path(self, name: str, version: int) -> Path:
        return self._asset_dir(name) / f"v{version:06d}{EXT_PARQUET}"

    def _existing_versions(self, name: str) -> list[int]:
        asset_dir = self._asset_dir(name)
        if not asset_dir.is_dir():
            return []
        versions = []
        for path in asset_dir.iterdir():
            match = VERSION_FILE_PATTERN.match(path.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def write(
        self,
        asset_name: str,
        tabular_data: Any,
        enforce_schema: Optional[bool] = None,
    ) -> Asset:
        """Store a table as a new version of ``asset_name``.

        Args:
            asset_name: Asset name
            tabular_data: pandas DataFrame, pyarrow Table, or mapping of columns
            enforce_schema: If True, reject the write unless its schema equals
                the latest version's. Defaults to the vault's ``strict_schema``.

        Returns:
            Descriptor of the new version

        Raises:
            ValueError: If the asset name is invalid
            InvalidTabularDataError: If the data cannot be stored as a table
            SchemaConflictError: If enforcement is on and the schema differs
            VaultStorageError: If the write fails
        """
        asset_dir = self._asset_dir(asset_name)
        df = _to_dataframe(tabular_data)
        schema = infer_schema(df)
        if enforce_schema is None:
            enforce_schema = self.strict_schema

        try:
            table = pa.Table.from_pandas(df, preserve_index=False)
        except (pa.ArrowException, ValueError, TypeError) as e:
            raise InvalidTabularDataError(f"Cannot convert data for '{asset_name}': {e}") from e
        content_hash = self._content_hash(table)

        with _lock_for(asset_dir):
            versions = self._existing_versions(asset_name)
            if enforce_schema and versions:
                previous = self.describe(asset_name, versions[-1])
                if previous.schema != schema:
                    raise SchemaConflictError(
                        f"Schema of '{asset_name}' does not match version {previous.version}: "
                        f"expected {_format_schema(previous.schema)}, got {_format_schema(schema)}"
                    )

            version = max(versions[-1] if versions else 0, self._high_water(asset_dir)) + 1
            path = self._version_path(asset_name, version)
            asset = Asset(
                name=asset_name,
                version=version,
                schema=schema,
                row_count=table.num_rows,
                storage_location=path,
                created_at=utc_now(),
                content_hash=content_hash,
            )
            metadata = dict(table.schema.metadata or {})
            metadata[VAULT_METADATA_KEY] = json.dumps(asset.to_dict()).encode("utf-8")
            table = table.replace_schema_metadata(metadata)

            try:
                sink = pa.BufferOutputStream()
                pq.write_table(table, sink)
                atomic_write_bytes(sink.getvalue().to_pybytes(), path, overwrite=False)
            except (OSError, pa.ArrowException) as e:
                logger.error(f"Failed to write asset '{asset_name}' v{version}: {e}")
                raise VaultStorageError(f"Failed to write asset '{asset_name}' v{version}: {e}") from e

        log_asset_written(asset_name, version, str(path))
        return asset

    @staticmethod
    def _high_water(asset_dir: Path) -> int:
        marker = asset_dir / HIGH_WATER_FILENAME
        try:
            return int(marker.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            raise VaultStorageError(f"Unreadable version marker {marker}: {e}") from e

    @staticmethod
    def _content_hash(table: pa.Table) -> str:
        # Hash the Arrow IPC stream of the data without schema metadata
        bare = table.replace_schema_metadata(None)
        sink = pa.BufferOutputStream()
        with pa.ipc.new_stream(sink, bare.schema) as writer:
            writer.write_table(bare)
        return hashlib.sha256(sink.getvalue().to_pybytes()).hexdigest()

    def latest_version(self, asset_name: str) -> int:
        """Get the latest version number of an asset.

        Raises:
            AssetNotFoundError: If the asset has no versions
        """
        versions = self._existing_versions(asset_name)
        if not versions:
            raise AssetNotFoundError(f"Asset not found: '{asset_name}'")
        return versions[-1]

    def describe(self, asset_name: str, version: Optional[int] = None) -> Asset:
        """Describe an asset version from its Parquet footer.

        Args:
            asset_name: Asset name
            version: Version number; latest when omitted

        Returns:
            Asset descriptor

        Raises:
            AssetNotFoundError: If the name or version does not exist
            VaultStorageError: If the footer cannot be read
        """
        if version is None:
            version = self.latest_version(asset_name)
        path = self._version_path(asset_name, version)
        if not path.is_file():
            raise AssetNotFoundError(f"Asset not found: '{asset_name}' version {version}")

        try:
            schema = pq.read_schema(path)
        except (OSError, pa.ArrowException) as e:
            raise VaultStorageError(f"Failed to read footer of {path}: {e}") from e

        raw = (schema.metadata or {}).get(VAULT_METADATA_KEY)
        if raw is None:
            raise VaultStorageError(f"Version file {path} has no asset metadata")
        return Asset.from_dict(json.loads(raw.decode("utf-8")), storage_location=path)

    def read(self, asset_name: str, version: Optional[int] = None) -> LazyHandle:
        """Get a lazy handle bound to one asset version.

        The version is resolved now, so later writes to the same name never
        change what the handle materializes.

        Args:
            asset_name: Asset name
            version: Version number; latest when omitted

        Returns:
            LazyHandle over the resolved version

        Raises:
            AssetNotFoundError: If the name or version does not exist
        """
        asset = self.describe(asset_name, version)
        logger.debug(f"Resolved '{asset_name}' to version {asset.version}")
        return LazyHandle(asset=asset)

    def list_versions(self, asset_name: str) -> list[Asset]:
        """Describe every version of an asset, oldest first.

        Raises:
            AssetNotFoundError: If the asset has no versions
        """
        versions = self._existing_versions(asset_name)
        if not versions:
            raise AssetNotFoundError(f"Asset not found: '{asset_name}'")
        return [self.describe(asset_name, v) for v in versions]

    def list_assets(self) -> list[Asset]:
        """Describe the latest version of every asset, sorted by name."""
        assets = []
        for asset_dir in sorted(self.vault_dir.iterdir()):
            if not asset_dir.is_dir():
                continue
            versions = self._existing_versions(asset_dir.name)
            if versions:
                assets.append(self.describe(asset_dir.name, versions[-1]))
        return assets

    def delete(self, asset_name: str, version: int) -> bool:
        """Delete one version of an asset.

        Handles already bound to the version fail on ``materialize`` afterwards.
        The version number is never reassigned to a later write.

        Args:
            asset_name: Asset name
            version: Version number

        Returns:
            True if a version file was removed
        """
        path = self._version_path(asset_name, version)
        asset_dir = self._asset_dir(asset_name)
        with _lock_for(asset_dir):
            if not path.exists():
                logger.warning(f"Delete requested for absent asset '{asset_name}' v{version}")
                return False
            try:
                if version > self._high_water(asset_dir):
                    atomic_write_text(f"{version}\n", asset_dir / HIGH_WATER_FILENAME, overwrite=True)
                path.unlink()
            except OSError as e:
                raise VaultStorageError(f"Failed to delete {path}: {e}") from e
        logger.info(f"Asset deleted: {asset_name} v{version}")
        return True


def _format_schema(schema: tuple[ColumnSpec, ...]) -> str:
    return "[" + ", ".join(f"{c.name}:{c.semantic_type}" for c in schema) + "]"

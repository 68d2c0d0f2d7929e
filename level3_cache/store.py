"""Persistence layer for cache entries.

Entries live under ``<cache_dir>/<fp[:2]>/<fp>/``:

- ``entry.json``: fingerprint, execution metadata and slot descriptors
- ``payload/<n>.parquet``: one file per table slot
- ``artifacts/<n>.<ext>``: one file per image slot

An entry is assembled in a temporary directory and renamed into place, so
it appears atomically and is never modified afterwards.
"""

import json
import shutil
import threading
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

import pyarrow as pa
import pyarrow.parquet as pq

from level1_fingerprint import is_fingerprint
from utils import ensure_directory, get_logger
from utils.constants import ENTRY_FILENAME, EXT_PARQUET
from utils.logging import log_cache_stored

from .payload import ResultPayload, SlotKind
from .schemas import ENTRY_FORMAT_VERSION, CacheEntry, EntryDocument, ExecutionMetadata, SlotRecord

logger = get_logger(__name__)

PAYLOAD_DIRNAME = "payload"
ARTIFACTS_DIRNAME = "artifacts"


class CacheStoreError(Exception):
    """Raised when cache storage operations fail."""

    pass


class DuplicateFingerprintError(Exception):
    """Raised when storing under a fingerprint that already has an entry.

    Orchestration code must look up before storing; this signals a broken
    invariant, not a recoverable condition.
    """

    pass


class CacheStore:
    """Fingerprint-keyed store of execution results.

    This class:
    - Looks up, stores and purges entries by fingerprint
    - Keeps at most one immutable entry per fingerprint
    - Stores payload tables and artifact blobs apart from entry metadata
    """

    def __init__(self, cache_dir: Path):
        """Initialize cache store.

        Args:
            cache_dir: Base directory for entries

        Raises:
            CacheStoreError: If the directory cannot be created
        """
        try:
            self.cache_dir = ensure_directory(Path(cache_dir))
        except OSError as e:
            raise CacheStoreError(f"Cannot create cache directory {cache_dir}: {e}") from e
        self._lock = threading.Lock()
        logger.debug(f"CacheStore initialized: {self.cache_dir}")

    def _entry_dir(self, fingerprint: str) -> Path:
        if not is_fingerprint(fingerprint):
            raise ValueError(f"Malformed fingerprint: {fingerprint!r}")
        return self.cache_dir / fingerprint[:2] / fingerprint

    def contains(self, fingerprint: str) -> bool:
        return (self._entry_dir(fingerprint) / ENTRY_FILENAME).is_file()

    def lookup(self, fingerprint: str) -> Optional[CacheEntry]:
        """Look up the entry for a fingerprint.

        Only ``entry.json`` is read; tables and blobs stay on disk.

        Args:
            fingerprint: Fingerprint to look up

        Returns:
            CacheEntry, or None if absent

        Raises:
            CacheStoreError: If the entry exists but cannot be read
        """
        entry_dir = self._entry_dir(fingerprint)
        entry_file = entry_dir / ENTRY_FILENAME
        if not entry_file.is_file():
            return None
        return self._load_entry(entry_dir)

    def _load_entry(self, entry_dir: Path) -> CacheEntry:
        entry_file = entry_dir / ENTRY_FILENAME
        try:
            with open(entry_file, "r", encoding="utf-8") as f:
                document = EntryDocument.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            raise CacheStoreError(f"Failed to read cache entry {entry_file}: {e}") from e
        return CacheEntry(
            fingerprint=document.fingerprint,
            metadata=document.metadata,
            slots=tuple(document.slots),
            entry_dir=entry_dir,
        )

    def store(
        self,
        fingerprint: str,
        return_payload: ResultPayload,
        metadata: ExecutionMetadata,
    ) -> CacheEntry:
        """Persist a new entry.

        Image slots of the payload are the entry's artifact blobs.

        Args:
            fingerprint: Fingerprint to key the entry by
            return_payload: Normalized result payload
            metadata: Execution metadata

        Returns:
            The stored CacheEntry

        Raises:
            DuplicateFingerprintError: If an entry already exists
            CacheStoreError: If writing fails
        """
        entry_dir = self._entry_dir(fingerprint)

        with self._lock:
            if (entry_dir / ENTRY_FILENAME).exists():
                raise DuplicateFingerprintError(
                    f"Cache entry already exists for fingerprint {fingerprint}"
                )

            staging_dir = self.cache_dir / f".staging-{uuid.uuid4().hex}"
            try:
                records = self._write_blobs(staging_dir, return_payload)
                document = {
                    "format": ENTRY_FORMAT_VERSION,
                    "fingerprint": fingerprint,
                    "metadata": metadata.model_dump(mode="json"),
                    "slots": [
                        {**record.model_dump(mode="python"), "kind": record.kind.value}
                        for record in records
                    ],
                }
                with open(staging_dir / ENTRY_FILENAME, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                ensure_directory(entry_dir.parent)
                staging_dir.rename(entry_dir)
            except (OSError, pa.ArrowException, TypeError, ValueError) as e:
                shutil.rmtree(staging_dir, ignore_errors=True)
                logger.error(f"Failed to store cache entry {fingerprint}: {e}")
                raise CacheStoreError(f"Failed to store cache entry {fingerprint}: {e}") from e

        log_cache_stored(fingerprint, len(records))
        return CacheEntry(
            fingerprint=fingerprint,
            metadata=metadata,
            slots=tuple(records),
            entry_dir=entry_dir,
        )

    def _write_blobs(self, staging_dir: Path, payload: ResultPayload) -> list[SlotRecord]:
        payload_dir = staging_dir / PAYLOAD_DIRNAME
        artifacts_dir = staging_dir / ARTIFACTS_DIRNAME
        payload_dir.mkdir(parents=True)
        artifacts_dir.mkdir()

        records = []
        for index, slot in enumerate(payload.slots):
            if slot.kind is SlotKind.TABLE:
                relative = f"{PAYLOAD_DIRNAME}/{index}{EXT_PARQUET}"
                pq.write_table(pa.Table.from_pandas(slot.value), staging_dir / relative)
                records.append(
                    SlotRecord(
                        name=slot.name,
                        kind=slot.kind,
                        file=relative,
                        rows=len(slot.value),
                        columns=[str(c) for c in slot.value.columns],
                    )
                )
            elif slot.kind is SlotKind.IMAGE:
                image = slot.value
                relative = f"{ARTIFACTS_DIRNAME}/{index}.{image.format}"
                (staging_dir / relative).write_bytes(image.data)
                records.append(
                    SlotRecord(
                        name=slot.name,
                        kind=slot.kind,
                        file=relative,
                        image_format=image.format,
                        caption=image.caption,
                    )
                )
            else:
                records.append(SlotRecord(name=slot.name, kind=slot.kind, value=slot.value))
        return records

    def purge(self, fingerprint: str) -> bool:
        """Remove an entry.

        Args:
            fingerprint: Fingerprint of the entry

        Returns:
            True if an entry was removed, False if none existed

        Raises:
            CacheStoreError: If removal fails
        """
        entry_dir = self._entry_dir(fingerprint)
        with self._lock:
            if not entry_dir.exists():
                logger.warning(f"Purge requested for absent cache entry {fingerprint[:12]}")
                return False
            # Rename first so the entry disappears atomically
            trash_dir = self.cache_dir / f".trash-{uuid.uuid4().hex}"
            try:
                entry_dir.rename(trash_dir)
            except OSError as e:
                raise CacheStoreError(f"Failed to purge cache entry {fingerprint}: {e}") from e
        shutil.rmtree(trash_dir, ignore_errors=True)
        logger.info(f"Cache entry purged: {fingerprint[:12]}")
        return True

    def list_entries(self) -> Iterator[CacheEntry]:
        """Iterate over all entries, reading metadata only.

        Yields:
            CacheEntry for each stored fingerprint, ordered by fingerprint
        """
        for shard in sorted(self.cache_dir.iterdir()):
            if not shard.is_dir() or shard.name.startswith("."):
                continue
            for entry_dir in sorted(shard.iterdir()):
                if (entry_dir / ENTRY_FILENAME).is_file():
                    yield self._load_entry(entry_dir)

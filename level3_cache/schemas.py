"""Cache entry schemas.

This module defines the persisted form of a cache entry. The entry document
(``entry.json``) holds metadata and slot descriptors only; tables and image
blobs live in separate files so scans never read them.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pyarrow.parquet as pq
from pydantic import BaseModel, ConfigDict, Field

from .payload import ImageArtifact, ResultPayload, ResultSlot, SlotKind

ENTRY_FORMAT_VERSION = 1


class ExecutionMetadata(BaseModel):
    """Metadata captured when a function was executed on a cache miss."""

    function_name: str
    function_identity: str
    duration_seconds: float = Field(..., ge=0)
    argument_summary: str = ""
    note: str = ""
    run_id: str
    created_at: datetime

    model_config = ConfigDict(frozen=True, extra="forbid")


class SlotRecord(BaseModel):
    """Descriptor of one stored slot.

    Scalars and text are stored inline; tables and images reference a file
    relative to the entry directory.
    """

    name: str
    kind: SlotKind
    value: Any = None
    file: Optional[str] = None
    rows: Optional[int] = None
    columns: Optional[list[str]] = None
    image_format: Optional[str] = None
    caption: str = ""

    model_config = ConfigDict(frozen=True, extra="forbid")


class EntryDocument(BaseModel):
    """Top-level structure of ``entry.json``."""

    format: int = ENTRY_FORMAT_VERSION
    fingerprint: str
    metadata: ExecutionMetadata
    slots: list[SlotRecord]

    model_config = ConfigDict(frozen=True, extra="forbid")


@dataclass(frozen=True)
class CacheEntry:
    """A persisted execution result.

    This is immutable. Payload tables and artifact blobs are loaded on demand
    from the entry directory.
    """

    fingerprint: str
    metadata: ExecutionMetadata
    slots: tuple[SlotRecord, ...]
    entry_dir: Path

    @property
    def slot_names(self) -> list[str]:
        return [slot.name for slot in self.slots]

    def slot_record(self, name: str) -> SlotRecord:
        for slot in self.slots:
            if slot.name == name:
                return slot
        raise KeyError(name)

    def artifact_path(self, name: str) -> Optional[Path]:
        """Get the blob path of a table or image slot (None for inline slots)."""
        record = self.slot_record(name)
        return self.entry_dir / record.file if record.file else None

    def artifact_paths(self) -> dict[str, Path]:
        """Get blob paths of all image slots."""
        return {
            slot.name: self.entry_dir / slot.file
            for slot in self.slots
            if slot.kind is SlotKind.IMAGE and slot.file
        }

    def load_payload(self) -> ResultPayload:
        """Load the full result payload, reading table and image files.

        Returns:
            ResultPayload equal to the one originally stored

        Raises:
            OSError: If a blob file cannot be read
        """
        loaded = []
        for record in self.slots:
            if record.kind is SlotKind.TABLE:
                value = pq.read_table(self.entry_dir / record.file).to_pandas()
            elif record.kind is SlotKind.IMAGE:
                value = ImageArtifact(
                    data=(self.entry_dir / record.file).read_bytes(),
                    format=record.image_format or "png",
                    caption=record.caption,
                )
            else:
                value = record.value
            loaded.append(ResultSlot(record.name, record.kind, value))
        return ResultPayload(loaded)

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary for display.

        Returns:
            Dictionary representation
        """
        return {
            "fingerprint": self.fingerprint,
            "metadata": self.metadata.model_dump(mode="json"),
            "slots": [slot.model_dump(mode="json", exclude_none=True) for slot in self.slots],
            "entry_dir": str(self.entry_dir),
        }


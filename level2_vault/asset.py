"""Asset descriptors.

An Asset names one immutable version of a columnar dataset. Descriptors are
plain values: they carry the schema and location of a version, never its data.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ColumnSpec:
    """One column of an asset schema."""

    name: str
    semantic_type: str


@dataclass(frozen=True)
class Asset:
    """A named, versioned columnar dataset.

    This is immutable - a new write under the same name creates a new
    version with a new descriptor.
    """

    name: str
    version: int
    schema: tuple[ColumnSpec, ...]
    row_count: int
    storage_location: Path
    created_at: datetime
    content_hash: str

    @property
    def column_names(self) -> list[str]:
        """Get column names in schema order."""
        return [column.name for column in self.schema]

    def semantic_type(self, column: str) -> str:
        """Get the semantic type of a column.

        Raises:
            KeyError: If the column is not part of the schema
        """
        for spec in self.schema:
            if spec.name == column:
                return spec.semantic_type
        raise KeyError(column)

    def __fingerprint_token__(self) -> dict[str, Any]:
        # Identity only; fingerprinting must never read the data
        return {"asset": self.name, "version": self.version, "content_hash": self.content_hash}

    def to_dict(self) -> dict[str, Any]:
        """Convert descriptor to dictionary for serialization.

        Returns:
            Dictionary representation
        """
        return {
            "name": self.name,
            "version": self.version,
            "schema": [[column.name, column.semantic_type] for column in self.schema],
            "row_count": self.row_count,
            "storage_location": str(self.storage_location),
            "created_at": self.created_at.isoformat(),
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], storage_location: Path) -> "Asset":
        """Rebuild a descriptor from its embedded metadata.

        Args:
            data: Dictionary produced by ``to_dict``
            storage_location: Actual location of the version file

        Returns:
            Asset descriptor
        """
        return cls(
            name=data["name"],
            version=int(data["version"]),
            schema=tuple(ColumnSpec(name=n, semantic_type=t) for n, t in data["schema"]),
            row_count=int(data["row_count"]),
            storage_location=storage_location,
            created_at=datetime.fromisoformat(data["created_at"]),
            content_hash=data["content_hash"],
        )

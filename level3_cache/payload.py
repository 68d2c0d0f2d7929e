"""Tagged result payloads.

An analysis function returns a mapping of slot name to value. Each value is
classified into one of a closed set of kinds; anything else is rejected
instead of being stringified.
"""

import io
import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import numpy as np
import pandas as pd
import pyarrow as pa


class UnsupportedResultTypeError(Exception):
    """Raised when a function returns a payload the recorder cannot store or render."""

    pass


class SlotKind(str, Enum):
    """Supported result slot kinds."""

    TABLE = "table"
    SCALAR = "scalar"
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class ImageArtifact:
    """A rendered image (e.g. a rasterized figure)."""

    data: bytes
    format: str = "png"
    caption: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.data, bytes):
            raise UnsupportedResultTypeError("ImageArtifact data must be bytes")
        if not self.format.isalnum():
            raise UnsupportedResultTypeError(f"Invalid image format: {self.format!r}")

    @classmethod
    def from_figure(cls, figure: Any, caption: str = "", dpi: int = 100) -> "ImageArtifact":
        """Rasterize any figure object exposing ``savefig`` (matplotlib and friends).

        Args:
            figure: Figure with a ``savefig(buffer, format=...)`` method
            caption: Optional caption shown in reports
            dpi: Raster resolution

        Returns:
            PNG ImageArtifact
        """
        buffer = io.BytesIO()
        figure.savefig(buffer, format="png", dpi=dpi)
        return cls(data=buffer.getvalue(), format="png", caption=caption)


@dataclass(frozen=True)
class ResultSlot:
    """One named, typed output of an analysis."""

    name: str
    kind: SlotKind
    value: Any

    def equals(self, other: "ResultSlot") -> bool:
        if self.name != other.name or self.kind != other.kind:
            return False
        if self.kind is SlotKind.TABLE:
            return self.value.equals(other.value)
        if self.kind is SlotKind.SCALAR and isinstance(self.value, float) and isinstance(other.value, float):
            if math.isnan(self.value) and math.isnan(other.value):
                return True
        return self.value == other.value


class ResultPayload(Mapping[str, Any]):
    """Read-only mapping of slot name to value, with each slot's kind attached.

    Indexing returns the plain value (a DataFrame, a number, a string or an
    ImageArtifact); ``slot(name)`` returns the tagged ResultSlot.
    """

    def __init__(self, slots: list[ResultSlot]):
        self._slots = {slot.name: slot for slot in slots}

    def __getitem__(self, name: str) -> Any:
        return self._slots[name].value

    def __iter__(self) -> Iterator[str]:
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def slot(self, name: str) -> ResultSlot:
        return self._slots[name]

    def kind(self, name: str) -> SlotKind:
        return self._slots[name].kind

    @property
    def slots(self) -> list[ResultSlot]:
        return list(self._slots.values())

    def renderable_slots(self) -> list[ResultSlot]:
        """Slots a report renderer can display (all kinds are renderable)."""
        return self.slots

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResultPayload):
            return NotImplemented
        if list(self._slots) != list(other._slots):
            return False
        return all(self._slots[name].equals(other._slots[name]) for name in self._slots)

    def __repr__(self) -> str:
        kinds = ", ".join(f"{name}: {slot.kind.value}" for name, slot in self._slots.items())
        return f"ResultPayload({kinds})"


def classify_value(name: str, value: Any) -> ResultSlot:
    """Classify a returned value into a tagged slot.

    Args:
        name: Slot name
        value: Value returned by the analysis function

    Returns:
        ResultSlot with the value normalized for storage

    Raises:
        UnsupportedResultTypeError: If the value fits no supported kind, or is
            a table whose columns cannot be stored as Parquet
    """
    if isinstance(value, pd.DataFrame):
        # Tables are persisted as Parquet; reject what Arrow cannot represent
        try:
            pa.Table.from_pandas(value)
        except (pa.ArrowException, ValueError, TypeError) as e:
            raise UnsupportedResultTypeError(
                f"Result slot '{name}' is a table Arrow cannot store: {e}"
            ) from e
        return ResultSlot(name, SlotKind.TABLE, value)
    if isinstance(value, ImageArtifact):
        return ResultSlot(name, SlotKind.IMAGE, value)
    if isinstance(value, (np.bool_, np.integer, np.floating)):
        return ResultSlot(name, SlotKind.SCALAR, value.item())
    if isinstance(value, (bool, int, float)):
        return ResultSlot(name, SlotKind.SCALAR, value)
    if isinstance(value, Decimal):
        return ResultSlot(name, SlotKind.SCALAR, float(value))
    if isinstance(value, str):
        return ResultSlot(name, SlotKind.TEXT, value)
    if callable(getattr(value, "savefig", None)):
        return ResultSlot(name, SlotKind.IMAGE, ImageArtifact.from_figure(value))

    raise UnsupportedResultTypeError(
        f"Result slot '{name}' has unsupported type {type(value).__module__}.{type(value).__qualname__}. "
        f"Supported kinds: {[k.value for k in SlotKind]}"
    )


def normalize_payload(result: Any) -> ResultPayload:
    """Validate and tag an analysis function's return value.

    Args:
        result: Return value; must be a mapping of slot name to value

    Returns:
        ResultPayload

    Raises:
        UnsupportedResultTypeError: If the result is not a mapping, a slot name
            is not a non-empty string, or a value has an unsupported kind
    """
    if isinstance(result, ResultPayload):
        return result
    if not isinstance(result, Mapping):
        raise UnsupportedResultTypeError(
            f"Analysis functions must return a mapping of slot names to values, "
            f"got {type(result).__name__}"
        )

    slots = []
    for name, value in result.items():
        if not isinstance(name, str) or not name.strip():
            raise UnsupportedResultTypeError(f"Result slot names must be non-empty strings, got {name!r}")
        slots.append(classify_value(name, value))
    return ResultPayload(slots)

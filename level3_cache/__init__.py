"""Level 3: Cache Store.

This module maps fingerprints to persisted execution results. Each
fingerprint has at most one immutable entry; repeated analyses reuse it.
"""

from .payload import (
    ImageArtifact,
    ResultPayload,
    ResultSlot,
    SlotKind,
    UnsupportedResultTypeError,
    classify_value,
    normalize_payload,
)
from .schemas import CacheEntry, ExecutionMetadata, SlotRecord
from .store import CacheStore, CacheStoreError, DuplicateFingerprintError

__all__ = [
    "CacheEntry",
    "CacheStore",
    "CacheStoreError",
    "DuplicateFingerprintError",
    "ExecutionMetadata",
    "ImageArtifact",
    "ResultPayload",
    "ResultSlot",
    "SlotKind",
    "SlotRecord",
    "UnsupportedResultTypeError",
    "classify_value",
    "normalize_payload",
]

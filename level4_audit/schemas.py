"""Audit record schemas.

This module defines the rows of the append-only execution ledger and the
filters used to query it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CacheOutcome(str, Enum):
    """How an invocation obtained its result."""

    HIT = "hit"
    MISS_RECOMPUTED = "miss-recomputed"


class AuditRecord(BaseModel):
    """One ledger row describing a single invocation, hit or miss.

    ``artifact_missing`` is normally derived when listing, from purge
    tombstones recorded after this row. It is persisted only when the entry
    was already gone at the moment the row was appended.
    """

    sequence_number: int = Field(..., ge=1)
    fingerprint: str
    cache_outcome: CacheOutcome
    note: str = ""
    timestamp: datetime
    report_reference: Optional[str] = None
    function_name: str = ""
    run_id: str = ""
    artifact_missing: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_ledger_line(self) -> str:
        """Serialize the persisted fields as one JSON line (with newline)."""
        exclude = None if self.artifact_missing else {"artifact_missing"}
        return self.model_dump_json(exclude=exclude) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PurgeTombstone(BaseModel):
    """Marks a fingerprint's cache entry as purged after a given sequence number."""

    fingerprint: str
    after_sequence: int = Field(..., ge=0)
    timestamp: datetime

    model_config = ConfigDict(frozen=True, extra="forbid")


@dataclass(frozen=True)
class AuditFilter:
    """Criteria for listing audit records. Unset criteria match everything.

    Sequence bounds are inclusive; time bounds are inclusive on ``since`` and
    exclusive on ``until``.
    """

    from_sequence: Optional[int] = None
    to_sequence: Optional[int] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    fingerprint: Optional[str] = None
    function_name: Optional[str] = None
    cache_outcome: Optional[CacheOutcome] = None

    def __post_init__(self) -> None:
        # Ledger timestamps are UTC-aware; naive bounds are taken as UTC
        for name in ("since", "until"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                object.__setattr__(self, name, value.replace(tzinfo=timezone.utc))

    def matches(self, record: AuditRecord) -> bool:
        if self.from_sequence is not None and record.sequence_number < self.from_sequence:
            return False
        if self.to_sequence is not None and record.sequence_number > self.to_sequence:
            return False
        if self.since is not None and record.timestamp < self.since:
            return False
        if self.until is not None and record.timestamp >= self.until:
            return False
        if self.fingerprint is not None and record.fingerprint != self.fingerprint:
            return False
        if self.function_name is not None and record.function_name != self.function_name:
            return False
        if self.cache_outcome is not None and record.cache_outcome != self.cache_outcome:
            return False
        return True

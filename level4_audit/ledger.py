"""Append-only audit ledger.

The ledger is a JSON Lines file with one AuditRecord per line, in strictly
increasing, gap-free sequence order. Records are never rewritten. Cache
purges are recorded in a separate tombstone file and folded into records
when they are listed.
"""

import os
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from utils import ensure_directory, get_logger, utc_now
from utils.constants import LEDGER_FILENAME, TOMBSTONE_FILENAME
from utils.logging import log_audit_appended

from .schemas import AuditFilter, AuditRecord, CacheOutcome, PurgeTombstone

logger = get_logger(__name__)


class AuditLogError(Exception):
    """Raised when the audit ledger cannot be read or written."""

    pass


class _LedgerState:
    """Sequence counter and lock shared by every AuditLog on one ledger file."""

    def __init__(self):
        self.lock = threading.Lock()
        self.next_sequence = 0
        self.needs_separator = False
        self.recovered = False


# Sequence assignment is serialized per ledger file across every AuditLog
# instance in the process.
_ledger_states: dict[str, _LedgerState] = {}
_ledger_states_guard = threading.Lock()


def _state_for(ledger_path: Path) -> _LedgerState:
    key = str(ledger_path)
    with _ledger_states_guard:
        state = _ledger_states.get(key)
        if state is None:
            state = _LedgerState()
            _ledger_states[key] = state
        return state


class AuditQuery:
    """Restartable, lazy sequence of audit records.

    Each iteration re-reads the ledger from storage. An iteration sees the
    records that existed when it started; records appended while it runs are
    left for the next iteration.
    """

    def __init__(self, log: "AuditLog", audit_filter: Optional[AuditFilter] = None):
        self._log = log
        self._filter = audit_filter or AuditFilter()

    def __iter__(self) -> Iterator[AuditRecord]:
        end_offset = self._log._snapshot_size()
        purged = self._log._purged_after()
        for record in self._log._read_records(end_offset):
            if not self._filter.matches(record):
                continue
            if purged.get(record.fingerprint, 0) >= record.sequence_number:
                record = record.model_copy(update={"artifact_missing": True})
            yield record


class AuditLog:
    """Time-ordered ledger of every recorded invocation.

    This class:
    - Assigns dense, strictly increasing sequence numbers under a lock
    - Writes each record durably before returning it
    - Holds fingerprints only, never payload copies
    """

    def __init__(self, audit_dir: Path, fsync: bool = True):
        """Initialize the audit log, recovering the next sequence number.

        Args:
            audit_dir: Directory holding the ledger and tombstone files
            fsync: If True, fsync the ledger after every append

        Raises:
            AuditLogError: If the directory or ledger cannot be read
        """
        try:
            self.audit_dir = ensure_directory(Path(audit_dir))
        except OSError as e:
            raise AuditLogError(f"Cannot create audit directory {audit_dir}: {e}") from e
        self.ledger_path = self.audit_dir / LEDGER_FILENAME
        self.tombstone_path = self.audit_dir / TOMBSTONE_FILENAME
        self.fsync = fsync
        self._state = _state_for(self.ledger_path)
        with self._state.lock:
            # Another writer may have left a partial line since the last append
            if self._has_torn_tail():
                self._state.needs_separator = True
            if not self._state.recovered:
                self._state.next_sequence = self._recover_next_sequence()
                self._state.recovered = True
            next_sequence = self._state.next_sequence
        logger.debug(f"AuditLog initialized: {self.ledger_path} (next sequence {next_sequence})")

    def _has_torn_tail(self) -> bool:
        try:
            if not self.ledger_path.exists() or self.ledger_path.stat().st_size == 0:
                return False
            with open(self.ledger_path, "rb") as f:
                f.seek(-1, os.SEEK_END)
                torn = f.read(1) != b"\n"
        except OSError as e:
            raise AuditLogError(f"Failed to inspect ledger {self.ledger_path}: {e}") from e
        if torn:
            logger.warning(f"Ledger {self.ledger_path} ends with an incomplete record")
        return torn

    def _recover_next_sequence(self) -> int:
        last = 0
        for record in self._read_records(self._ledger_size()):
            last = record.sequence_number
        return last + 1

    @property
    def last_sequence_number(self) -> int:
        """Sequence number of the most recent record (0 when empty)."""
        with self._state.lock:
            return self._state.next_sequence - 1

    def _write_line(self, path: Path, line: str, prefix_separator: bool = False) -> None:
        data = ("\n" + line if prefix_separator else line).encode("utf-8")
        with open(path, "ab") as f:
            f.write(data)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())

    def append(
        self,
        fingerprint: str,
        cache_outcome: CacheOutcome,
        note: str = "",
        report_reference: Optional[str] = None,
        function_name: str = "",
        run_id: str = "",
        artifact_missing: bool = False,
    ) -> AuditRecord:
        """Append a record with the next sequence number.

        Args:
            fingerprint: Fingerprint of the referenced cache entry
            cache_outcome: Whether the result was a hit or recomputed
            note: Caller-supplied annotation
            report_reference: Locator of the rendered report
            function_name: Name of the analysis function
            run_id: Identifier of the invocation
            artifact_missing: True when the referenced entry was purged before
                this record could be written

        Returns:
            The durably written AuditRecord

        Raises:
            AuditLogError: If the write fails (the sequence number is not consumed)
        """
        with self._state.lock:
            record = AuditRecord(
                sequence_number=self._state.next_sequence,
                fingerprint=fingerprint,
                cache_outcome=cache_outcome,
                note=note,
                timestamp=utc_now(),
                report_reference=report_reference,
                function_name=function_name,
                run_id=run_id,
                artifact_missing=artifact_missing,
            )
            try:
                self._write_line(
                    self.ledger_path,
                    record.to_ledger_line(),
                    prefix_separator=self._state.needs_separator,
                )
            except OSError as e:
                # A partial line may be on disk; fence it off before the next append
                self._state.needs_separator = True
                logger.error(f"Failed to append audit record #{record.sequence_number}: {e}")
                raise AuditLogError(
                    f"Failed to append audit record #{record.sequence_number}: {e}"
                ) from e
            self._state.needs_separator = False
            self._state.next_sequence += 1

        log_audit_appended(record.sequence_number, fingerprint, cache_outcome.value)
        return record

    def mark_purged(self, fingerprint: str) -> PurgeTombstone:
        """Record that a fingerprint's cache entry was purged.

        Records appended up to now will list with ``artifact_missing=True``.

        Args:
            fingerprint: Purged fingerprint

        Returns:
            The written tombstone

        Raises:
            AuditLogError: If the write fails
        """
        with self._state.lock:
            tombstone = PurgeTombstone(
                fingerprint=fingerprint,
                after_sequence=self._state.next_sequence - 1,
                timestamp=utc_now(),
            )
            try:
                self._write_line(self.tombstone_path, tombstone.model_dump_json() + "\n")
            except OSError as e:
                raise AuditLogError(f"Failed to record purge of {fingerprint}: {e}") from e
        logger.info(f"Purge recorded for {fingerprint[:12]} after #{tombstone.after_sequence}")
        return tombstone

    def list(self, audit_filter: Optional[AuditFilter] = None) -> AuditQuery:
        """List records in ascending sequence order.

        Args:
            audit_filter: Optional filter criteria

        Returns:
            Restartable lazy sequence of matching records
        """
        return AuditQuery(self, audit_filter)

    def get(self, sequence_number: int) -> Optional[AuditRecord]:
        """Get one record by sequence number, or None if it does not exist."""
        query = self.list(AuditFilter(from_sequence=sequence_number, to_sequence=sequence_number))
        return next(iter(query), None)

    def _snapshot_size(self) -> int:
        # Taken under the lock so the snapshot never ends inside a record
        with self._state.lock:
            return self._ledger_size()

    def _ledger_size(self) -> int:
        try:
            return self.ledger_path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise AuditLogError(f"Failed to stat ledger {self.ledger_path}: {e}") from e

    def _read_records(self, end_offset: int) -> Iterator[AuditRecord]:
        if end_offset == 0:
            return
        try:
            with open(self.ledger_path, "rb") as f:
                offset = 0
                while offset < end_offset:
                    raw = f.readline()
                    if not raw:
                        break
                    offset += len(raw)
                    line = raw.strip()
                    if not line:
                        continue
                    try:
                        yield AuditRecord.model_validate_json(line)
                    except ValueError:
                        logger.warning(f"Skipping unreadable ledger line ending at byte {offset}")
        except OSError as e:
            raise AuditLogError(f"Failed to read ledger {self.ledger_path}: {e}") from e

    def _purged_after(self) -> dict[str, int]:
        purged: dict[str, int] = {}
        if not self.tombstone_path.exists():
            return purged
        try:
            with open(self.tombstone_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        tombstone = PurgeTombstone.model_validate_json(line)
                    except ValueError:
                        logger.warning(f"Skipping unreadable tombstone in {self.tombstone_path}")
                        continue
                    purged[tombstone.fingerprint] = max(
                        purged.get(tombstone.fingerprint, 0), tombstone.after_sequence
                    )
        except OSError as e:
            raise AuditLogError(f"Failed to read tombstones {self.tombstone_path}: {e}") from e
        return purged

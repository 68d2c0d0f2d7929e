"""Run recorder for memoized, audited analysis execution.

This module defines the RunRecorder, which takes one analysis call through

    START -> FINGERPRINTED -> {CACHE_HIT | EXECUTING -> STORED}
          -> AUDITED -> REPORTED -> DONE

with a failure exit from EXECUTING to FAILED. A call is fingerprinted, looked
up in the cache, executed only on a miss, stored, rendered and appended to
the audit ledger. The report reference is written in the same ledger append
as the record, so a record is never visible without its report.
"""

import inspect
import reprlib
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from level1_fingerprint import callable_identity, fingerprint_call
from level2_vault import DataVault
from level3_cache import (
    CacheEntry,
    CacheStore,
    CacheStoreError,
    ExecutionMetadata,
    ResultPayload,
    normalize_payload,
)
from level4_audit import AuditLog, AuditRecord, CacheOutcome
from level5_reporting import PaletteRegistry, ReportContext, ReportRenderer
from utils import generate_run_id, get_logger, utc_now

logger = get_logger(__name__)

VAULT_PARAMETER = "vault"
PALETTE_PARAMETER = "palette"


class RunState(str, Enum):
    """States an invocation passes through."""

    START = "start"
    FINGERPRINTED = "fingerprinted"
    CACHE_HIT = "cache_hit"
    EXECUTING = "executing"
    STORED = "stored"
    AUDITED = "audited"
    REPORTED = "reported"
    DONE = "done"
    FAILED = "failed"


class RunExecutionError(Exception):
    """Raised when the analysis function fails; the original error is the cause."""

    pass


@dataclass(frozen=True)
class RunResult:
    """Outcome of one recorded invocation."""

    payload: ResultPayload
    audit_record: AuditRecord
    cache_entry: CacheEntry
    states: tuple[RunState, ...]

    @property
    def fingerprint(self) -> str:
        return self.audit_record.fingerprint

    @property
    def outcome(self) -> CacheOutcome:
        return self.audit_record.cache_outcome

    @property
    def report_reference(self) -> Optional[str]:
        return self.audit_record.report_reference

    def __getitem__(self, slot_name: str) -> Any:
        return self.payload[slot_name]


class _FingerprintLocks:
    """One mutex per in-flight fingerprint, dropped when no caller holds it.

    Also tracks entries whose creating miss has not been audited yet, so hits
    on a fresh entry are appended after the record that created it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}
        self._unaudited: dict[str, threading.Event] = {}

    @contextmanager
    def hold(self, fingerprint: str) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(fingerprint, [threading.Lock(), 0])
            slot[1] += 1
        lock = slot[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[fingerprint]

    def mark_unaudited(self, fingerprint: str) -> threading.Event:
        event = threading.Event()
        with self._guard:
            self._unaudited[fingerprint] = event
        return event

    def pending_audit(self, fingerprint: str) -> Optional[threading.Event]:
        with self._guard:
            return self._unaudited.get(fingerprint)

    def mark_audited(self, fingerprint: str, event: threading.Event) -> None:
        with self._guard:
            if self._unaudited.get(fingerprint) is event:
                del self._unaudited[fingerprint]
        event.set()


# Recorders sharing a cache directory share its fingerprint locks, so
# at-most-once execution holds across every workspace in the process.
_cache_locks: dict[str, _FingerprintLocks] = {}
_cache_locks_guard = threading.Lock()


def _locks_for(cache_dir: Path) -> _FingerprintLocks:
    key = str(cache_dir)
    with _cache_locks_guard:
        locks = _cache_locks.get(key)
        if locks is None:
            locks = _FingerprintLocks()
            _cache_locks[key] = locks
        return locks


def _summarize_arguments(args: Sequence[Any], kwargs: Mapping[str, Any], limit: int) -> str:
    short = reprlib.Repr()
    short.maxstring = 60
    short.maxother = 60
    parts = [short.repr(a) for a in args]
    parts.extend(f"{k}={short.repr(v)}" for k, v in kwargs.items())
    summary = ", ".join(parts)
    if len(summary) > limit:
        summary = summary[: limit - 3] + "..."
    return summary


class RunRecorder:
    """Orchestrates fingerprinting, caching, execution, reporting and auditing.

    Concurrent calls with the same fingerprint are serialized: the first
    executes the function and the rest observe a cache hit. Report rendering
    runs outside the per-fingerprint critical section; the ledger append
    re-enters it, so appends and purges of one fingerprint never interleave
    and hits on a fresh entry are recorded after the miss that created it.
    The locks are shared by every recorder on the same cache directory.

    Analysis functions that declare a ``vault`` parameter receive the
    recorder's DataVault (excluded from the fingerprint); a declared
    ``palette`` parameter receives the PaletteRegistry (included in the
    fingerprint by its contents).
    """

    def __init__(
        self,
        vault: DataVault,
        cache: CacheStore,
        audit_log: AuditLog,
        renderer: ReportRenderer,
        palette: Optional[PaletteRegistry] = None,
        argument_summary_length: int = 200,
    ):
        """Initialize the recorder.

        Args:
            vault: Data vault passed to functions that ask for it
            cache: Cache store keyed by fingerprint
            audit_log: Append-only ledger
            renderer: Report renderer
            palette: Optional palette registry passed to functions that ask for it
            argument_summary_length: Maximum length of recorded argument summaries
        """
        self.vault = vault
        self.cache = cache
        self.audit_log = audit_log
        self.renderer = renderer
        self.palette = palette
        self.argument_summary_length = argument_summary_length
        self._locks = _locks_for(cache.cache_dir)
        logger.info("RunRecorder initialized")

    def _capabilities_for(self, func: Callable[..., Any], kwargs: Mapping[str, Any]) -> dict[str, Any]:
        try:
            parameters = inspect.signature(func).parameters
        except (TypeError, ValueError):
            return {}
        available = {VAULT_PARAMETER: self.vault, PALETTE_PARAMETER: self.palette}
        return {
            name: capability
            for name, capability in available.items()
            if name in parameters and name not in kwargs and capability is not None
        }

    def run_recorded(
        self,
        func: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        note: str = "",
        identity: Optional[str] = None,
    ) -> RunResult:
        """Run ``func`` with memoization and an audit record.

        Args:
            func: Analysis function returning a mapping of slot name to value
            args: Positional arguments
            kwargs: Keyword arguments
            note: Annotation stored on this invocation's audit record
            identity: Optional explicit function identity token

        Returns:
            RunResult with the payload, audit record and cache entry

        Raises:
            NonDeterministicInputError: If the arguments cannot be fingerprinted
            RunExecutionError: If the function raised (original error as cause)
            UnsupportedResultTypeError: If the function returned an unsupported payload
            CacheStoreError, AuditLogError, ReportGenerationError: On storage failure
        """
        args = tuple(args)
        kwargs = dict(kwargs or {})
        states = [RunState.START]
        run_id = generate_run_id()
        function_name = getattr(func, "__qualname__", type(func).__qualname__)

        capabilities = self._capabilities_for(func, kwargs)
        fingerprint_kwargs = dict(kwargs)
        if PALETTE_PARAMETER in capabilities:
            fingerprint_kwargs[PALETTE_PARAMETER] = capabilities[PALETTE_PARAMETER]
        token = identity or callable_identity(func)
        fp = fingerprint_call(
            func,
            args,
            fingerprint_kwargs,
            identity=token,
            exclude=(VAULT_PARAMETER,) if VAULT_PARAMETER in capabilities else (),
        )
        states.append(RunState.FINGERPRINTED)
        logger.debug(f"[{run_id}] {function_name} fingerprinted as {fp[:12]}")

        created: Optional[threading.Event] = None
        awaiting: Optional[threading.Event] = None
        with self._locks.hold(fp):
            entry = self.cache.lookup(fp)
            if entry is not None:
                states.append(RunState.CACHE_HIT)
                outcome = CacheOutcome.HIT
                awaiting = self._locks.pending_audit(fp)
                try:
                    payload = entry.load_payload()
                except (OSError, ValueError) as e:
                    raise CacheStoreError(f"Failed to load cached payload for {fp}: {e}") from e
                logger.info(f"[{run_id}] Cache hit for {function_name} ({fp[:12]})")
            else:
                states.append(RunState.EXECUTING)
                logger.info(f"[{run_id}] Cache miss for {function_name} ({fp[:12]}), executing")
                payload, entry = self._execute_and_store(
                    func, args, kwargs, capabilities, fp, token, function_name, note, run_id, states
                )
                outcome = CacheOutcome.MISS_RECOMPUTED
                created = self._locks.mark_unaudited(fp)

        try:
            context = ReportContext(
                run_id=run_id,
                fingerprint=fp,
                cache_outcome=outcome.value,
                note=note,
                artifact_paths=entry.artifact_paths(),
            )
            report_reference = self.renderer.render(payload, entry.metadata, context)
            if awaiting is not None:
                awaiting.wait()
            # Serialized with purge: a record never claims an entry that is gone
            with self._locks.hold(fp):
                record = self.audit_log.append(
                    fp,
                    outcome,
                    note=note,
                    report_reference=report_reference,
                    function_name=function_name,
                    run_id=run_id,
                    artifact_missing=not self.cache.contains(fp),
                )
        finally:
            if created is not None:
                self._locks.mark_audited(fp, created)
        states.extend([RunState.AUDITED, RunState.REPORTED, RunState.DONE])
        logger.debug(f"[{run_id}] Completed as audit record #{record.sequence_number}")

        return RunResult(
            payload=payload,
            audit_record=record,
            cache_entry=entry,
            states=tuple(states),
        )

    def _execute_and_store(
        self,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        capabilities: dict[str, Any],
        fp: str,
        token: str,
        function_name: str,
        note: str,
        run_id: str,
        states: list[RunState],
    ) -> tuple[ResultPayload, CacheEntry]:
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs, **capabilities)
        except Exception as e:
            states.append(RunState.FAILED)
            logger.error(f"[{run_id}] {function_name} failed: {type(e).__name__}: {e}")
            raise RunExecutionError(
                f"Analysis '{function_name}' failed: {type(e).__name__}: {e}"
            ) from e
        duration = time.perf_counter() - started

        try:
            payload = normalize_payload(result)
        except Exception:
            states.append(RunState.FAILED)
            logger.error(f"[{run_id}] {function_name} returned an unsupported payload")
            raise

        metadata = ExecutionMetadata(
            function_name=function_name,
            function_identity=token,
            duration_seconds=duration,
            argument_summary=_summarize_arguments(args, kwargs, self.argument_summary_length),
            note=note,
            run_id=run_id,
            created_at=utc_now(),
        )
        entry = self.cache.store(fp, payload, metadata)
        states.append(RunState.STORED)
        return payload, entry

    def purge(self, fingerprint: str) -> bool:
        """Purge a cache entry and mark its audit records as missing their artifacts.

        Args:
            fingerprint: Fingerprint of the entry

        Returns:
            True if an entry was removed
        """
        with self._locks.hold(fingerprint):
            removed = self.cache.purge(fingerprint)
            if removed:
                self.audit_log.mark_purged(fingerprint)
        return removed

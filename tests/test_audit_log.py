"""Tests for the append-only audit ledger."""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from level1_fingerprint import fingerprint
from level4_audit import AuditFilter, AuditLog, AuditRecord, CacheOutcome

FP_A = fingerprint("mod:a", ())
FP_B = fingerprint("mod:b", ())


def test_sequence_numbers_start_at_one(audit_log):
    first = audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    second = audit_log.append(FP_A, CacheOutcome.HIT)
    assert (first.sequence_number, second.sequence_number) == (1, 2)
    assert audit_log.last_sequence_number == 2


def test_records_carry_all_fields(audit_log):
    record = audit_log.append(
        FP_A,
        CacheOutcome.HIT,
        note="rerun for review",
        report_reference="reports/run_1/report.md",
        function_name="summarize",
        run_id="run_1",
    )
    stored = audit_log.get(record.sequence_number)
    assert stored == record
    assert stored.timestamp.tzinfo is not None


def test_ledger_is_json_lines(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED, note="first")
    audit_log.append(FP_B, CacheOutcome.HIT)
    lines = audit_log.ledger_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["note"] == "first"
    assert json.loads(lines[1])["cache_outcome"] == "hit"
    assert "artifact_missing" not in json.loads(lines[0])


def test_concurrent_appends_are_dense_and_unique(audit_log):
    def worker():
        for _ in range(25):
            audit_log.append(FP_A, CacheOutcome.HIT)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    numbers = [r.sequence_number for r in audit_log.list()]
    assert numbers == list(range(1, 201))


def test_sequence_recovered_after_reopen(tmp_path):
    log = AuditLog(tmp_path / "audit", fsync=False)
    log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    log.append(FP_A, CacheOutcome.HIT)

    reopened = AuditLog(tmp_path / "audit", fsync=False)
    assert reopened.append(FP_B, CacheOutcome.HIT).sequence_number == 3


def test_logs_on_one_directory_share_the_sequence(tmp_path):
    first = AuditLog(tmp_path / "audit", fsync=False)
    second = AuditLog(tmp_path / "audit", fsync=False)

    def worker(log):
        for _ in range(20):
            log.append(FP_A, CacheOutcome.HIT)

    threads = [threading.Thread(target=worker, args=(log,)) for log in (first, second) * 2]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert [r.sequence_number for r in first.list()] == list(range(1, 81))
    assert second.last_sequence_number == 80


def test_artifact_missing_at_append_is_persisted(audit_log):
    audit_log.append(FP_A, CacheOutcome.HIT, artifact_missing=True)
    line = json.loads(audit_log.ledger_path.read_text(encoding="utf-8"))
    assert line["artifact_missing"] is True
    assert audit_log.get(1).artifact_missing is True


def test_torn_tail_is_fenced_off(tmp_path):
    log = AuditLog(tmp_path / "audit", fsync=False)
    log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    with open(log.ledger_path, "a", encoding="utf-8") as f:
        f.write('{"sequence_number": 2, "finger')

    reopened = AuditLog(tmp_path / "audit", fsync=False)
    record = reopened.append(FP_B, CacheOutcome.HIT)
    assert record.sequence_number == 2
    assert [r.fingerprint for r in reopened.list()] == [FP_A, FP_B]


def test_list_is_restartable(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    query = audit_log.list()
    assert len(list(query)) == 1
    audit_log.append(FP_A, CacheOutcome.HIT)
    assert len(list(query)) == 2


def test_iteration_ignores_records_appended_mid_scan(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    audit_log.append(FP_A, CacheOutcome.HIT)
    seen = []
    for record in audit_log.list():
        seen.append(record.sequence_number)
        if record.sequence_number == 1:
            audit_log.append(FP_B, CacheOutcome.HIT)
    assert seen == [1, 2]


def test_filter_by_fingerprint_and_function(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED, function_name="summarize")
    audit_log.append(FP_B, CacheOutcome.MISS_RECOMPUTED, function_name="plot")
    audit_log.append(FP_A, CacheOutcome.HIT, function_name="summarize")

    by_fp = audit_log.list(AuditFilter(fingerprint=FP_A))
    assert [r.sequence_number for r in by_fp] == [1, 3]
    by_name = audit_log.list(AuditFilter(function_name="plot"))
    assert [r.sequence_number for r in by_name] == [2]
    hits = audit_log.list(AuditFilter(cache_outcome=CacheOutcome.HIT))
    assert [r.sequence_number for r in hits] == [3]


def test_filter_by_sequence_range(audit_log):
    for _ in range(5):
        audit_log.append(FP_A, CacheOutcome.HIT)
    records = audit_log.list(AuditFilter(from_sequence=2, to_sequence=4))
    assert [r.sequence_number for r in records] == [2, 3, 4]


def test_filter_by_time_range(audit_log):
    before = datetime.now(timezone.utc) - timedelta(seconds=1)
    audit_log.append(FP_A, CacheOutcome.HIT)
    after = datetime.now(timezone.utc) + timedelta(seconds=1)

    assert len(list(audit_log.list(AuditFilter(since=before, until=after)))) == 1
    assert list(audit_log.list(AuditFilter(since=after))) == []
    # Naive bounds are treated as UTC
    naive_after = after.replace(tzinfo=None)
    assert len(list(audit_log.list(AuditFilter(until=naive_after)))) == 1


def test_get_missing_sequence(audit_log):
    assert audit_log.get(1) is None


def test_purge_marks_earlier_records_only(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    audit_log.append(FP_B, CacheOutcome.MISS_RECOMPUTED)
    audit_log.mark_purged(FP_A)
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)

    records = {r.sequence_number: r for r in audit_log.list()}
    assert records[1].artifact_missing is True
    assert records[2].artifact_missing is False
    assert records[3].artifact_missing is False


def test_purge_never_rewrites_ledger(audit_log):
    audit_log.append(FP_A, CacheOutcome.MISS_RECOMPUTED)
    before = audit_log.ledger_path.read_bytes()
    audit_log.mark_purged(FP_A)
    assert audit_log.ledger_path.read_bytes() == before


def test_sequence_numbers_must_be_positive():
    with pytest.raises(ValueError):
        AuditRecord(
            sequence_number=0,
            fingerprint=FP_A,
            cache_outcome=CacheOutcome.HIT,
            timestamp=datetime.now(timezone.utc),
        )

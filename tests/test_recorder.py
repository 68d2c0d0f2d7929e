"""Tests for the run recorder and workspace."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pandas as pd
import pytest

from core import RunExecutionError, RunState, Workspace
from level1_fingerprint import NonDeterministicInputError
from level3_cache import ImageArtifact, UnsupportedResultTypeError
from level4_audit import AuditFilter, CacheOutcome
from level5_reporting import PaletteRegistry, ReportGenerator

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x01" * 16


class CallCounter:
    def __init__(self):
        self.count = 0
        self._lock = threading.Lock()

    def hit(self):
        with self._lock:
            self.count += 1


calls = CallCounter()


@pytest.fixture(autouse=True)
def reset_calls():
    calls.count = 0
    yield


def summarize_cohort(handle, min_age=0):
    calls.hit()
    df = handle.filter("age", ">=", min_age).materialize()
    return {
        "by_site": df.groupby("site", as_index=False)["score"].mean(),
        "n_rows": len(df),
        "mean_score": float(df["score"].mean()),
        "headline": f"{len(df)} patients",
    }


def slow_count(handle):
    calls.hit()
    time.sleep(0.05)
    return {"n_rows": len(handle.materialize())}


def plot_scores(handle):
    calls.hit()
    return {"plot": ImageArtifact(PNG_BYTES, caption="Scores")}


def count_from_vault(asset_name, vault):
    calls.hit()
    return {"n_rows": len(vault.read(asset_name).materialize())}


def colored_headline(label, palette):
    calls.hit()
    return {"headline": f"{label} in {palette.color('primary')}"}


def failing_analysis(handle):
    calls.hit()
    raise ZeroDivisionError("boom")


def returns_list(handle):
    return [1, 2, 3]


def returns_unsupported_slot(handle):
    return {"model": object()}


def returns_mixed_table(handle):
    return {"rows": pd.DataFrame({"mixed": [1, "a", 2.5]})}


class GatedReports(ReportGenerator):
    """Holds the first render of one cache outcome until released."""

    def __init__(self, reports_dir, outcome):
        super().__init__(reports_dir)
        self.outcome = outcome
        self.entered = threading.Event()
        self.release = threading.Event()

    def render(self, payload, metadata, context):
        if context.cache_outcome == self.outcome and not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        return super().render(payload, metadata, context)


def make_scaler(factor):
    def scale(value):
        calls.hit()
        return {"scaled": value * factor}

    return scale


class Scaler:
    def __init__(self, factor):
        self.factor = factor

    def __call__(self, value):
        calls.hit()
        return {"scaled": value * self.factor}

    def apply(self, value):
        calls.hit()
        return {"scaled": value * self.factor}


# ============================================================================
# Hit / miss
# ============================================================================


def test_first_run_is_a_miss_second_is_a_hit(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    first = workspace.run_recorded(summarize_cohort, args=(handle,))
    second = workspace.run_recorded(summarize_cohort, args=(handle,))

    assert first.outcome is CacheOutcome.MISS_RECOMPUTED
    assert second.outcome is CacheOutcome.HIT
    assert first.fingerprint == second.fingerprint
    assert calls.count == 1
    assert second.payload == first.payload
    assert second["n_rows"] == 50

    records = list(workspace.list_audit())
    assert [r.sequence_number for r in records] == [1, 2]
    assert [r.cache_outcome for r in records] == [CacheOutcome.MISS_RECOMPUTED, CacheOutcome.HIT]
    assert {r.fingerprint for r in records} == {first.fingerprint}


def test_state_traces(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    miss = workspace.run_recorded(summarize_cohort, args=(handle,))
    hit = workspace.run_recorded(summarize_cohort, args=(handle,))

    assert miss.states == (
        RunState.START,
        RunState.FINGERPRINTED,
        RunState.EXECUTING,
        RunState.STORED,
        RunState.AUDITED,
        RunState.REPORTED,
        RunState.DONE,
    )
    assert RunState.CACHE_HIT in hit.states
    assert RunState.EXECUTING not in hit.states


def test_new_asset_version_is_a_miss(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    first = workspace.run_recorded(summarize_cohort, args=(workspace.read_asset("cohort"),))

    workspace.write_asset("cohort", cohort_df.assign(bmi=24.5))
    second = workspace.run_recorded(summarize_cohort, args=(workspace.read_asset("cohort"),))
    pinned = workspace.run_recorded(summarize_cohort, args=(workspace.read_asset("cohort", 1),))

    assert second.outcome is CacheOutcome.MISS_RECOMPUTED
    assert second.fingerprint != first.fingerprint
    assert pinned.outcome is CacheOutcome.HIT
    assert pinned.fingerprint == first.fingerprint


def test_different_arguments_are_different_entries(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    a = workspace.run_recorded(summarize_cohort, args=(handle,), kwargs={"min_age": 40})
    b = workspace.run_recorded(summarize_cohort, args=(handle, 40))
    c = workspace.run_recorded(summarize_cohort, args=(handle, 50))

    assert a.fingerprint == b.fingerprint
    assert b.outcome is CacheOutcome.HIT
    assert c.fingerprint != a.fingerprint


def test_note_is_recorded_per_invocation(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    workspace.run_recorded(summarize_cohort, args=(handle,), note="initial")
    workspace.run_recorded(summarize_cohort, args=(handle,), note="reviewer rerun")

    notes = [r.note for r in workspace.list_audit()]
    assert notes == ["initial", "reviewer rerun"]
    assert calls.count == 1


def test_each_invocation_gets_a_report(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    first = workspace.run_recorded(summarize_cohort, args=(handle,))
    second = workspace.run_recorded(summarize_cohort, args=(handle,))

    assert first.report_reference != second.report_reference
    for result in (first, second):
        report = Path(result.report_reference)
        assert report.is_file()
        assert result.fingerprint in report.read_text(encoding="utf-8")


def test_cached_images_are_linked_from_reports(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    result = workspace.run_recorded(plot_scores, args=(workspace.read_asset("cohort"),))

    artifact = result.cache_entry.artifact_paths()["plot"]
    report = Path(result.report_reference)
    assert artifact.read_bytes() == PNG_BYTES
    assert "![Scores](" in report.read_text(encoding="utf-8")
    assert not list(report.parent.glob("image_*"))


# ============================================================================
# Concurrency
# ============================================================================


def test_concurrent_identical_calls_execute_once(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: workspace.run_recorded(slow_count, args=(handle,)), range(8)))

    assert calls.count == 1
    outcomes = [r.outcome for r in results]
    assert outcomes.count(CacheOutcome.MISS_RECOMPUTED) == 1
    assert outcomes.count(CacheOutcome.HIT) == 7
    records = list(workspace.list_audit())
    assert [r.sequence_number for r in records] == list(range(1, 9))
    assert records[0].cache_outcome is CacheOutcome.MISS_RECOMPUTED


def test_concurrent_distinct_calls_do_not_block_each_other(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(
            pool.map(
                lambda age: workspace.run_recorded(summarize_cohort, args=(handle, age)),
                [20, 30, 40, 50],
            )
        )

    assert calls.count == 4
    assert len({r.fingerprint for r in results}) == 4


def test_workspaces_on_one_root_share_sequence_numbers(settings, cohort_df):
    first = Workspace(settings)
    second = Workspace(settings)
    first.write_asset("cohort", cohort_df)
    handle = first.read_asset("cohort")

    first.run_recorded(summarize_cohort, args=(handle,))
    second.run_recorded(slow_count, args=(handle,))

    assert [r.sequence_number for r in second.list_audit()] == [1, 2]
    assert [r.sequence_number for r in first.list_audit()] == [1, 2]


def test_workspaces_on_one_root_execute_once(settings, cohort_df):
    workspaces = [Workspace(settings) for _ in range(4)]
    workspaces[0].write_asset("cohort", cohort_df)
    handle = workspaces[0].read_asset("cohort")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda ws: ws.run_recorded(slow_count, args=(handle,)), workspaces))

    assert calls.count == 1
    assert [r.outcome for r in results].count(CacheOutcome.MISS_RECOMPUTED) == 1
    assert [r.sequence_number for r in workspaces[0].list_audit()] == [1, 2, 3, 4]


def test_hits_are_recorded_after_the_miss_that_created_the_entry(settings, cohort_df):
    reports = GatedReports(settings.resolved_reports_dir, "miss-recomputed")
    workspace = Workspace(settings, renderer=reports)
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    with ThreadPoolExecutor(max_workers=2) as pool:
        miss = pool.submit(workspace.run_recorded, summarize_cohort, (handle,))
        assert reports.entered.wait(timeout=5)
        hit = pool.submit(workspace.run_recorded, summarize_cohort, (handle,))
        time.sleep(0.1)
        assert list(workspace.list_audit()) == []
        reports.release.set()
        miss.result(timeout=5)
        hit.result(timeout=5)

    records = list(workspace.list_audit())
    assert [r.cache_outcome for r in records] == [CacheOutcome.MISS_RECOMPUTED, CacheOutcome.HIT]
    assert calls.count == 1


def test_purge_during_hit_report_marks_the_record(settings, cohort_df):
    reports = GatedReports(settings.resolved_reports_dir, "hit")
    workspace = Workspace(settings, renderer=reports)
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    first = workspace.run_recorded(summarize_cohort, args=(handle,))

    with ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(workspace.run_recorded, summarize_cohort, (handle,))
        assert reports.entered.wait(timeout=5)
        assert workspace.purge_cache_entry(first.fingerprint) is True
        reports.release.set()
        hit = pending.result(timeout=5)

    assert hit.outcome is CacheOutcome.HIT
    assert hit.audit_record.artifact_missing is True
    assert [r.artifact_missing for r in workspace.list_audit()] == [True, True]


# ============================================================================
# Failures
# ============================================================================


def test_failing_function_leaves_no_trace(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")

    with pytest.raises(RunExecutionError) as excinfo:
        workspace.run_recorded(failing_analysis, args=(handle,))

    assert isinstance(excinfo.value.__cause__, ZeroDivisionError)
    assert list(workspace.list_audit()) == []
    assert workspace.list_cache_entries() == []

    # A retry executes again
    with pytest.raises(RunExecutionError):
        workspace.run_recorded(failing_analysis, args=(handle,))
    assert calls.count == 2


@pytest.mark.parametrize("func", [returns_list, returns_unsupported_slot, returns_mixed_table])
def test_unsupported_result_is_rejected(workspace, cohort_df, func):
    workspace.write_asset("cohort", cohort_df)
    with pytest.raises(UnsupportedResultTypeError):
        workspace.run_recorded(func, args=(workspace.read_asset("cohort"),))
    assert list(workspace.list_audit()) == []
    assert workspace.list_cache_entries() == []


def test_non_deterministic_argument_is_rejected_before_execution(workspace):
    with pytest.raises(NonDeterministicInputError):
        workspace.run_recorded(slow_count, args=(object(),))
    assert calls.count == 0
    assert list(workspace.list_audit()) == []


# ============================================================================
# Captured state
# ============================================================================


@pytest.mark.parametrize(
    "first,second",
    [
        (make_scaler(2), make_scaler(3)),
        (Scaler(2), Scaler(3)),
        (Scaler(5).apply, Scaler(7).apply),
    ],
    ids=["closure", "callable-instance", "bound-method"],
)
def test_callables_with_different_state_are_not_confused(workspace, first, second):
    a = workspace.run_recorded(first, args=(10,))
    b = workspace.run_recorded(second, args=(10,))

    assert a.fingerprint != b.fingerprint
    assert b.outcome is CacheOutcome.MISS_RECOMPUTED
    assert a["scaled"] != b["scaled"]
    assert calls.count == 2


def test_callables_with_equal_state_share_the_cache(workspace):
    workspace.run_recorded(Scaler(4), args=(10,))
    again = workspace.run_recorded(Scaler(4), args=(10,))
    assert again.outcome is CacheOutcome.HIT
    assert calls.count == 1


# ============================================================================
# Capabilities
# ============================================================================


def test_vault_is_injected_and_not_fingerprinted(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    first = workspace.run_recorded(count_from_vault, args=("cohort",))
    second = workspace.run_recorded(count_from_vault, kwargs={"asset_name": "cohort"})

    assert first["n_rows"] == 50
    assert second.outcome is CacheOutcome.HIT
    assert calls.count == 1


def test_palette_contents_are_part_of_the_fingerprint(settings):
    first = Workspace(settings).run_recorded(colored_headline, args=("Scores",))

    themed = Workspace(
        settings,
        palette=PaletteRegistry(themes={"default": {"primary": "#000000"}}, include_default=False),
    )
    second = themed.run_recorded(colored_headline, args=("Scores",))

    assert first.fingerprint != second.fingerprint
    assert second["headline"] == "Scores in #000000"


def test_explicit_identity_overrides_derived_one(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    a = workspace.run_recorded(summarize_cohort, args=(handle,), identity="analysis:summary@1")
    b = workspace.run_recorded(summarize_cohort, args=(handle,))
    assert a.fingerprint != b.fingerprint
    assert a.cache_entry.metadata.function_identity == "analysis:summary@1"


# ============================================================================
# Purge
# ============================================================================


def test_purge_keeps_audit_history_and_forces_recompute(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    first = workspace.run_recorded(summarize_cohort, args=(handle,))

    assert workspace.purge_cache_entry(first.fingerprint) is True
    assert workspace.get_cache_entry(first.fingerprint) is None

    again = workspace.run_recorded(summarize_cohort, args=(handle,))
    assert again.outcome is CacheOutcome.MISS_RECOMPUTED
    assert calls.count == 2

    records = list(workspace.list_audit(AuditFilter(fingerprint=first.fingerprint)))
    assert [r.artifact_missing for r in records] == [True, False]


def test_purge_missing_entry(workspace):
    assert workspace.purge_cache_entry("0" * 64) is False


def test_list_audit_accepts_keyword_criteria(workspace, cohort_df):
    workspace.write_asset("cohort", cohort_df)
    handle = workspace.read_asset("cohort")
    workspace.run_recorded(summarize_cohort, args=(handle,))
    workspace.run_recorded(slow_count, args=(handle,))

    records = list(workspace.list_audit(function_name="slow_count"))
    assert [r.sequence_number for r in records] == [2]

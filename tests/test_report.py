"""Tests for report generation."""

from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import pytest

from level3_cache import ExecutionMetadata, ImageArtifact, normalize_payload
from level5_reporting import ReportContext, ReportGenerationError

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x02" * 16


@pytest.fixture
def metadata() -> ExecutionMetadata:
    return ExecutionMetadata(
        function_name="summarize_cohort",
        function_identity="analysis:summarize_cohort#0123",
        duration_seconds=0.42,
        argument_summary="LazyHandle(cohort v1)",
        note="initial run",
        run_id="run_a",
        created_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def payload():
    return normalize_payload(
        {
            "rows": pd.DataFrame({"x": range(20)}),
            "total": 190,
            "headline": "Twenty rows",
            "chart": ImageArtifact(PNG_BYTES, caption="Distribution"),
        }
    )


def _context(run_id: str = "run_a", **kwargs) -> ReportContext:
    return ReportContext(run_id=run_id, fingerprint="f" * 64, cache_outcome="miss-recomputed", **kwargs)


def test_render_writes_markdown_report(report_generator, payload, metadata):
    reference = report_generator.render(payload, metadata, _context(note="initial run"))
    report = Path(reference)

    assert report.is_file()
    assert report.parent.name == "run_a"
    content = report.read_text(encoding="utf-8")
    assert "# Run Report" in content
    assert "f" * 64 in content
    assert "summarize_cohort" in content
    assert "initial run" in content
    assert "### rows" in content
    assert "**190**" in content
    assert "Twenty rows" in content


def test_tables_are_truncated(report_generator, payload, metadata):
    content = Path(report_generator.render(payload, metadata, _context())).read_text(encoding="utf-8")
    assert "Showing 5 of 20 rows" in content


def test_images_without_cached_file_are_written_next_to_report(report_generator, payload, metadata):
    report = Path(report_generator.render(payload, metadata, _context()))
    images = list(report.parent.glob("image_*.png"))
    assert len(images) == 1
    assert images[0].read_bytes() == PNG_BYTES
    assert f"![Distribution]({images[0].name})" in report.read_text(encoding="utf-8")


def test_cached_images_are_linked_in_place(report_generator, payload, metadata, tmp_path):
    cached = tmp_path / "cache" / "ab" / "artifacts" / "3.png"
    cached.parent.mkdir(parents=True)
    cached.write_bytes(PNG_BYTES)

    report = Path(
        report_generator.render(payload, metadata, _context(artifact_paths={"chart": cached}))
    )
    assert not list(report.parent.glob("image_*"))
    assert "artifacts/3.png)" in report.read_text(encoding="utf-8")


def test_reports_are_never_overwritten(report_generator, payload, metadata):
    report_generator.render(payload, metadata, _context())
    with pytest.raises(ReportGenerationError):
        report_generator.render(payload, metadata, _context())


def test_hit_reports_show_original_note(report_generator, payload, metadata):
    context = ReportContext(
        run_id="run_b", fingerprint="f" * 64, cache_outcome="hit", note="second look"
    )
    content = Path(report_generator.render(payload, metadata, context)).read_text(encoding="utf-8")
    assert "second look" in content
    assert "Original Note:** initial run" in content


@pytest.mark.parametrize(
    "seconds,expected",
    [(0.25, "250ms"), (5.0, "5.0s"), (125.0, "2m 5s"), (3725.0, "1h 2m 5s")],
)
def test_format_duration(report_generator, seconds, expected):
    assert report_generator._format_duration(seconds) == expected

"""Report generator for recorded runs.

This module converts a run's result payload and execution metadata into a
human-readable Markdown report. It does not recompute anything: tables are
printed from the payload and images are linked from the cache entry's
artifact files rather than copied.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from level3_cache import ExecutionMetadata, ResultPayload, SlotKind
from utils import atomic_write_bytes, atomic_write_text, ensure_directory, get_logger, sanitize_path_component
from utils.constants import REPORT_FILENAME
from utils.logging import log_report_generated

logger = get_logger(__name__)


class ReportGenerationError(Exception):
    """Raised when report generation fails."""

    pass


@dataclass(frozen=True)
class ReportContext:
    """Per-invocation facts shown in a report alongside the payload."""

    run_id: str
    fingerprint: str
    cache_outcome: str
    note: str = ""
    artifact_paths: dict[str, Path] = field(default_factory=dict)


class ReportRenderer(Protocol):
    """Anything that turns a payload into a durable, resolvable report."""

    def render(
        self,
        payload: ResultPayload,
        metadata: ExecutionMetadata,
        context: ReportContext,
    ) -> str:
        """Render a report and return its reference (a path or URL)."""
        ...


class ReportGenerator:
    """Generates Markdown run reports.

    This class:
    - Writes one report per invocation under ``<reports_dir>/<run_id>/``
    - Prints table slots (truncated), scalars and text inline
    - Links image slots to their cached artifact files
    - Returns the report path as the report reference
    """

    def __init__(self, reports_dir: Path, max_rows: int = 50):
        """Initialize report generator.

        Args:
            reports_dir: Base directory for reports
            max_rows: Maximum rows printed per table slot

        Raises:
            ReportGenerationError: If the directory cannot be created
        """
        try:
            self.reports_dir = ensure_directory(Path(reports_dir))
        except OSError as e:
            raise ReportGenerationError(f"Cannot create reports directory {reports_dir}: {e}") from e
        self.max_rows = max_rows
        logger.debug(f"ReportGenerator initialized: {self.reports_dir}")

    def render(
        self,
        payload: ResultPayload,
        metadata: ExecutionMetadata,
        context: ReportContext,
    ) -> str:
        """Generate the report for one invocation.

        Args:
            payload: Result payload of the run
            metadata: Execution metadata of the cache entry
            context: Invocation facts (run id, outcome, note, artifact paths)

        Returns:
            Path of the written report, as a string

        Raises:
            ReportGenerationError: If the report cannot be written
        """
        run_dir = self.reports_dir / sanitize_path_component(context.run_id)
        report_path = run_dir / REPORT_FILENAME

        try:
            ensure_directory(run_dir)
            images = self._place_images(payload, context, run_dir)
            content = self._format_run_report(payload, metadata, context, images)
            atomic_write_text(content, report_path, overwrite=False)
        except OSError as e:
            raise ReportGenerationError(f"Failed to generate report for {context.run_id}: {e}") from e

        log_report_generated("run", str(report_path))
        return str(report_path)

    def _place_images(
        self, payload: ResultPayload, context: ReportContext, run_dir: Path
    ) -> dict[str, str]:
        """Resolve a link target for every image slot.

        Cached artifacts are linked in place; images without a cached file
        are written next to the report.
        """
        links = {}
        for index, slot in enumerate(payload.slots):
            if slot.kind is not SlotKind.IMAGE:
                continue
            cached = context.artifact_paths.get(slot.name)
            if cached is not None and Path(cached).exists():
                links[slot.name] = Path(os.path.relpath(cached, run_dir)).as_posix()
            else:
                filename = f"image_{index}.{slot.value.format}"
                atomic_write_bytes(slot.value.data, run_dir / filename, overwrite=True)
                links[slot.name] = filename
        return links

    def _format_run_report(
        self,
        payload: ResultPayload,
        metadata: ExecutionMetadata,
        context: ReportContext,
        images: dict[str, str],
    ) -> str:
        """Format the run report.

        Returns:
            Markdown-formatted report
        """
        outcome_icon = "✓" if context.cache_outcome == "hit" else "↻"

        report = f"""# Run Report

**Run ID:** `{context.run_id}`
**Function:** `{metadata.function_name}`
**Outcome:** {outcome_icon} {context.cache_outcome}

## Execution

- **Fingerprint:** `{context.fingerprint}`
- **Function Identity:** `{metadata.function_identity}`
- **Executed At:** {metadata.created_at.isoformat()}
- **Duration:** {self._format_duration(metadata.duration_seconds)}
- **Arguments:** `{metadata.argument_summary}`
"""
        if context.note:
            report += f"- **Note:** {context.note}\n"
        if metadata.note and metadata.note != context.note:
            report += f"- **Original Note:** {metadata.note}\n"

        report += "\n## Results\n\n"
        if not len(payload):
            report += "No result slots.\n"

        for slot in payload.slots:
            report += f"### {slot.name}\n\n"
            if slot.kind is SlotKind.TABLE:
                report += self._format_table(slot.value)
            elif slot.kind is SlotKind.IMAGE:
                caption = slot.value.caption or slot.name
                report += f"![{caption}]({images[slot.name]})\n\n"
            elif slot.kind is SlotKind.SCALAR:
                report += f"**{slot.value!r}**\n\n"
            else:
                report += f"{slot.value}\n\n"

        return report

    def _format_table(self, df) -> str:
        shown = df.head(self.max_rows)
        text = f"```\n{shown.to_string()}\n```\n\n"
        if len(df) > self.max_rows:
            text += f"*Showing {self.max_rows} of {len(df):,} rows.*\n\n"
        else:
            text += f"*{len(df):,} rows × {len(df.columns)} columns.*\n\n"
        return text

    def _format_duration(self, seconds: float) -> str:
        """Format a duration in seconds."""
        if seconds < 1:
            return f"{seconds * 1000:.0f}ms"
        total_seconds = int(seconds)
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        secs = total_seconds % 60

        if hours > 0:
            return f"{hours}h {minutes}m {secs}s"
        elif minutes > 0:
            return f"{minutes}m {secs}s"
        else:
            return f"{seconds:.1f}s"


"""Workspace facade.

A Workspace wires the vault, cache, audit log, report generator and palette
registry together from one RecorderSettings and exposes the public
operations of the reproducibility layer.
"""

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Optional, Union

from level2_vault import Asset, DataVault, LazyHandle
from level3_cache import CacheEntry, CacheStore
from level4_audit import AuditFilter, AuditLog, AuditQuery
from level5_reporting import PaletteRegistry, ReportGenerator, ReportRenderer
from settings import RecorderSettings, load_settings
from utils import get_logger

from .recorder import RunRecorder, RunResult

logger = get_logger(__name__)


class Workspace:
    """Single entry point for recording analyses against versioned data.

    Example:
        >>> workspace = Workspace.open("runledger_store")
        >>> workspace.write_asset("cohort", df)
        >>> result = workspace.run_recorded(summarize, args=(workspace.read_asset("cohort"),))
        >>> result.outcome
        <CacheOutcome.MISS_RECOMPUTED: 'miss-recomputed'>
    """

    def __init__(
        self,
        settings: Optional[RecorderSettings] = None,
        renderer: Optional[ReportRenderer] = None,
        palette: Optional[PaletteRegistry] = None,
    ):
        """Initialize the workspace and its stores.

        Args:
            settings: Workspace settings (defaults when omitted)
            renderer: Report renderer (Markdown ReportGenerator when omitted)
            palette: Palette registry offered to analyses (default themes when omitted)
        """
        self.settings = settings or RecorderSettings()
        self.vault = DataVault(
            self.settings.resolved_vault_dir, strict_schema=self.settings.strict_schema
        )
        self.cache = CacheStore(self.settings.resolved_cache_dir)
        self.audit_log = AuditLog(self.settings.resolved_audit_dir, fsync=self.settings.fsync)
        self.renderer = renderer or ReportGenerator(
            self.settings.resolved_reports_dir, max_rows=self.settings.report_max_rows
        )
        self.palette = palette or PaletteRegistry()
        self.recorder = RunRecorder(
            vault=self.vault,
            cache=self.cache,
            audit_log=self.audit_log,
            renderer=self.renderer,
            palette=self.palette,
            argument_summary_length=self.settings.argument_summary_length,
        )
        logger.info(f"Workspace opened at {self.settings.root_dir}")

    @classmethod
    def open(cls, root_dir: Union[str, Path], **overrides: Any) -> "Workspace":
        """Open a workspace rooted at ``root_dir`` with default settings."""
        return cls(RecorderSettings(root_dir=Path(root_dir), **overrides))

    @classmethod
    def from_config(cls, config_path: Optional[Union[str, Path]] = None) -> "Workspace":
        """Open a workspace from a YAML/JSON settings file (or the environment)."""
        return cls(load_settings(config_path))

    def write_asset(
        self,
        asset_name: str,
        tabular_data: Any,
        enforce_schema: Optional[bool] = None,
    ) -> Asset:
        """Store a new version of an asset. See DataVault.write."""
        return self.vault.write(asset_name, tabular_data, enforce_schema=enforce_schema)

    def read_asset(self, asset_name: str, version: Optional[int] = None) -> LazyHandle:
        """Get a lazy handle on an asset version (latest when omitted)."""
        return self.vault.read(asset_name, version)

    def list_assets(self) -> list[Asset]:
        return self.vault.list_assets()

    def run_recorded(
        self,
        func: Callable[..., Any],
        args: Sequence[Any] = (),
        kwargs: Optional[Mapping[str, Any]] = None,
        note: str = "",
        identity: Optional[str] = None,
    ) -> RunResult:
        """Run an analysis with memoization and auditing. See RunRecorder.run_recorded."""
        return self.recorder.run_recorded(func, args, kwargs, note=note, identity=identity)

    def list_audit(self, audit_filter: Optional[AuditFilter] = None, **criteria: Any) -> AuditQuery:
        """List audit records in sequence order.

        Args:
            audit_filter: Filter object; alternatively pass AuditFilter fields as keywords

        Returns:
            Restartable lazy sequence of records
        """
        if audit_filter is not None and criteria:
            raise ValueError("Pass either an AuditFilter or filter keywords, not both")
        if audit_filter is None and criteria:
            audit_filter = AuditFilter(**criteria)
        return self.audit_log.list(audit_filter)

    def get_cache_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        return self.cache.lookup(fingerprint)

    def list_cache_entries(self) -> list[CacheEntry]:
        return list(self.cache.list_entries())

    def purge_cache_entry(self, fingerprint: str) -> bool:
        """Purge a cache entry; its audit records are kept and flagged as missing artifacts."""
        return self.recorder.purge(fingerprint)

"""Settings schema definitions using Pydantic.

This module defines the immutable configuration contract for a runledger
workspace: where each store lives and how strictly it behaves.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.constants import (
    AUDIT_DIRNAME,
    CACHE_DIRNAME,
    DEFAULT_ROOT_DIR,
    REPORTS_DIRNAME,
    VAULT_DIRNAME,
)


class RecorderSettings(BaseModel):
    """Complete workspace settings.

    Every directory is optional and defaults to a subdirectory of ``root_dir``.
    Once validated, settings are read-only.
    """

    root_dir: Path = Field(
        default=Path(DEFAULT_ROOT_DIR), description="Workspace root directory"
    )
    vault_dir: Optional[Path] = Field(default=None, description="Asset store directory")
    cache_dir: Optional[Path] = Field(default=None, description="Cache store directory")
    audit_dir: Optional[Path] = Field(default=None, description="Audit ledger directory")
    reports_dir: Optional[Path] = Field(default=None, description="Rendered reports directory")
    strict_schema: bool = Field(
        default=False,
        description="Reject asset writes whose schema differs from the latest version",
    )
    report_max_rows: int = Field(
        default=50, ge=1, le=10000, description="Rows rendered per table slot in reports"
    )
    argument_summary_length: int = Field(
        default=200, ge=16, le=10000, description="Maximum length of the argument summary"
    )
    fsync: bool = Field(default=True, description="fsync the audit ledger on every append")

    @field_validator("root_dir")
    @classmethod
    def validate_root_dir(cls, v: Path) -> Path:
        """Validate root directory."""
        if not str(v).strip():
            raise ValueError("root_dir cannot be empty")
        if ".." in Path(v).parts:
            raise ValueError("root_dir cannot contain directory traversal")
        return v

    @property
    def resolved_vault_dir(self) -> Path:
        """Get asset store directory."""
        return self.vault_dir or self.root_dir / VAULT_DIRNAME

    @property
    def resolved_cache_dir(self) -> Path:
        """Get cache store directory."""
        return self.cache_dir or self.root_dir / CACHE_DIRNAME

    @property
    def resolved_audit_dir(self) -> Path:
        """Get audit ledger directory."""
        return self.audit_dir or self.root_dir / AUDIT_DIRNAME

    @property
    def resolved_reports_dir(self) -> Path:
        """Get rendered reports directory."""
        return self.reports_dir or self.root_dir / REPORTS_DIRNAME

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

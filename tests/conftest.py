"""Shared pytest fixtures for runledger tests."""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from core import Workspace
from level2_vault import DataVault
from level3_cache import CacheStore
from level4_audit import AuditLog
from level5_reporting import ReportGenerator
from settings import RecorderSettings

# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def cohort_df() -> pd.DataFrame:
    """Create a 50-row cohort table with four columns."""
    rng = np.random.default_rng(42)
    return pd.DataFrame(
        {
            "patient_id": np.arange(1, 51, dtype="int64"),
            "age": rng.integers(20, 80, size=50).astype("int64"),
            "site": ["north", "south", "east", "west", "central"] * 10,
            "score": rng.normal(50.0, 10.0, size=50),
        }
    )


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> RecorderSettings:
    """Create settings rooted in a temporary directory (fsync off for speed)."""
    return RecorderSettings(root_dir=tmp_path / "store", fsync=False)


@pytest.fixture
def workspace(settings: RecorderSettings) -> Workspace:
    """Create a workspace in a temporary directory."""
    return Workspace(settings)


@pytest.fixture
def vault(tmp_path: Path) -> DataVault:
    return DataVault(tmp_path / "vault")


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(tmp_path / "audit", fsync=False)


@pytest.fixture
def report_generator(tmp_path: Path) -> ReportGenerator:
    return ReportGenerator(tmp_path / "reports", max_rows=5)

"""Logging setup and durable-write event helpers shared by every component."""

import logging
import sys
from typing import Optional


def setup_logging(verbose: bool = False, level: Optional[int] = None) -> None:
    """Install a single stdout handler on the root logger.

    Repeated calls replace the previous handler rather than stacking.

    Args:
        verbose: DEBUG when True, INFO otherwise
        level: Explicit level; takes precedence over verbose
    """
    log_level = level if level is not None else (logging.DEBUG if verbose else logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass ``__name__``."""
    return logging.getLogger(name)


_events = logging.getLogger("runledger.events")


def log_asset_written(name: str, version: int, location: str) -> None:
    """Log a durable asset write.

    Args:
        name: Asset name
        version: Newly assigned version
        location: Storage location of the version file
    """
    _events.info(f"Asset written: {name} v{version} -> {location}")


def log_cache_stored(fingerprint: str, slot_count: int) -> None:
    """Log a new cache entry.

    Args:
        fingerprint: Fingerprint the entry is keyed by
        slot_count: Number of result slots persisted
    """
    _events.info(f"Cache entry stored: {fingerprint[:12]} ({slot_count} slots)")


def log_audit_appended(sequence_number: int, fingerprint: str, outcome: str) -> None:
    """Log an audit ledger append.

    Args:
        sequence_number: Sequence number assigned to the record
        fingerprint: Fingerprint referenced by the record
        outcome: Cache outcome of the invocation
    """
    _events.info(f"Audit record #{sequence_number}: {fingerprint[:12]} ({outcome})")


def log_report_generated(report_type: str, report_path: str) -> None:
    """Log report generation.

    Args:
        report_type: Type of report (run, vault, etc.)
        report_path: Path where report was generated
    """
    _events.info(f"Report generated: {report_type} -> {report_path}")

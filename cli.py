"""Command-line interface for runledger.

This module provides a read-mostly viewer over a runledger workspace: list
and describe assets, query the audit ledger, inspect and purge cache entries.
Analyses themselves are recorded from Python through core.Workspace.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from core import Workspace
from level2_vault import AssetNotFoundError, VaultStorageError
from level3_cache import CacheStoreError
from level4_audit import AuditFilter, AuditLogError
from settings import RecorderSettings, SettingsValidationError, load_settings
from utils import (
    APP_NAME,
    APP_VERSION,
    EXIT_INVALID_ARGUMENTS,
    EXIT_NOT_FOUND,
    EXIT_RUNTIME_ERROR,
    EXIT_SUCCESS,
    get_logger,
    setup_logging,
)

logger = get_logger(__name__)


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="runledger - inspect versioned assets, cached results and the audit ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument(
        "--config", type=str, default=None, help="Path to a YAML or JSON settings file"
    )
    parser.add_argument(
        "--root", type=str, default=None, help="Workspace root directory (overrides settings)"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute", required=True)

    # 'vault' commands
    vault_parser = subparsers.add_parser("vault", help="Inspect stored assets")
    vault_sub = vault_parser.add_subparsers(dest="action", required=True)
    vault_sub.add_parser("list", help="List assets and their latest versions")
    show_parser = vault_sub.add_parser("show", help="Describe an asset version")
    show_parser.add_argument("name", help="Asset name")
    show_parser.add_argument("--version", type=int, default=None, dest="asset_version")

    # 'audit' commands
    audit_parser = subparsers.add_parser("audit", help="Query the audit ledger")
    audit_sub = audit_parser.add_subparsers(dest="action", required=True)
    list_parser = audit_sub.add_parser("list", help="List audit records in sequence order")
    list_parser.add_argument("--fingerprint", default=None)
    list_parser.add_argument("--function", default=None, dest="function_name")
    list_parser.add_argument("--since", type=_parse_timestamp, default=None)
    list_parser.add_argument("--until", type=_parse_timestamp, default=None)
    list_parser.add_argument("--from-seq", type=int, default=None, dest="from_sequence")
    list_parser.add_argument("--to-seq", type=int, default=None, dest="to_sequence")
    list_parser.add_argument("--json", action="store_true", help="Print JSON Lines")

    # 'cache' commands
    cache_parser = subparsers.add_parser("cache", help="Inspect or purge cache entries")
    cache_sub = cache_parser.add_subparsers(dest="action", required=True)
    cache_show = cache_sub.add_parser("show", help="Show a cache entry")
    cache_show.add_argument("fingerprint")
    cache_purge = cache_sub.add_parser("purge", help="Purge a cache entry")
    cache_purge.add_argument("fingerprint")

    return parser


def resolve_settings(config: Optional[str], root: Optional[str]) -> RecorderSettings:
    """Load settings and apply the ``--root`` override."""
    settings = load_settings(config)
    if root is not None:
        settings = RecorderSettings(**{**settings.model_dump(), "root_dir": Path(root)})
    return settings


def _cmd_vault(workspace: Workspace, args: argparse.Namespace) -> int:
    if args.action == "list":
        assets = workspace.list_assets()
        if not assets:
            print("No assets stored.")
        for asset in assets:
            print(f"{asset.name}  v{asset.version}  {asset.row_count:,} rows  {len(asset.schema)} columns")
        return EXIT_SUCCESS

    asset = workspace.vault.describe(args.name, args.asset_version)
    print(f"Asset:    {asset.name}")
    print(f"Version:  {asset.version}")
    print(f"Rows:     {asset.row_count:,}")
    print(f"Created:  {asset.created_at.isoformat()}")
    print(f"Hash:     {asset.content_hash}")
    print(f"Location: {asset.storage_location}")
    print("Schema:")
    for column in asset.schema:
        print(f"  - {column.name}: {column.semantic_type}")
    return EXIT_SUCCESS


def _cmd_audit(workspace: Workspace, args: argparse.Namespace) -> int:
    audit_filter = AuditFilter(
        from_sequence=args.from_sequence,
        to_sequence=args.to_sequence,
        since=args.since,
        until=args.until,
        fingerprint=args.fingerprint,
        function_name=args.function_name,
    )
    count = 0
    for record in workspace.list_audit(audit_filter):
        count += 1
        if args.json:
            print(json.dumps(record.to_dict()))
            continue
        missing = "  [artifacts purged]" if record.artifact_missing else ""
        note = f"  \"{record.note}\"" if record.note else ""
        print(
            f"#{record.sequence_number:<6} {record.timestamp.isoformat()}  "
            f"{record.cache_outcome.value:<16} {record.fingerprint[:12]}  "
            f"{record.function_name}{note}{missing}"
        )
    if count == 0 and not args.json:
        print("No matching audit records.")
    return EXIT_SUCCESS


def _cmd_cache(workspace: Workspace, args: argparse.Namespace) -> int:
    if args.action == "show":
        entry = workspace.get_cache_entry(args.fingerprint)
        if entry is None:
            print(f"✗ No cache entry for {args.fingerprint}", file=sys.stderr)
            return EXIT_NOT_FOUND
        print(json.dumps(entry.to_dict(), indent=2, default=str))
        return EXIT_SUCCESS

    if workspace.purge_cache_entry(args.fingerprint):
        print(f"✓ Purged cache entry {args.fingerprint}")
        return EXIT_SUCCESS
    print(f"✗ No cache entry for {args.fingerprint}", file=sys.stderr)
    return EXIT_NOT_FOUND


COMMANDS = {
    "vault": _cmd_vault,
    "audit": _cmd_audit,
    "cache": _cmd_cache,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Argument list (defaults to sys.argv)

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = build_parser().parse_args(argv)
    # Keep stdout clean for listings unless verbose
    setup_logging(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        settings = resolve_settings(args.config, args.root)
        workspace = Workspace(settings)
        return COMMANDS[args.command](workspace, args)
    except SettingsValidationError as e:
        print(f"✗ Invalid settings:\n{e}", file=sys.stderr)
        return EXIT_INVALID_ARGUMENTS
    except ValueError as e:
        print(f"✗ Invalid argument: {e}", file=sys.stderr)
        return EXIT_INVALID_ARGUMENTS
    except AssetNotFoundError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except (VaultStorageError, CacheStoreError, AuditLogError, OSError) as e:
        print(f"✗ Storage error: {e}", file=sys.stderr)
        logger.debug("Storage error details", exc_info=True)
        return EXIT_RUNTIME_ERROR
    except KeyboardInterrupt:
        print("\n✗ Interrupted by user", file=sys.stderr)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":
    sys.exit(main())

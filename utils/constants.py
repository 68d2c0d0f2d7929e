"""Constants for runledger.

This module defines shared constants used across the application.
"""

# Exit codes (matching CLI exit codes)
EXIT_SUCCESS = 0
EXIT_INVALID_ARGUMENTS = 1
EXIT_NOT_FOUND = 2
EXIT_RUNTIME_ERROR = 3

# Application metadata
APP_NAME = "runledger"
APP_VERSION = "1.0.0"

# Default values
DEFAULT_ROOT_DIR = "runledger_store"
ROOT_DIR_ENV_VAR = "RUNLEDGER_ROOT"

# Storage layout (subdirectories of the root directory)
VAULT_DIRNAME = "vault"
CACHE_DIRNAME = "cache"
AUDIT_DIRNAME = "audit"
REPORTS_DIRNAME = "reports"

# Filenames
LEDGER_FILENAME = "ledger.jsonl"
TOMBSTONE_FILENAME = "purged.jsonl"
ENTRY_FILENAME = "entry.json"
REPORT_FILENAME = "report.md"

# File extensions
EXT_PARQUET = ".parquet"

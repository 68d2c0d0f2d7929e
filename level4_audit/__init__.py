"""Level 4: Audit Log.

This module keeps the append-only, time-ordered ledger of every recorded
invocation. Records reference cache entries by fingerprint only.
"""

from .ledger import AuditLog, AuditLogError, AuditQuery
from .schemas import AuditFilter, AuditRecord, CacheOutcome, PurgeTombstone

__all__ = [
    "AuditFilter",
    "AuditLog",
    "AuditLogError",
    "AuditQuery",
    "AuditRecord",
    "CacheOutcome",
    "PurgeTombstone",
]

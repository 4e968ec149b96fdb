"""Database-backed services for the storage reconciler.

`StorageAuditService` lives in `storage_reconciler.services.storage_audit`; it
is not re-exported here because it depends on the reconciliation pipeline,
which itself records usage through this package.
"""

from storage_reconciler.services.ownership_store import SqlOwnershipStore
from storage_reconciler.services.usage_ledger import (
    LedgerDrift,
    UsageEvent,
    UsageLedger,
    UsageSummary,
    fold_usage,
    ledger_drift,
    usage_by_category,
)

__all__ = [
    "LedgerDrift",
    "SqlOwnershipStore",
    "UsageEvent",
    "UsageLedger",
    "UsageSummary",
    "fold_usage",
    "ledger_drift",
    "usage_by_category",
]

"""Reconciliation pipeline: scan, index, reconcile, execute, report.

Submodules:
- scanner: blob inventory listing into BlobRecords
- ownership: unioned ownership index over all relational sources
- reconciler: pure three-way classification
- executor: dry-run / execute GC over discrepancies
- report: rule-based audit summaries
"""

from storage_reconciler.reconciliation.ownership import (
    OwnershipIndex,
    OwnershipIndexBuilder,
    OwnershipRecord,
    OwnershipStore,
    ReferenceRow,
    UnparsableReference,
)
from storage_reconciler.reconciliation.reconciler import Discrepancy, ReconciliationResult, reconcile
from storage_reconciler.reconciliation.scanner import BlobInventoryScanner, BlobRecord
from storage_reconciler.reconciliation.schemas import (
    ActionResult,
    CleanupOutcome,
    ExecutionResult,
    ReconciliationReport,
)
from storage_reconciler.reconciliation.executor import GCExecutor
from storage_reconciler.reconciliation.report import summarize

__all__ = [
    "ActionResult",
    "BlobInventoryScanner",
    "BlobRecord",
    "CleanupOutcome",
    "Discrepancy",
    "ExecutionResult",
    "GCExecutor",
    "OwnershipIndex",
    "OwnershipIndexBuilder",
    "OwnershipRecord",
    "OwnershipStore",
    "ReconciliationReport",
    "ReconciliationResult",
    "ReferenceRow",
    "UnparsableReference",
    "reconcile",
    "summarize",
]

"""Storage audit service: the entry point for audits and cleanups.

Runs Scan -> Build Index -> Reconcile -> Report, and for cleanups hands the
classification to the GC executor and reports the state it leaves behind.
Scanning and index building run concurrently; both must succeed or the run
fails.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from sqlalchemy.ext.asyncio import AsyncSession

from storage_reconciler.clients.blob_store import BlobStore
from storage_reconciler.exceptions import StorageReconcilerError
from storage_reconciler.models.enums import ExecutionMode, RecordKind
from storage_reconciler.reconciliation.executor import (
    DELETE_BLOB,
    PURGE_RECORDS,
    REPOINT_REFERENCE,
    GCExecutor,
)
from storage_reconciler.reconciliation.ownership import OwnershipIndex, OwnershipIndexBuilder, OwnershipStore
from storage_reconciler.reconciliation.reconciler import ReconciliationResult, reconcile
from storage_reconciler.reconciliation.report import summarize
from storage_reconciler.reconciliation.scanner import BlobInventoryScanner, BlobRecord, ScanDiagnostics
from storage_reconciler.reconciliation.schemas import CleanupOutcome, ExecutionResult, ReconciliationReport
from storage_reconciler.services.ownership_store import SqlOwnershipStore
from storage_reconciler.services.usage_ledger import (
    UsageLedger,
    fold_usage,
    ledger_drift,
    usage_by_category,
)
from storage_reconciler.utils.keys import is_within

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditScope:
    """Key prefixes a run covers. No prefixes means the whole store."""

    prefixes: tuple[str, ...] = ()

    @classmethod
    def from_prefixes(cls, prefixes: Iterable[str]) -> AuditScope:
        cleaned = tuple(p.lstrip("/") for p in prefixes if p.strip("/"))
        return cls(prefixes=cleaned)

    @classmethod
    def for_owner(cls, owner_id: str) -> AuditScope:
        """Everything stored under one user's per-owner categories."""
        return cls(prefixes=(f"photo/{owner_id}/", f"profile/{owner_id}/"))

    @property
    def is_global(self) -> bool:
        return not self.prefixes


@dataclass
class _Run:
    result: ReconciliationResult
    diagnostics: ScanDiagnostics
    index: OwnershipIndex
    """Whole index, not just the scope: owner rows may reference keys elsewhere."""


class StorageAuditService:
    """Audits and cleans up storage for the portfolio platform.

    Usage:
        async with async_session_factory() as session:
            service = StorageAuditService(session, build_blob_store(settings))
            report = await service.run_audit()
            outcome = await service.run_cleanup(mode=ExecutionMode.EXECUTE)
    """

    def __init__(
        self,
        session: AsyncSession,
        blob_store: BlobStore,
        *,
        ownership_store: OwnershipStore | None = None,
        ledger: UsageLedger | None = None,
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Initialize the service with a database session and blob store."""
        self._session = session
        self._blob_store = blob_store
        self._ownership_store = ownership_store or SqlOwnershipStore(session)
        self._ledger = ledger or UsageLedger(session)
        self._concurrency = concurrency
        self._cancel_event = cancel_event

    async def run_audit(self, scope: AuditScope | None = None) -> ReconciliationReport:
        """Read-only audit of the given scope.

        Raises:
            ScanFailure: The blob store could not be listed.
            IndexFailure: An ownership source could not be read.
        """
        scope = scope or AuditScope()
        run = await self._reconcile(scope)
        return await self._report(scope, run)

    async def run_cleanup(
        self,
        scope: AuditScope | None = None,
        mode: ExecutionMode = ExecutionMode.DRY_RUN,
    ) -> CleanupOutcome:
        """Audit the scope, then act on its discrepancies.

        Mutates stores only when `mode` is EXECUTE. An executed cleanup is
        followed by a fresh audit; a dry run reports the state its succeeded
        actions would leave behind.

        Returns:
            CleanupOutcome with the reports before and after, and the
            execution result.
        """
        scope = scope or AuditScope()
        run = await self._reconcile(scope)
        report = await self._report(scope, run)

        executor = GCExecutor(
            self._blob_store,
            self._ownership_store,
            self._ledger,
            concurrency=self._concurrency,
            cancel_event=self._cancel_event,
        )
        execution = await executor.apply(run.result.discrepancies, mode=mode)

        after: ReconciliationReport | None
        if mode == ExecutionMode.DRY_RUN:
            after = await self._report(scope, _project(scope, run, execution))
        else:
            try:
                after = await self._report(scope, await self._reconcile(scope))
            except StorageReconcilerError as exc:
                # The cleanup itself already happened; keep its result
                logger.warning("Post-cleanup audit failed: %s", exc)
                after = None
        return CleanupOutcome(report=report, result=execution, after=after)

    async def _reconcile(self, scope: AuditScope) -> _Run:
        scanner = BlobInventoryScanner(self._blob_store)
        builder = OwnershipIndexBuilder(self._ownership_store)

        scan = asyncio.ensure_future(scanner.collect(scope.prefixes))
        build = asyncio.ensure_future(builder.build_index())
        try:
            blobs, index = await asyncio.gather(scan, build)
        except BaseException:
            # One side failed: stop the other before the error propagates
            for task in (scan, build):
                task.cancel()
            await asyncio.gather(scan, build, return_exceptions=True)
            raise

        # Listing is by raw prefix; the scope applies to canonical keys
        blobs = [blob for blob in blobs if is_within(blob.key, scope.prefixes)]
        result = _classify(scope, blobs, index)
        totals = result.totals()
        logger.info(
            "Reconciled scope %s: %s",
            list(scope.prefixes) or "all",
            ", ".join(f"{kind.value}={bucket.count}" for kind, bucket in totals.items()),
        )
        return _Run(result=result, diagnostics=scanner.diagnostics, index=index)

    async def _report(self, scope: AuditScope, run: _Run) -> ReconciliationReport:
        events = [e for e in await self._ledger.events() if is_within(e.key, scope.prefixes)]
        existing = run.result.blob_keys
        return summarize(
            run.result,
            fold_usage(events, existing_keys=existing),
            scope=scope.prefixes,
            scan_diagnostics=run.diagnostics,
            external_references=run.index.external_references,
            drift=ledger_drift(events, existing),
            usage_by_category=usage_by_category(events, existing_keys=existing),
        )


def _classify(scope: AuditScope, blobs: list[BlobRecord], index: OwnershipIndex) -> ReconciliationResult:
    return reconcile(blobs, index.restrict(scope.prefixes), record_index=index)


def _project(scope: AuditScope, run: _Run, execution: ExecutionResult) -> _Run:
    """The run as it would look once every succeeded action is applied."""
    deleted: set[str] = set()
    purged: set[tuple[RecordKind, str]] = set()
    repointed: dict[tuple[str, tuple[RecordKind, str]], str] = {}
    for item in execution.succeeded:
        refs = [(r.record_kind, r.record_id) for r in item.records]
        if item.action == DELETE_BLOB:
            deleted.add(item.key)
        elif item.action == REPOINT_REFERENCE and item.target_key is not None:
            repointed.update({(item.key, ref): item.target_key for ref in refs})
        elif item.action == PURGE_RECORDS:
            purged.update(refs)

    blobs = [blob for d in run.result for blob in d.blobs if d.key not in deleted]
    records = [
        replace(owner, referenced_key=repointed.get((key, owner.record_ref), key))
        for key in run.index
        for owner in run.index.owners(key)
        if owner.record_ref not in purged
    ]
    index = run.index.with_records(records)
    return _Run(result=_classify(scope, blobs, index), diagnostics=run.diagnostics, index=index)

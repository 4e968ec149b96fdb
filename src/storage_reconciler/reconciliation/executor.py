"""GC executor: acts on classified discrepancies.

Orphaned blobs are deleted. Phantom references are re-pointed when exactly one
orphan matches them and purged otherwise. Every action re-verifies against
the live stores first. Anything indeterminate is skipped.
Nothing is deleted because its size is unknown or because a check failed.

Usage:
    executor = GCExecutor(blob_store, SqlOwnershipStore(session), UsageLedger(session))
    preview = await executor.apply(result.discrepancies)  # dry run
    applied = await executor.apply(result.discrepancies, mode=ExecutionMode.EXECUTE)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Protocol

from storage_reconciler.clients.blob_store import BlobStore
from storage_reconciler.config import settings
from storage_reconciler.exceptions import DeleteFailure, VerificationAmbiguous
from storage_reconciler.models.enums import (
    ActionOutcome,
    DiscrepancyKind,
    ExecutionMode,
    SkipReason,
    UsageOperation,
)
from storage_reconciler.reconciliation.ownership import OwnershipStore
from storage_reconciler.reconciliation.reconciler import Discrepancy
from storage_reconciler.reconciliation.schemas import ActionResult, ExecutionResult, RecordRef
from storage_reconciler.services.usage_ledger import UsageEvent

logger = logging.getLogger(__name__)

DELETE_BLOB = "delete_blob"
PURGE_RECORDS = "purge_records"
REPOINT_REFERENCE = "repoint_reference"

# Reason recorded on ledger events written by the executor
CLEANUP_REASON = "orphan_cleanup"


class UsageRecorder(Protocol):
    """Ledger operations the executor needs."""

    async def append(self, event: UsageEvent) -> None:
        ...

    async def last_upload(self, key: str) -> UsageEvent | None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GCExecutor:
    """Applies discrepancies to the blob store and relational store.

    Blob-store work for different items runs concurrently up to `concurrency`.
    Relational and ledger calls share one lock, so they never overlap on the
    shared session and each phantom purge is a single transaction.

    Setting `cancel_event` stops new items from starting; items already in
    progress finish and the rest are reported as skipped (CANCELLED).
    """

    def __init__(
        self,
        blob_store: BlobStore,
        ownership_store: OwnershipStore,
        ledger: UsageRecorder,
        *,
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._blob_store = blob_store
        self._ownership = ownership_store
        self._ledger = ledger
        self._concurrency = max(1, concurrency or settings.gc_concurrency)
        self._cancel_event = cancel_event or asyncio.Event()
        self._clock = clock
        self._relational_lock = asyncio.Lock()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request cooperative cancellation of the current pass."""
        self._cancel_event.set()

    async def apply(
        self,
        discrepancies: Iterable[Discrepancy],
        mode: ExecutionMode = ExecutionMode.DRY_RUN,
    ) -> ExecutionResult:
        """Act on orphaned and phantom discrepancies.

        MATCHED discrepancies are ignored. Dry runs perform every read-only
        check and report what would happen, issuing no mutating call.

        Args:
            discrepancies: Output of `reconcile()`.
            mode: DRY_RUN (default) or EXECUTE. Mutation requires EXECUTE.

        Returns:
            ExecutionResult with one ActionResult per actionable discrepancy,
            in input order within each bucket.
        """
        actionable = [d for d in discrepancies if d.kind != DiscrepancyKind.MATCHED]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(discrepancy: Discrepancy) -> ActionResult:
            async with semaphore:
                if self._cancel_event.is_set():
                    return _skipped(discrepancy, SkipReason.CANCELLED)
                return await self._apply_one(discrepancy, mode)

        outcomes = await asyncio.gather(*(run(d) for d in actionable))

        result = ExecutionResult(mode=mode, cancelled=self._cancel_event.is_set())
        for outcome in outcomes:
            if outcome.outcome == ActionOutcome.SUCCEEDED:
                result.succeeded.append(outcome)
            elif outcome.outcome == ActionOutcome.FAILED:
                result.failed.append(outcome)
            else:
                result.skipped.append(outcome)

        logger.info(
            "GC %s: %d succeeded, %d failed, %d skipped%s",
            mode.value,
            len(result.succeeded),
            len(result.failed),
            len(result.skipped),
            " (cancelled)" if result.cancelled else "",
        )
        return result

    async def _apply_one(self, discrepancy: Discrepancy, mode: ExecutionMode) -> ActionResult:
        try:
            if discrepancy.kind == DiscrepancyKind.ORPHANED:
                return await self._delete_orphan(discrepancy, mode)
            return await self._purge_phantom(discrepancy, mode)
        except Exception as exc:
            # A bug in one item must not abort the batch
            logger.exception("Unexpected error handling %s", discrepancy.key)
            return _failed(discrepancy, str(exc))

    async def _delete_orphan(self, discrepancy: Discrepancy, mode: ExecutionMode) -> ActionResult:
        key = discrepancy.key

        if not discrepancy.size_known:
            logger.debug("Skipping %s: size unknown", key)
            return _skipped(discrepancy, SkipReason.SIZE_UNKNOWN)

        if discrepancy.possible_references:
            logger.debug("Skipping %s: mentioned by unparsable references", key)
            return _skipped(
                discrepancy,
                SkipReason.VERIFICATION_AMBIGUOUS,
                error=f"{len(discrepancy.possible_references)} unparsable reference(s) mention this file",
            )

        if discrepancy.claimed_by:
            logger.debug("Skipping %s: may be the file %s meant", key, ", ".join(discrepancy.claimed_by))
            return _skipped(discrepancy, SkipReason.REPOINT_CANDIDATE)

        store_keys = [blob.store_key for blob in discrepancy.blobs]

        try:
            present = [await self._blob_store.exists(store_key) for store_key in store_keys]
        except Exception as exc:
            logger.warning("Existence check failed for %s: %s", key, exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=str(exc))
        if not any(present):
            return _skipped(discrepancy, SkipReason.ALREADY_ABSENT)

        try:
            async with self._relational_lock:
                referenced = await self._ownership.is_referenced(key)
        except Exception as exc:
            logger.warning("Reference re-check failed for %s: %s", key, exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=str(exc))
        if referenced:
            logger.info("Skipping %s: referenced since the scan", key)
            return _skipped(discrepancy, SkipReason.NOW_REFERENCED)

        if mode == ExecutionMode.DRY_RUN:
            return _succeeded(discrepancy)

        try:
            for store_key in store_keys:
                await self._blob_store.delete(store_key)
        except Exception as exc:
            failure = DeleteFailure(key, str(exc))
            logger.warning("%s", failure)
            return _failed(discrepancy, failure.cause)

        try:
            remaining = [s for s in store_keys if await self._blob_store.exists(s)]
        except Exception as exc:
            ambiguous = VerificationAmbiguous(key, f"post-delete check failed: {exc}")
            logger.warning("%s", ambiguous)
            return _failed(discrepancy, ambiguous.cause)
        if remaining:
            failure = DeleteFailure(key, f"still present after delete: {', '.join(remaining)}")
            logger.warning("%s", failure)
            return _failed(discrepancy, failure.cause)

        recorded = await self._record_delete(discrepancy)
        logger.debug("Deleted orphan %s (%s bytes)", key, discrepancy.size_bytes)
        return _succeeded(discrepancy, ledger_recorded=recorded)

    async def _record_delete(self, discrepancy: Discrepancy) -> bool:
        """Append the DELETE usage event. Failures are logged, not raised."""
        try:
            async with self._relational_lock:
                upload = await self._ledger.last_upload(discrepancy.key)
                owner_id = (
                    upload.owner_id
                    if upload is not None
                    else discrepancy.owner_id or settings.system_owner_id
                )
                await self._ledger.append(
                    UsageEvent(
                        owner_id=owner_id,
                        key=discrepancy.key,
                        size_bytes=discrepancy.size_bytes,
                        operation=UsageOperation.DELETE,
                        timestamp=self._clock(),
                        category=discrepancy.category,
                        reason=CLEANUP_REASON,
                    )
                )
        except Exception as exc:
            logger.warning("Deleted %s but could not record ledger event: %s", discrepancy.key, exc)
            return False
        return True

    async def _purge_phantom(self, discrepancy: Discrepancy, mode: ExecutionMode) -> ActionResult:
        key = discrepancy.key

        if discrepancy.live_records:
            logger.debug("Skipping %s: records still reference existing blobs", key)
            return _skipped(discrepancy, SkipReason.PARTIALLY_VALID)

        try:
            exists = await self._blob_store.exists(key)
            # Siblings outside a scoped scan were never listed
            live_siblings = [s for s in discrepancy.sibling_keys if await self._blob_store.exists(s)]
        except Exception as exc:
            logger.warning("Existence check failed for %s: %s", key, exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=str(exc))
        if exists:
            logger.info("Skipping %s: blob exists after all", key)
            return _skipped(discrepancy, SkipReason.BLOB_REAPPEARED)
        if live_siblings:
            logger.info("Skipping %s: records also reference existing %s", key, ", ".join(live_siblings))
            return _skipped(discrepancy, SkipReason.PARTIALLY_VALID)

        if len(discrepancy.repoint_candidates) > 1:
            logger.debug("Skipping %s: %d re-point candidates", key, len(discrepancy.repoint_candidates))
            return _skipped(
                discrepancy,
                SkipReason.REPOINT_AMBIGUOUS,
                error=f"candidates: {', '.join(discrepancy.repoint_candidates)}",
            )
        if discrepancy.repoint_target is not None:
            return await self._repoint(discrepancy, discrepancy.repoint_target, mode)

        if mode == ExecutionMode.DRY_RUN:
            return _succeeded(discrepancy)

        try:
            async with self._relational_lock:
                purged = await self._ownership.purge(list(discrepancy.owners))
        except VerificationAmbiguous as exc:
            logger.warning("%s", exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=exc.cause)
        except Exception as exc:
            failure = DeleteFailure(key, str(exc))
            logger.warning("%s", failure)
            return _failed(discrepancy, failure.cause)

        logger.debug("Purged %d record(s) referencing missing %s", purged, key)
        return _succeeded(discrepancy)

    async def _repoint(self, discrepancy: Discrepancy, target: str, mode: ExecutionMode) -> ActionResult:
        """Rewrite a broken reference to the one orphan that matches it."""
        key = discrepancy.key

        try:
            target_exists = await self._blob_store.exists(target)
        except Exception as exc:
            logger.warning("Existence check failed for %s: %s", target, exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=str(exc))
        if not target_exists:
            return _skipped(
                discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=f"{target} vanished since the scan"
            )

        if mode == ExecutionMode.DRY_RUN:
            return _succeeded(discrepancy)

        try:
            async with self._relational_lock:
                updated = await self._ownership.repoint(list(discrepancy.owners), target)
        except VerificationAmbiguous as exc:
            logger.warning("%s", exc)
            return _skipped(discrepancy, SkipReason.VERIFICATION_AMBIGUOUS, error=exc.cause)
        except Exception as exc:
            logger.warning("Could not re-point %s to %s: %s", key, target, exc)
            return _failed(discrepancy, str(exc))

        logger.info("Re-pointed %d reference(s) from missing %s to %s", updated, key, target)
        return _succeeded(discrepancy)


def _action(discrepancy: Discrepancy) -> str:
    if discrepancy.kind == DiscrepancyKind.ORPHANED:
        return DELETE_BLOB
    if discrepancy.repoint_target is not None:
        return REPOINT_REFERENCE
    return PURGE_RECORDS


def _base(discrepancy: Discrepancy) -> dict[str, object]:
    return {
        "key": discrepancy.key,
        "kind": discrepancy.kind,
        "action": _action(discrepancy),
        "size_bytes": discrepancy.size_bytes,
        "store_keys": [blob.store_key for blob in discrepancy.blobs],
        "records": [
            RecordRef(record_kind=owner.record_kind, record_id=owner.record_id)
            for owner in discrepancy.owners
        ],
        "target_key": discrepancy.repoint_target,
    }


def _succeeded(discrepancy: Discrepancy, *, ledger_recorded: bool | None = None) -> ActionResult:
    return ActionResult(
        **_base(discrepancy),  # pyright: ignore[reportArgumentType]
        outcome=ActionOutcome.SUCCEEDED,
        ledger_recorded=ledger_recorded,
    )


def _failed(discrepancy: Discrepancy, error: str) -> ActionResult:
    return ActionResult(
        **_base(discrepancy),  # pyright: ignore[reportArgumentType]
        outcome=ActionOutcome.FAILED,
        error=error,
    )


def _skipped(
    discrepancy: Discrepancy,
    reason: SkipReason,
    *,
    error: str | None = None,
) -> ActionResult:
    return ActionResult(
        **_base(discrepancy),  # pyright: ignore[reportArgumentType]
        outcome=ActionOutcome.SKIPPED,
        reason=reason,
        error=error,
    )

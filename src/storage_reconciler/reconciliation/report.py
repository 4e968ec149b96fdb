"""Audit reporter: turns a reconciliation result into a report.

Pure aggregation. Recommendations come from fixed rules over the totals so
the same inputs always produce the same report text.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from storage_reconciler.config import settings
from storage_reconciler.models.enums import DiscrepancyKind
from storage_reconciler.reconciliation.reconciler import Discrepancy, KindTotals, ReconciliationResult
from storage_reconciler.reconciliation.scanner import ScanDiagnostics
from storage_reconciler.reconciliation.schemas import (
    Diagnostics,
    DiscrepancySample,
    KindSummary,
    RecordRef,
    ReconciliationReport,
    UnparsableSample,
    UsageSnapshot,
)
from storage_reconciler.services.usage_ledger import LedgerDrift, UsageSummary
from storage_reconciler.utils.units import format_bytes

CLEAN_MESSAGE = "Storage is clean: database and blob store agree"


def summarize(
    reconciliation: ReconciliationResult,
    usage: UsageSummary | None = None,
    *,
    scope: Sequence[str] = (),
    scan_diagnostics: ScanDiagnostics | None = None,
    external_references: int = 0,
    drift: LedgerDrift | None = None,
    usage_by_category: Mapping[str, UsageSummary] | None = None,
    sample_size: int | None = None,
    generated_at: datetime | None = None,
) -> ReconciliationReport:
    """Build a ReconciliationReport.

    Args:
        reconciliation: Output of `reconcile()`.
        usage: Ledger usage at report time, if available.
        scope: Key prefixes the run covered.
        scan_diagnostics: Scanner findings (unparsable blob keys, pages).
        external_references: References that point outside the blob store.
        drift: Ledger vs inventory disagreement.
        usage_by_category: Ledger usage per category.
        sample_size: Max discrepancies in the sample. Defaults to settings.
        generated_at: Report timestamp. Defaults to now (UTC).

    Returns:
        ReconciliationReport with totals, a bounded sample and recommendations.
    """
    limit = settings.report_sample_size if sample_size is None else max(0, sample_size)
    totals = reconciliation.totals()

    summaries = {
        kind: _kind_summary(totals[kind], reconciliation.totals_by_category(kind))
        for kind in DiscrepancyKind
    }

    actionable = reconciliation.orphaned + reconciliation.phantom
    samples = [_sample(d) for d in actionable[:limit]]

    diagnostics = Diagnostics(
        unparsable_references=[
            UnparsableSample(
                record_kind=ref.record_kind,
                record_id=ref.record_id,
                owner_id=ref.owner_id,
                reference=ref.reference,
                reason=ref.reason,
            )
            for ref in reconciliation.unparsable[:limit]
        ],
        unparsable_blob_keys=list(scan_diagnostics.unparsable_blob_keys[:limit]) if scan_diagnostics else [],
        external_references=external_references,
        pages_scanned=scan_diagnostics.pages if scan_diagnostics else 0,
    )

    snapshot: UsageSnapshot | None = None
    if usage is not None:
        snapshot = UsageSnapshot(
            total_bytes=usage.total_bytes,
            total_files=usage.total_files,
            unknown_size_files=usage.unknown_size_files,
            by_category={
                category: summary.total_bytes
                for category, summary in sorted((usage_by_category or {}).items())
            },
            ledger_only_keys=len(drift.ledger_only) if drift else 0,
            unledgered_keys=len(drift.unledgered) if drift else 0,
        )

    return ReconciliationReport(
        generated_at=generated_at or datetime.now(timezone.utc),
        scope=list(scope),
        totals=summaries,
        samples=samples,
        sample_truncated=len(actionable) > limit,
        usage=snapshot,
        diagnostics=diagnostics,
        recommendations=recommendations(
            reconciliation,
            unparsable_blob_keys=len(scan_diagnostics.unparsable_blob_keys) if scan_diagnostics else 0,
            drift=drift,
        ),
    )


def recommendations(
    reconciliation: ReconciliationResult,
    *,
    unparsable_blob_keys: int = 0,
    drift: LedgerDrift | None = None,
) -> list[str]:
    """Rule-derived advice. Each rule fires only when its count is positive."""
    totals = reconciliation.totals()
    orphaned = totals[DiscrepancyKind.ORPHANED]
    phantom = totals[DiscrepancyKind.PHANTOM]
    advice: list[str] = []

    if orphaned.count > 0:
        measured = orphaned.count - orphaned.unknown_size_count
        if measured > 0:
            advice.append(
                f"{measured} orphaned file(s) found, totaling {format_bytes(orphaned.known_bytes)}: "
                "safe to delete after review"
            )
        if orphaned.unknown_size_count > 0:
            advice.append(
                f"{orphaned.unknown_size_count} orphaned file(s) have unknown size and will be "
                f"skipped by cleanup (estimated {format_bytes(orphaned.estimated_unknown_bytes)})"
            )

    mentioned = sum(1 for d in reconciliation.orphaned if d.possible_references)
    if mentioned > 0:
        advice.append(
            f"{mentioned} orphaned file(s) are mentioned by unparsable references and "
            "will not be deleted automatically"
        )

    if phantom.count > 0:
        advice.append(
            f"{phantom.count} missing file(s) are still referenced by {phantom.record_count} "
            "database record(s): re-upload or purge the references"
        )
    partially_valid = sum(1 for d in reconciliation.phantom if d.live_records)
    if partially_valid > 0:
        advice.append(
            f"{partially_valid} missing file(s) belong to records that still reference other "
            "existing files and will be skipped by cleanup"
        )

    if reconciliation.unparsable:
        advice.append(
            f"{len(reconciliation.unparsable)} database reference(s) could not be parsed: fix them manually"
        )
    if unparsable_blob_keys > 0:
        advice.append(
            f"{unparsable_blob_keys} blob key(s) could not be parsed and are excluded from cleanup"
        )

    if drift is not None and (drift.ledger_only or drift.unledgered):
        advice.append(
            f"Usage ledger disagrees with the blob store ({len(drift.ledger_only)} recorded but "
            f"missing, {len(drift.unledgered)} never recorded): usage figures may be inaccurate"
        )

    return advice or [CLEAN_MESSAGE]


def _kind_summary(totals: KindTotals, by_category: Mapping[str, KindTotals]) -> KindSummary:
    return KindSummary(
        count=totals.count,
        known_bytes=totals.known_bytes,
        unknown_size_count=totals.unknown_size_count,
        record_count=totals.record_count,
        estimated_unknown_bytes=totals.estimated_unknown_bytes,
        by_category={category: bucket.count for category, bucket in sorted(by_category.items())},
    )


def _sample(discrepancy: Discrepancy) -> DiscrepancySample:
    return DiscrepancySample(
        kind=discrepancy.kind,
        key=discrepancy.key,
        size_bytes=discrepancy.size_bytes,
        owner_id=discrepancy.owner_id,
        store_keys=[blob.store_key for blob in discrepancy.blobs],
        records=[
            RecordRef(record_kind=owner.record_kind, record_id=owner.record_id)
            for owner in discrepancy.owners
        ],
    )

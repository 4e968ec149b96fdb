"""Tests for the audit reporter."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from storage_reconciler.models.enums import DiscrepancyKind, RecordKind
from storage_reconciler.reconciliation.ownership import OwnershipIndex, UnparsableReference
from storage_reconciler.reconciliation.reconciler import reconcile
from storage_reconciler.reconciliation.report import CLEAN_MESSAGE, recommendations, summarize
from storage_reconciler.reconciliation.scanner import ScanDiagnostics
from storage_reconciler.services.usage_ledger import LedgerDrift, UsageSummary

if TYPE_CHECKING:
    from conftest import MakeBlob, MakeOwner

GENERATED_AT = datetime(2025, 6, 1, tzinfo=timezone.utc)


class TestRecommendations:
    """Tests for rule-derived recommendations."""

    def test_clean_run(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        result = reconcile([make_blob("photo/1/a.jpg")], OwnershipIndex.from_records([make_owner("photo/1/a.jpg")]))

        assert recommendations(result) == [CLEAN_MESSAGE]

    def test_orphans_report_measured_bytes(self, make_blob: MakeBlob) -> None:
        result = reconcile(
            [make_blob("photo/1/a.jpg", 512), make_blob("photo/1/b.jpg", 512)],
            OwnershipIndex.from_records([]),
        )

        assert recommendations(result) == [
            "2 orphaned file(s) found, totaling 1.00 KB: safe to delete after review"
        ]

    def test_unknown_sizes_get_their_own_line(self, make_blob: MakeBlob) -> None:
        result = reconcile([make_blob("photo/1/a.jpg", None)], OwnershipIndex.from_records([]))

        [advice] = recommendations(result)

        assert advice.startswith("1 orphaned file(s) have unknown size")
        assert "estimated 1.43 MB" in advice

    def test_phantoms_count_records(self, make_owner: MakeOwner) -> None:
        index = OwnershipIndex.from_records(
            [
                make_owner("photo/1/gone.jpg", record_id="1"),
                make_owner("photo/1/gone.jpg", record_kind=RecordKind.HERO_IMAGE, record_id="h"),
            ]
        )

        advice = recommendations(reconcile([], index))

        assert advice == [
            "1 missing file(s) are still referenced by 2 database record(s): "
            "re-upload or purge the references"
        ]

    def test_diagnostics_and_drift(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        index = OwnershipIndex.from_records([make_owner("photo/1/a.jpg")])
        index.unparsable.append(
            UnparsableReference(
                record_kind=RecordKind.PHOTO,
                record_id="9",
                owner_id="1",
                reference="photo%252F1%252Fx.jpg",
                reason="double encoded",
            )
        )
        result = reconcile([make_blob("photo/1/a.jpg")], index)

        advice = recommendations(
            result,
            unparsable_blob_keys=3,
            drift=LedgerDrift(ledger_only=["photo/1/old.jpg"], unledgered=[]),
        )

        assert advice[0] == "1 database reference(s) could not be parsed: fix them manually"
        assert advice[1] == "3 blob key(s) could not be parsed and are excluded from cleanup"
        assert advice[2].startswith("Usage ledger disagrees with the blob store (1 recorded but missing")
        assert CLEAN_MESSAGE not in advice

    def test_partially_valid_phantoms_are_called_out(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        index = OwnershipIndex.from_records(
            [make_owner("photo/1/a.jpg"), make_owner("photo/1/a-legacy.jpg")]
        )

        advice = recommendations(reconcile([make_blob("photo/1/a.jpg")], index))

        assert any("still reference other existing files" in line for line in advice)


class TestSummarize:
    """Tests for summarize."""

    def test_totals_cover_every_kind(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        index = OwnershipIndex.from_records([make_owner("photo/1/a.jpg"), make_owner("photo/1/gone.jpg")])
        result = reconcile([make_blob("photo/1/a.jpg", 10), make_blob("photo/1/b.jpg", 20)], index)

        report = summarize(result, generated_at=GENERATED_AT)

        assert set(report.totals) == set(DiscrepancyKind)
        assert report.totals[DiscrepancyKind.ORPHANED].known_bytes == 20
        assert report.totals[DiscrepancyKind.PHANTOM].record_count == 1
        assert report.totals[DiscrepancyKind.MATCHED].count == 1
        assert report.generated_at == GENERATED_AT
        assert not report.is_clean

    def test_estimates_never_folded_into_known_bytes(self, make_blob: MakeBlob) -> None:
        result = reconcile(
            [make_blob("photo/1/a.jpg", 100), make_blob("photo/1/b.jpg", None)],
            OwnershipIndex.from_records([]),
        )

        orphaned = summarize(result).totals[DiscrepancyKind.ORPHANED]

        assert orphaned.known_bytes == 100
        assert orphaned.unknown_size_count == 1
        assert orphaned.estimated_unknown_bytes > 0

    def test_sample_is_bounded(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        blobs = [make_blob(f"photo/1/{i:02d}.jpg") for i in range(8)]
        index = OwnershipIndex.from_records([make_owner("photo/1/gone.jpg")])

        report = summarize(reconcile(blobs, index), sample_size=5)

        assert len(report.samples) == 5
        assert report.sample_truncated
        assert all(s.kind == DiscrepancyKind.ORPHANED for s in report.samples)
        assert report.totals[DiscrepancyKind.ORPHANED].count == 8

    def test_sample_lists_orphans_then_phantoms(self, make_blob: MakeBlob, make_owner: MakeOwner) -> None:
        index = OwnershipIndex.from_records([make_owner("photo/1/a-gone.jpg", record_id="7")])

        report = summarize(reconcile([make_blob("photo/1/z.jpg")], index))

        assert [(s.kind, s.key) for s in report.samples] == [
            (DiscrepancyKind.ORPHANED, "photo/1/z.jpg"),
            (DiscrepancyKind.PHANTOM, "photo/1/a-gone.jpg"),
        ]
        assert report.samples[1].records[0].record_id == "7"
        assert not report.sample_truncated

    def test_usage_and_diagnostics(self, make_blob: MakeBlob) -> None:
        result = reconcile([make_blob("photo/1/a.jpg", 5)], OwnershipIndex.from_records([]))

        report = summarize(
            result,
            UsageSummary(total_bytes=300, total_files=2),
            scope=["photo/1/"],
            scan_diagnostics=ScanDiagnostics(unparsable_blob_keys=["../etc"], pages=3),
            external_references=4,
            drift=LedgerDrift(ledger_only=[], unledgered=["photo/1/a.jpg"]),
            usage_by_category={"photo": UsageSummary(total_bytes=300, total_files=2)},
        )

        assert report.scope == ["photo/1/"]
        assert report.usage is not None
        assert report.usage.total_bytes == 300
        assert report.usage.by_category == {"photo": 300}
        assert report.usage.unledgered_keys == 1
        assert report.diagnostics.pages_scanned == 3
        assert report.diagnostics.unparsable_blob_keys == ["../etc"]
        assert report.diagnostics.external_references == 4

    def test_clean_report_serializes(self) -> None:
        report = summarize(reconcile([], OwnershipIndex.from_records([])), generated_at=GENERATED_AT)

        payload = report.model_dump(mode="json")

        assert report.is_clean
        assert payload["recommendations"] == [CLEAN_MESSAGE]
        assert payload["usage"] is None
        assert payload["totals"]["orphaned"]["count"] == 0

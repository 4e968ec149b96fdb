"""Tests for the usage ledger fold and its database backing."""

from __future__ import annotations

import dataclasses
import itertools
from datetime import datetime
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storage_reconciler.models.enums import UsageOperation
from storage_reconciler.models.storage_usage import StorageUsageEvent
from storage_reconciler.services.usage_ledger import (
    UsageLedger,
    fold_usage,
    ledger_drift,
    usage_by_category,
)

if TYPE_CHECKING:
    from conftest import MakeEvent

UPLOAD = UsageOperation.UPLOAD
DELETE = UsageOperation.DELETE


class TestFoldUsage:
    """Tests for fold_usage."""

    def test_uploads_and_deletes(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, 100, minutes=0),
            make_event("photo/1/b.jpg", UPLOAD, 50, minutes=1),
            make_event("photo/1/a.jpg", DELETE, 100, minutes=2),
        ]

        summary = fold_usage(events)

        assert (summary.total_bytes, summary.total_files) == (50, 1)

    def test_double_upload_is_not_double_counted(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, 100, minutes=0),
            make_event("photo/1/a.jpg", UPLOAD, 120, minutes=1),
        ]

        summary = fold_usage(events)

        assert (summary.total_bytes, summary.total_files) == (120, 1)

    def test_delete_before_upload(self, make_event: MakeEvent) -> None:
        """An out-of-order delete is applied in timestamp order, not arrival order."""
        events = [
            make_event("photo/1/a.jpg", DELETE, 100, minutes=5),
            make_event("photo/1/a.jpg", UPLOAD, 100, minutes=1),
        ]

        summary = fold_usage(events)

        assert (summary.total_bytes, summary.total_files) == (0, 0)

    def test_delete_of_unknown_key_is_ignored(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", DELETE, 999, minutes=0),
            make_event("photo/1/a.jpg", DELETE, 999, minutes=1),
            make_event("photo/1/b.jpg", UPLOAD, 10, minutes=2),
        ]

        summary = fold_usage(events)

        assert (summary.total_bytes, summary.total_files) == (10, 1)

    def test_unknown_sizes_counted_separately(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, None),
            make_event("photo/1/b.jpg", UPLOAD, 10, minutes=1),
        ]

        summary = fold_usage(events)

        assert summary.total_files == 2
        assert summary.total_bytes == 10
        assert summary.unknown_size_files == 1

    def test_owner_and_existing_key_filters(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, 10, owner_id="1"),
            make_event("photo/2/b.jpg", UPLOAD, 20, owner_id="2", minutes=1),
            make_event("photo/2/c.jpg", UPLOAD, 30, owner_id="2", minutes=2),
        ]

        assert fold_usage(events, owner_id="2").total_bytes == 50
        assert fold_usage(events, existing_keys={"photo/2/c.jpg"}).total_bytes == 30

    def test_equal_timestamps_keep_insertion_order(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, 10, minutes=0),
            make_event("photo/1/a.jpg", DELETE, 10, minutes=0),
        ]

        assert fold_usage(events).total_files == 0

    def test_naive_and_aware_timestamps_mix(self, make_event: MakeEvent) -> None:
        aware = make_event("photo/1/a.jpg", UPLOAD, 10, minutes=0)
        naive_delete = make_event("photo/1/a.jpg", DELETE, 10, minutes=1)
        naive_delete = dataclasses.replace(naive_delete, timestamp=naive_delete.timestamp.replace(tzinfo=None))

        assert fold_usage([aware, naive_delete]).total_files == 0

    def test_never_negative_in_any_order(self, make_event: MakeEvent) -> None:
        events = [
            make_event("photo/1/a.jpg", UPLOAD, 100, minutes=0),
            make_event("photo/1/a.jpg", DELETE, 100, minutes=1),
            make_event("photo/1/a.jpg", DELETE, 100, minutes=2),
            make_event("photo/1/b.jpg", DELETE, 70, minutes=3),
            make_event("photo/1/b.jpg", UPLOAD, 70, minutes=4),
        ]

        for ordering in itertools.permutations(events):
            summary = fold_usage(ordering)
            assert summary.total_bytes >= 0
            assert summary.total_files >= 0
            assert (summary.total_bytes, summary.total_files) == (70, 1)


def test_usage_by_category(make_event: MakeEvent) -> None:
    events = [
        make_event("photo/1/a.jpg", UPLOAD, 100),
        make_event("global/hero-images/h.jpg", UPLOAD, 40, minutes=1),
        make_event("profile/1/me.png", UPLOAD, 5, minutes=2),
        make_event("photo/1/a.jpg", DELETE, 100, minutes=3),
        make_event("photo/1/b.jpg", UPLOAD, 60, minutes=4),
    ]

    breakdown = usage_by_category(events)

    assert {category: s.total_bytes for category, s in breakdown.items()} == {
        "photo": 60,
        "hero": 40,
        "profile": 5,
    }


def test_usage_by_category_restricted_to_existing_keys(make_event: MakeEvent) -> None:
    events = [
        make_event("photo/1/a.jpg", UPLOAD, 100),
        make_event("global/hero-images/h.jpg", UPLOAD, 40, minutes=1),
    ]

    breakdown = usage_by_category(events, existing_keys={"photo/1/a.jpg"})

    assert {category: s.total_bytes for category, s in breakdown.items()} == {"photo": 100}


def test_ledger_drift(make_event: MakeEvent) -> None:
    events = [
        make_event("photo/1/a.jpg", UPLOAD, 1),
        make_event("photo/1/gone.jpg", UPLOAD, 1, minutes=1),
    ]

    drift = ledger_drift(events, {"photo/1/a.jpg", "photo/1/stray.jpg"})

    assert drift.ledger_only == ["photo/1/gone.jpg"]
    assert drift.unledgered == ["photo/1/stray.jpg"]


class TestUsageLedger:
    """Tests for the database-backed UsageLedger."""

    async def test_append_and_current_usage(self, db_session: AsyncSession, make_event: MakeEvent) -> None:
        ledger = UsageLedger(db_session)

        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, 100, owner_id="1"))
        await ledger.append(make_event("photo/2/b.jpg", UPLOAD, 40, owner_id="2", minutes=1))
        await ledger.append(make_event("photo/1/a.jpg", DELETE, 100, owner_id="1", minutes=2))

        total = await ledger.current_usage()
        owner_two = await ledger.current_usage("2")

        assert (total.total_bytes, total.total_files) == (40, 1)
        assert owner_two.total_bytes == 40

    async def test_rows_are_append_only(self, db_session: AsyncSession, make_event: MakeEvent) -> None:
        ledger = UsageLedger(db_session)

        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, 10))
        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, 20, minutes=1))

        count = await db_session.scalar(select(func.count()).select_from(StorageUsageEvent))
        events = await ledger.events()

        assert count == 2
        assert [e.size_bytes for e in events] == [10, 20]
        assert events[0].category == "photo"

    async def test_unknown_size_is_stored_as_null(self, db_session: AsyncSession, make_event: MakeEvent) -> None:
        ledger = UsageLedger(db_session)

        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, None))

        [event] = await ledger.events()
        assert event.size_bytes is None
        assert (await ledger.current_usage()).unknown_size_files == 1

    async def test_last_upload(self, db_session: AsyncSession, make_event: MakeEvent) -> None:
        ledger = UsageLedger(db_session)

        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, 10, owner_id="first"))
        await ledger.append(make_event("photo/1/a.jpg", UPLOAD, 10, owner_id="second", minutes=1))
        await ledger.append(make_event("photo/1/a.jpg", DELETE, 10, owner_id="admin", minutes=2))

        upload = await ledger.last_upload("photo/1/a.jpg")

        assert upload is not None
        assert upload.owner_id == "second"
        assert await ledger.last_upload("photo/1/none.jpg") is None

    async def test_timestamps_round_trip(self, db_session: AsyncSession, make_event: MakeEvent) -> None:
        ledger = UsageLedger(db_session)
        event = make_event("photo/1/a.jpg", UPLOAD, 10, minutes=30)

        await ledger.append(event)

        [stored] = await ledger.events()
        assert isinstance(stored.timestamp, datetime)
        assert stored.timestamp.replace(tzinfo=None) == event.timestamp.replace(tzinfo=None)


@pytest.mark.parametrize("size", [0, 1, 10**12])
def test_large_and_zero_sizes(make_event: MakeEvent, size: int) -> None:
    assert fold_usage([make_event("photo/1/a.jpg", UPLOAD, size)]).total_bytes == size

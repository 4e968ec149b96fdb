"""Shared pytest fixtures for storage reconciler tests."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storage_reconciler.clients.blob_store import ListingPage
from storage_reconciler.models import Base, DiscrepancyKind, RecordKind, UsageOperation
from storage_reconciler.reconciliation.ownership import OwnershipRecord, ReferenceRow
from storage_reconciler.reconciliation.reconciler import Discrepancy
from storage_reconciler.reconciliation.scanner import BlobRecord
from storage_reconciler.services.usage_ledger import UsageEvent, last_upload

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# In-memory SQLite by default; point TEST_DATABASE_URL at Postgres to run against it
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

MUTATING_BLOB_CALLS = frozenset({"write", "delete"})


class FakeBlobStore:
    """In-memory BlobStore that records every call.

    `objects` maps key -> size (None for an unknown size). Failures are
    injected per key through the `fail_*` attributes.
    """

    def __init__(self, objects: dict[str, int | None] | None = None, *, page_size: int | None = None) -> None:
        self.objects: dict[str, int | None] = dict(objects or {})
        self.page_size = page_size
        self.calls: list[tuple[str, str | None]] = []
        self.fail_list: Exception | None = None
        self.fail_exists: dict[str, Exception] = {}
        self.fail_delete: dict[str, Exception] = {}
        self.sticky: set[str] = set()  # survive delete()
        self.raw_entries: list[object] | None = None  # overrides listing entries

    async def list(self, prefix: str | None = None, *, page_token: str | None = None) -> ListingPage:
        self.calls.append(("list", prefix))
        if self.fail_list is not None:
            raise self.fail_list
        if self.raw_entries is not None:
            return ListingPage(entries=list(self.raw_entries))

        keys = sorted(k for k in self.objects if not prefix or k.startswith(prefix))
        entries: list[object] = [{"key": k, "size": self.objects[k]} for k in keys]
        if not self.page_size:
            return ListingPage(entries=entries)

        start = int(page_token or 0)
        end = start + self.page_size
        return ListingPage(
            entries=entries[start:end],
            next_page_token=str(end) if end < len(entries) else None,
        )

    async def exists(self, key: str) -> bool:
        self.calls.append(("exists", key))
        if key in self.fail_exists:
            raise self.fail_exists[key]
        return key in self.objects

    async def read(self, key: str) -> bytes:
        self.calls.append(("read", key))
        if key not in self.objects:
            raise FileNotFoundError(key)
        return b"\0" * (self.objects[key] or 0)

    async def write(self, key: str, data: bytes) -> None:
        self.calls.append(("write", key))
        self.objects[key] = len(data)

    async def delete(self, key: str) -> None:
        self.calls.append(("delete", key))
        if key in self.fail_delete:
            raise self.fail_delete[key]
        if key not in self.sticky:
            self.objects.pop(key, None)

    @property
    def mutations(self) -> list[tuple[str, str | None]]:
        return [call for call in self.calls if call[0] in MUTATING_BLOB_CALLS]

    def deleted(self) -> list[str | None]:
        return [key for op, key in self.calls if op == "delete"]


class FakeOwnershipStore:
    """In-memory OwnershipStore over ReferenceRows."""

    def __init__(
        self,
        photos: Iterable[ReferenceRow] = (),
        heroes: Iterable[ReferenceRow] = (),
        profiles: Iterable[ReferenceRow] = (),
    ) -> None:
        self.photos = list(photos)
        self.heroes = list(heroes)
        self.profiles = list(profiles)
        self.calls: list[tuple[str, str | None]] = []
        self.fail_source: dict[str, Exception] = {}
        self.referenced: set[str] = set()
        self.fail_is_referenced: dict[str, Exception] = {}
        self.fail_purge: dict[str, Exception] = {}
        self.purged: list[list[OwnershipRecord]] = []
        self.fail_repoint: dict[str, Exception] = {}
        self.repointed: list[tuple[list[OwnershipRecord], str]] = []

    async def photo_references(self) -> list[ReferenceRow]:
        return self._source("photos", self.photos)

    async def hero_references(self) -> list[ReferenceRow]:
        return self._source("hero_images", self.heroes)

    async def profile_references(self) -> list[ReferenceRow]:
        return self._source("profile_images", self.profiles)

    def _source(self, name: str, rows: list[ReferenceRow]) -> list[ReferenceRow]:
        self.calls.append((name, None))
        if name in self.fail_source:
            raise self.fail_source[name]
        return list(rows)

    async def is_referenced(self, key: str) -> bool:
        self.calls.append(("is_referenced", key))
        if key in self.fail_is_referenced:
            raise self.fail_is_referenced[key]
        return key in self.referenced

    async def purge(self, records: list[OwnershipRecord]) -> int:
        key = records[0].referenced_key if records else None
        self.calls.append(("purge", key))
        if key in self.fail_purge:
            raise self.fail_purge[key]
        self.purged.append(list(records))
        return len(records)

    async def repoint(self, records: list[OwnershipRecord], new_key: str) -> int:
        key = records[0].referenced_key if records else None
        self.calls.append(("repoint", key))
        if key in self.fail_repoint:
            raise self.fail_repoint[key]
        self.repointed.append((list(records), new_key))
        return len(records)

    @property
    def mutations(self) -> list[tuple[str, str | None]]:
        return [call for call in self.calls if call[0] in ("purge", "repoint")]


class FakeLedger:
    """In-memory usage ledger."""

    def __init__(self, events: Iterable[UsageEvent] = ()) -> None:
        self.appended: list[UsageEvent] = []
        self._events = list(events)
        self.fail_append: Exception | None = None

    async def append(self, event: UsageEvent) -> None:
        if self.fail_append is not None:
            raise self.fail_append
        self.appended.append(event)
        self._events.append(event)

    async def events(self, *, owner_id: str | None = None) -> list[UsageEvent]:
        return [e for e in self._events if owner_id is None or e.owner_id == owner_id]

    async def last_upload(self, key: str) -> UsageEvent | None:
        return last_upload(self._events, key)


# -----------------------------------------------------------------------------
# DATABASE
# -----------------------------------------------------------------------------


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with all tables."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session for services that commit their own work.

    Tables are dropped after each test, so no outer transaction is held.
    """
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


# -----------------------------------------------------------------------------
# FACTORIES
# -----------------------------------------------------------------------------

MakeBlob = Callable[..., BlobRecord]
MakeOwner = Callable[..., OwnershipRecord]
MakeRow = Callable[..., ReferenceRow]
MakeEvent = Callable[..., UsageEvent]

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def make_blob() -> MakeBlob:
    """Factory fixture for BlobRecords."""

    def _make(key: str, size_bytes: int | None = 1000, *, store_key: str | None = None) -> BlobRecord:
        return BlobRecord(key=key, store_key=store_key or key, size_bytes=size_bytes)

    return _make


@pytest.fixture
def make_owner() -> MakeOwner:
    """Factory fixture for OwnershipRecords."""

    def _make(
        key: str,
        *,
        record_kind: RecordKind = RecordKind.PHOTO,
        record_id: str = "1",
        owner_id: str = "1",
        raw_reference: str | None = None,
    ) -> OwnershipRecord:
        return OwnershipRecord(
            owner_id=owner_id,
            referenced_key=key,
            record_kind=record_kind,
            record_id=record_id,
            raw_reference=raw_reference or f"/images/{key}",
        )

    return _make


@pytest.fixture
def make_row() -> MakeRow:
    """Factory fixture for raw ReferenceRows."""

    def _make(
        reference: str | None,
        *,
        record_kind: RecordKind = RecordKind.PHOTO,
        record_id: str = "1",
        owner_id: str = "1",
    ) -> ReferenceRow:
        return ReferenceRow(
            record_kind=record_kind,
            record_id=record_id,
            owner_id=owner_id,
            reference=reference,
        )

    return _make


@pytest.fixture
def make_event() -> MakeEvent:
    """Factory fixture for UsageEvents; `minutes` offsets from a fixed base time."""

    def _make(
        key: str,
        operation: UsageOperation = UsageOperation.UPLOAD,
        size_bytes: int | None = 100,
        *,
        minutes: int = 0,
        owner_id: str = "1",
    ) -> UsageEvent:
        return UsageEvent(
            owner_id=owner_id,
            key=key,
            size_bytes=size_bytes,
            operation=operation,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
        )

    return _make


@pytest.fixture
def orphan(make_blob: MakeBlob) -> Callable[..., Discrepancy]:
    """Factory fixture for ORPHANED discrepancies."""

    def _make(key: str, size_bytes: int | None = 1000) -> Discrepancy:
        return Discrepancy(kind=DiscrepancyKind.ORPHANED, key=key, blobs=(make_blob(key, size_bytes),))

    return _make


@pytest.fixture
def phantom(make_owner: MakeOwner) -> Callable[..., Discrepancy]:
    """Factory fixture for PHANTOM discrepancies."""

    def _make(key: str, *owners: OwnershipRecord) -> Discrepancy:
        return Discrepancy(
            kind=DiscrepancyKind.PHANTOM,
            key=key,
            owners=owners or (make_owner(key),),
        )

    return _make


@pytest.fixture
def blob_store() -> Callable[..., FakeBlobStore]:
    return FakeBlobStore


@pytest.fixture
def ownership_store() -> Callable[..., FakeOwnershipStore]:
    return FakeOwnershipStore


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def make_ledger() -> Callable[..., FakeLedger]:
    return FakeLedger

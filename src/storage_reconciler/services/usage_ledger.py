"""Usage ledger: append-only upload/delete events and the usage derived from them.

Current usage is a fold over events in timestamp order that tracks whether
each key currently exists:
- UPLOAD of a key that does not exist adds one file and its size
- UPLOAD of a key that already exists replaces its size (no double count)
- DELETE of an existing key removes it
- DELETE of a key that does not exist is ignored (out of order or repeated)

Totals are clamped at zero.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Set
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storage_reconciler.models.enums import UsageOperation
from storage_reconciler.models.storage_usage import StorageUsageEvent
from storage_reconciler.utils.keys import parse_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageEvent:
    """One ledger event. `size_bytes` is None when the size was not measured."""

    owner_id: str
    key: str
    size_bytes: int | None
    operation: UsageOperation
    timestamp: datetime
    category: str | None = None
    reason: str | None = None


@dataclass
class UsageSummary:
    """Aggregate usage derived from the ledger."""

    total_bytes: int = 0
    total_files: int = 0
    unknown_size_files: int = 0
    """Files counted in total_files whose upload size was not recorded."""


@dataclass
class LedgerDrift:
    """Disagreement between the ledger and the blob inventory."""

    ledger_only: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    """Keys the ledger believes exist but the blob store does not list."""

    unledgered: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    """Blob keys with no recorded upload."""


@dataclass
class _KeyState:
    owner_id: str
    size_bytes: int | None
    category: str | None


def _sort_key(indexed: tuple[int, UsageEvent]) -> tuple[datetime, int]:
    position, event = indexed
    ts = event.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (ts, position)


def current_keys(events: Iterable[UsageEvent]) -> dict[str, _KeyState]:
    """Fold events into the set of keys the ledger believes currently exist."""
    state: dict[str, _KeyState] = {}
    for _position, event in sorted(enumerate(events), key=_sort_key):
        if event.operation == UsageOperation.UPLOAD:
            state[event.key] = _KeyState(
                owner_id=event.owner_id,
                size_bytes=event.size_bytes,
                category=event.category,
            )
        elif event.operation == UsageOperation.DELETE:
            state.pop(event.key, None)
    return state


def fold_usage(
    events: Iterable[UsageEvent],
    *,
    owner_id: str | None = None,
    existing_keys: Set[str] | None = None,
) -> UsageSummary:
    """Derive current usage from a sequence of events.

    Args:
        events: Ledger events in any order.
        owner_id: Restrict to keys last uploaded by this owner.
        existing_keys: When given, only count keys that are also present in
            the blob inventory.
    """
    summary = UsageSummary()
    for key, state in current_keys(events).items():
        if owner_id is not None and state.owner_id != owner_id:
            continue
        if existing_keys is not None and key not in existing_keys:
            continue
        summary.total_files += 1
        if state.size_bytes is None:
            summary.unknown_size_files += 1
        else:
            summary.total_bytes += state.size_bytes

    summary.total_bytes = max(0, summary.total_bytes)
    summary.total_files = max(0, summary.total_files)
    return summary


def usage_by_category(
    events: Iterable[UsageEvent],
    *,
    existing_keys: Set[str] | None = None,
) -> dict[str, UsageSummary]:
    """Current usage broken down by category (photo, hero, profile, ...).

    `existing_keys` restricts the breakdown the same way as in `fold_usage`.
    """
    breakdown: dict[str, UsageSummary] = defaultdict(UsageSummary)
    for key, state in current_keys(events).items():
        if existing_keys is not None and key not in existing_keys:
            continue
        category = state.category or parse_key(key).category
        bucket = breakdown[category]
        bucket.total_files += 1
        if state.size_bytes is None:
            bucket.unknown_size_files += 1
        else:
            bucket.total_bytes += max(0, state.size_bytes)
    return dict(breakdown)


def ledger_drift(events: Iterable[UsageEvent], blob_keys: Set[str]) -> LedgerDrift:
    """Compare the ledger's live keys with the blob inventory."""
    live = set(current_keys(events))
    return LedgerDrift(
        ledger_only=sorted(live - blob_keys),
        unledgered=sorted(blob_keys - live),
    )


def last_upload(events: Iterable[UsageEvent], key: str) -> UsageEvent | None:
    """Most recent upload event for a key, if any."""
    uploads = [
        (position, event)
        for position, event in enumerate(events)
        if event.key == key and event.operation == UsageOperation.UPLOAD
    ]
    if not uploads:
        return None
    return max(uploads, key=_sort_key)[1]


class UsageLedger:
    """Append-only ledger backed by the storage_usage table.

    Usage:
        async with async_session_factory() as session:
            ledger = UsageLedger(session)
            await ledger.append(event)
            usage = await ledger.current_usage(owner_id="42")
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the ledger with a database session."""
        self._session = session

    async def append(self, event: UsageEvent) -> None:
        """Persist one event. This is the ledger's only mutation."""
        row = StorageUsageEvent(
            owner_id=event.owner_id,
            file_key=event.key,
            size_bytes=event.size_bytes,
            operation=event.operation,
            category=event.category or parse_key(event.key).category,
            reason=event.reason,
            occurred_at=event.timestamp,
        )
        self._session.add(row)
        await self._session.commit()
        logger.debug(
            "Ledger %s %s (%s bytes) owner=%s",
            event.operation.value,
            event.key,
            event.size_bytes,
            event.owner_id,
        )

    async def events(self, *, owner_id: str | None = None) -> list[UsageEvent]:
        """All events in insertion order, optionally for one owner."""
        stmt = select(StorageUsageEvent).order_by(StorageUsageEvent.id)
        if owner_id is not None:
            stmt = stmt.where(StorageUsageEvent.owner_id == owner_id)
        result = await self._session.execute(stmt)
        return [_to_event(row) for row in result.scalars().all()]

    async def current_usage(
        self,
        owner_id: str | None = None,
        *,
        existing_keys: Set[str] | None = None,
    ) -> UsageSummary:
        """Current bytes and files, optionally for one owner or restricted to existing keys."""
        # Owner filtering happens in the fold: a key's owner is whoever uploaded it last
        return fold_usage(await self.events(), owner_id=owner_id, existing_keys=existing_keys)

    async def drift(self, blob_keys: Set[str]) -> LedgerDrift:
        return ledger_drift(await self.events(), blob_keys)

    async def breakdown(self) -> dict[str, UsageSummary]:
        return usage_by_category(await self.events())

    async def last_upload(self, key: str) -> UsageEvent | None:
        stmt = (
            select(StorageUsageEvent)
            .where(StorageUsageEvent.file_key == key)
            .where(StorageUsageEvent.operation == UsageOperation.UPLOAD)
            .order_by(StorageUsageEvent.occurred_at.desc(), StorageUsageEvent.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_event(row) if row is not None else None


def _to_event(row: StorageUsageEvent) -> UsageEvent:
    return UsageEvent(
        owner_id=row.owner_id,
        key=row.file_key,
        size_bytes=row.size_bytes,
        operation=row.operation,
        timestamp=row.occurred_at,
        category=row.category,
        reason=row.reason,
    )

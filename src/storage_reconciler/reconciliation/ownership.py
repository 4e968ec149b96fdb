"""Ownership index: which database rows reference which storage keys.

The index is the union of every relational source that embeds a storage
reference (photos, hero images and hero selections, profile images). A key is
only safe to call orphaned when it is absent from this union, so the builder
fails the whole run if any source cannot be read.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from storage_reconciler.exceptions import ExternalReference, IndexFailure, MalformedReference
from storage_reconciler.models.enums import RecordKind
from storage_reconciler.utils.keys import KeyNormalizer, default_normalizer, is_within

logger = logging.getLogger(__name__)

# Relational sources that must all be consulted before anything is orphaned
PHOTO_SOURCE = "photos"
HERO_SOURCE = "hero_images"
PROFILE_SOURCE = "profile_images"
ALL_SOURCES = frozenset({PHOTO_SOURCE, HERO_SOURCE, PROFILE_SOURCE})


@dataclass(frozen=True)
class ReferenceRow:
    """A raw reference as read from a relational row."""

    record_kind: RecordKind
    record_id: str
    owner_id: str
    reference: str | None


@dataclass(frozen=True)
class OwnershipRecord:
    """A relational row that references a storage key."""

    owner_id: str
    referenced_key: str
    record_kind: RecordKind
    record_id: str
    raw_reference: str

    @property
    def record_ref(self) -> tuple[RecordKind, str]:
        """Identity of the underlying row, independent of which key it references."""
        return (self.record_kind, self.record_id)


@dataclass(frozen=True)
class UnparsableReference:
    """Diagnostic for a relational reference that failed normalization."""

    record_kind: RecordKind
    record_id: str
    owner_id: str
    reference: str
    reason: str


class OwnershipStore(Protocol):
    """Relational access the reconciler needs.

    Reads expose an owner id and a raw reference per row. The writes are
    `purge`, which removes a set of records as one transaction, and `repoint`,
    which rewrites their reference to another key as one transaction.
    """

    async def photo_references(self) -> Sequence[ReferenceRow]:
        ...

    async def hero_references(self) -> Sequence[ReferenceRow]:
        ...

    async def profile_references(self) -> Sequence[ReferenceRow]:
        ...

    async def is_referenced(self, key: str) -> bool:
        ...

    async def purge(self, records: Sequence[OwnershipRecord]) -> int:
        ...

    async def repoint(self, records: Sequence[OwnershipRecord], new_key: str) -> int:
        ...


@dataclass
class OwnershipIndex:
    """Mapping of canonical key -> every OwnershipRecord referencing it."""

    by_key: dict[str, frozenset[OwnershipRecord]] = field(default_factory=dict)  # pyright: ignore[reportUnknownVariableType]
    unparsable: list[UnparsableReference] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    external_references: int = 0
    sources: frozenset[str] = frozenset()

    @classmethod
    def from_records(
        cls,
        records: Iterable[OwnershipRecord],
        *,
        sources: frozenset[str] = ALL_SOURCES,
    ) -> OwnershipIndex:
        grouped: dict[str, set[OwnershipRecord]] = defaultdict(set)
        for record in records:
            grouped[record.referenced_key].add(record)
        return cls(by_key={k: frozenset(v) for k, v in grouped.items()}, sources=sources)

    @property
    def is_complete(self) -> bool:
        """Whether every relational source was consulted."""
        return ALL_SOURCES <= self.sources

    def owners(self, key: str) -> frozenset[OwnershipRecord]:
        return self.by_key.get(key, frozenset())

    def keys(self) -> set[str]:
        return set(self.by_key)

    def __contains__(self, key: object) -> bool:
        return key in self.by_key

    def __iter__(self) -> Iterator[str]:
        return iter(self.by_key)

    def __len__(self) -> int:
        return len(self.by_key)

    @property
    def record_count(self) -> int:
        return sum(len(owners) for owners in self.by_key.values())

    def keys_by_record(self) -> dict[tuple[RecordKind, str], set[str]]:
        """Every key each relational row references."""
        held: dict[tuple[RecordKind, str], set[str]] = defaultdict(set)
        for key, owners in self.by_key.items():
            for owner in owners:
                held[owner.record_ref].add(key)
        return dict(held)

    def with_records(self, records: Iterable[OwnershipRecord]) -> OwnershipIndex:
        """Same diagnostics and sources over a different set of records."""
        rebuilt = OwnershipIndex.from_records(records, sources=self.sources)
        rebuilt.unparsable = list(self.unparsable)
        rebuilt.external_references = self.external_references
        return rebuilt

    def restrict(self, prefixes: Sequence[str]) -> OwnershipIndex:
        """Index limited to keys under `prefixes` (all keys if empty).

        Unparsable diagnostics are kept whole: they cannot be placed in a scope.
        """
        if not prefixes:
            return self
        return OwnershipIndex(
            by_key={k: v for k, v in self.by_key.items() if is_within(k, prefixes)},
            unparsable=list(self.unparsable),
            external_references=self.external_references,
            sources=self.sources,
        )


class OwnershipIndexBuilder:
    """Builds the unioned ownership index from an OwnershipStore.

    Usage:
        builder = OwnershipIndexBuilder(SqlOwnershipStore(session))
        index = await builder.build_index()
    """

    def __init__(
        self,
        store: OwnershipStore,
        *,
        normalizer: KeyNormalizer | None = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer or default_normalizer()

    async def build_index(self) -> OwnershipIndex:
        """Query all sources, normalize references and group by key.

        Raises:
            IndexFailure: Any source could not be read.
        """
        index = OwnershipIndex()
        grouped: dict[str, set[OwnershipRecord]] = defaultdict(set)
        consulted: set[str] = set()

        sources = (
            (PHOTO_SOURCE, self._store.photo_references),
            (HERO_SOURCE, self._store.hero_references),
            (PROFILE_SOURCE, self._store.profile_references),
        )
        for source_name, fetch in sources:
            try:
                rows = await fetch()
            except Exception as exc:
                raise IndexFailure(f"Failed to read ownership source {source_name}: {exc}") from exc
            consulted.add(source_name)

            for row in rows:
                self._add_row(row, grouped, index)

        index.by_key = {k: frozenset(v) for k, v in grouped.items()}
        index.sources = frozenset(consulted)

        logger.info(
            "Built ownership index: %d keys, %d records, %d unparsable, %d external",
            len(index),
            index.record_count,
            len(index.unparsable),
            index.external_references,
        )
        return index

    def _add_row(
        self,
        row: ReferenceRow,
        grouped: dict[str, set[OwnershipRecord]],
        index: OwnershipIndex,
    ) -> None:
        if row.reference is None or not row.reference.strip():
            return

        try:
            key = self._normalizer.normalize(row.reference)
        except ExternalReference:
            index.external_references += 1
            return
        except MalformedReference as exc:
            logger.warning(
                "Unparsable reference on %s %s: %r (%s)",
                row.record_kind.value,
                row.record_id,
                row.reference,
                exc.reason,
            )
            index.unparsable.append(
                UnparsableReference(
                    record_kind=row.record_kind,
                    record_id=row.record_id,
                    owner_id=row.owner_id,
                    reference=row.reference,
                    reason=exc.reason,
                )
            )
            return

        grouped[key].add(
            OwnershipRecord(
                owner_id=row.owner_id,
                referenced_key=key,
                record_kind=row.record_kind,
                record_id=row.record_id,
                raw_reference=row.reference,
            )
        )

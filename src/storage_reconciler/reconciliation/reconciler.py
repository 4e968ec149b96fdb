"""Three-way reconciliation between blob inventory and ownership index.

This module is pure: given a blob inventory and an ownership index it
classifies every key and computes totals. It performs no I/O, which is what
lets the executor run dry and for real over the same classification.

Classification (over canonical keys):
- ORPHANED = blob keys - owned keys
- PHANTOM  = owned keys - blob keys
- MATCHED  = blob keys & owned keys

Every key appears in exactly one class. Owned keys always come from the union
of all relational sources; an index missing a source is rejected.

Phantoms also carry the other keys their rows reference and the orphans that
may be the file they meant; the executor uses both before touching a row.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from urllib.parse import unquote

from storage_reconciler.models.enums import DiscrepancyKind, RecordKind
from storage_reconciler.reconciliation.ownership import (
    ALL_SOURCES,
    OwnershipIndex,
    OwnershipRecord,
    UnparsableReference,
)
from storage_reconciler.reconciliation.scanner import BlobRecord
from storage_reconciler.utils.keys import estimate_size_bytes, parse_key


@dataclass(frozen=True)
class Discrepancy:
    """Classification of one canonical key."""

    kind: DiscrepancyKind
    key: str
    blobs: tuple[BlobRecord, ...] = ()
    owners: tuple[OwnershipRecord, ...] = ()

    possible_references: tuple[UnparsableReference, ...] = ()
    """Orphans only: unparsable references that mention this key's filename."""

    live_records: tuple[tuple[RecordKind, str], ...] = ()
    """Phantoms only: owner rows that also reference a blob that exists."""

    sibling_keys: tuple[str, ...] = ()
    """Phantoms only: other keys the same owner rows reference, found or not."""

    repoint_candidates: tuple[str, ...] = ()
    """Phantoms only: orphans with the same filename and category."""

    claimed_by: tuple[str, ...] = ()
    """Orphans only: phantom keys that list this blob as a re-point candidate."""

    @property
    def repoint_target(self) -> str | None:
        """The single re-point candidate, if there is exactly one."""
        if len(self.repoint_candidates) == 1:
            return self.repoint_candidates[0]
        return None

    @property
    def size_bytes(self) -> int | None:
        """Total size of the key's blobs, or None if any size is unknown."""
        if not self.blobs:
            return None
        sizes = [blob.size_bytes for blob in self.blobs]
        if any(size is None for size in sizes):
            return None
        return sum(size for size in sizes if size is not None)

    @property
    def size_known(self) -> bool:
        return self.size_bytes is not None

    @property
    def owner_id(self) -> str | None:
        """Owning user: from the first ownership record, else from the key layout."""
        if self.owners:
            return self.owners[0].owner_id
        return parse_key(self.key).owner_id

    @property
    def category(self) -> str:
        return parse_key(self.key).category


@dataclass
class KindTotals:
    """Aggregate numbers for one discrepancy kind.

    `known_bytes` sums only measured sizes; `unknown_size_count` counts the
    keys left out of that sum.
    """

    count: int = 0
    known_bytes: int = 0
    unknown_size_count: int = 0
    record_count: int = 0

    estimated_unknown_bytes: int = 0
    """Labeled estimate for unknown-size keys. Never part of known_bytes."""


@dataclass
class ReconciliationResult:
    """All discrepancies of one run, sorted by key."""

    discrepancies: list[Discrepancy] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    unparsable: list[UnparsableReference] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]

    def __iter__(self) -> Iterator[Discrepancy]:
        return iter(self.discrepancies)

    def __len__(self) -> int:
        return len(self.discrepancies)

    def of_kind(self, kind: DiscrepancyKind) -> list[Discrepancy]:
        return [d for d in self.discrepancies if d.kind == kind]

    @property
    def orphaned(self) -> list[Discrepancy]:
        return self.of_kind(DiscrepancyKind.ORPHANED)

    @property
    def phantom(self) -> list[Discrepancy]:
        return self.of_kind(DiscrepancyKind.PHANTOM)

    @property
    def matched(self) -> list[Discrepancy]:
        return self.of_kind(DiscrepancyKind.MATCHED)

    @property
    def blob_keys(self) -> set[str]:
        """Keys present in the blob inventory (orphaned + matched)."""
        return {d.key for d in self.discrepancies if d.blobs}

    def totals(self) -> dict[DiscrepancyKind, KindTotals]:
        totals = {kind: KindTotals() for kind in DiscrepancyKind}
        for d in self.discrepancies:
            bucket = totals[d.kind]
            bucket.count += 1
            bucket.record_count += len(d.owners)
            if not d.blobs:
                continue
            size = d.size_bytes
            if size is None:
                bucket.unknown_size_count += 1
                bucket.estimated_unknown_bytes += estimate_size_bytes(d.key) or 0
            else:
                bucket.known_bytes += size
        return totals

    def totals_by_category(self, kind: DiscrepancyKind) -> dict[str, KindTotals]:
        """Per key-category totals (photo, hero, profile, ...) for one kind."""
        by_category: dict[str, KindTotals] = defaultdict(KindTotals)
        for d in self.of_kind(kind):
            bucket = by_category[d.category]
            bucket.count += 1
            bucket.record_count += len(d.owners)
            size = d.size_bytes
            if d.blobs and size is None:
                bucket.unknown_size_count += 1
            elif size is not None:
                bucket.known_bytes += size
        return dict(by_category)


def reconcile(
    blob_records: Iterable[BlobRecord],
    ownership_index: OwnershipIndex,
    *,
    record_index: OwnershipIndex | None = None,
) -> ReconciliationResult:
    """Classify every key found in either the blob inventory or the index.

    Args:
        blob_records: Scanned inventory. Several raw store keys may share one
            canonical key; they are classified together.
        ownership_index: Unioned index built from every relational source,
            limited to the keys being classified.
        record_index: Unrestricted index used to find every key an owner row
            references. Defaults to `ownership_index`; a scoped run passes the
            whole index so that references outside the scope are not lost.

    Returns:
        ReconciliationResult with one Discrepancy per key.

    Raises:
        ValueError: The index was not built from every relational source.
    """
    if not ownership_index.is_complete:
        missing = sorted(set(ALL_SOURCES) - ownership_index.sources)
        raise ValueError(f"Ownership index is missing sources {missing}; refusing to classify orphans")

    blobs_by_key: dict[str, list[BlobRecord]] = defaultdict(list)
    for record in blob_records:
        blobs_by_key[record.key].append(record)

    blob_keys = set(blobs_by_key)
    owned_keys = ownership_index.keys()
    matched_keys = blob_keys & owned_keys
    orphaned_keys = blob_keys - owned_keys

    held = (record_index or ownership_index).keys_by_record()
    candidates = _repoint_candidates(owned_keys - blob_keys, orphaned_keys, ownership_index)
    claims: dict[str, list[str]] = defaultdict(list)
    for phantom_key, found in candidates.items():
        for candidate in found:
            claims[candidate].append(phantom_key)

    discrepancies: list[Discrepancy] = []
    for key in sorted(blob_keys | owned_keys):
        blobs = tuple(sorted(blobs_by_key.get(key, ()), key=lambda b: b.store_key))
        owners = tuple(sorted(ownership_index.owners(key), key=_owner_sort_key))

        if key in matched_keys:
            discrepancies.append(
                Discrepancy(kind=DiscrepancyKind.MATCHED, key=key, blobs=blobs, owners=owners)
            )
        elif key in blob_keys:
            discrepancies.append(
                Discrepancy(
                    kind=DiscrepancyKind.ORPHANED,
                    key=key,
                    blobs=blobs,
                    possible_references=_mentions(key, ownership_index.unparsable),
                    claimed_by=tuple(claims.get(key, ())),
                )
            )
        else:
            siblings = {
                other
                for owner in owners
                for other in held.get(owner.record_ref, ())
                if other != key
            }
            live = tuple(sorted({
                owner.record_ref
                for owner in owners
                if held.get(owner.record_ref, set()) & blob_keys
            }))
            discrepancies.append(
                Discrepancy(
                    kind=DiscrepancyKind.PHANTOM,
                    key=key,
                    owners=owners,
                    live_records=live,
                    sibling_keys=tuple(sorted(siblings)),
                    repoint_candidates=candidates.get(key, ()),
                )
            )

    return ReconciliationResult(
        discrepancies=discrepancies,
        unparsable=list(ownership_index.unparsable),
    )


def _repoint_candidates(
    phantom_keys: set[str],
    orphaned_keys: set[str],
    ownership_index: OwnershipIndex,
) -> dict[str, tuple[str, ...]]:
    """Orphans each phantom could be re-pointed at.

    A candidate has the phantom's filename and category. A candidate under a
    per-owner prefix must belong to the user who owns every referencing row.
    """
    by_name: dict[tuple[str, str], list[str]] = defaultdict(list)
    for key in sorted(orphaned_keys):
        parsed = parse_key(key)
        by_name[(parsed.filename, parsed.category)].append(key)

    found: dict[str, tuple[str, ...]] = {}
    for key in phantom_keys:
        parsed = parse_key(key)
        owner_ids = {owner.owner_id for owner in ownership_index.owners(key)}
        matches = tuple(
            candidate
            for candidate in by_name.get((parsed.filename, parsed.category), ())
            if _owner_compatible(parse_key(candidate).owner_id, owner_ids)
        )
        if matches:
            found[key] = matches
    return found


def _owner_compatible(candidate_owner: str | None, owner_ids: set[str]) -> bool:
    if candidate_owner is None:
        return True
    return owner_ids == {candidate_owner}


def _owner_sort_key(owner: OwnershipRecord) -> tuple[str, str, str]:
    return (owner.record_kind.value, owner.record_id, owner.raw_reference)


def _mentions(
    key: str,
    unparsable: list[UnparsableReference],
) -> tuple[UnparsableReference, ...]:
    """Unparsable references whose text contains the key's filename.

    Such a reference may well point at this blob through a broken encoding,
    so the blob must not be deleted automatically.
    """
    if not unparsable:
        return ()
    filename = parse_key(key).filename
    matches: list[UnparsableReference] = []
    for ref in unparsable:
        haystacks = (ref.reference, unquote(ref.reference), unquote(unquote(ref.reference)))
        if any(filename in haystack for haystack in haystacks):
            matches.append(ref)
    return tuple(matches)

"""Blob inventory scanning.

Lists the blob store and turns each store-native listing entry into a
`BlobRecord` with a canonical key. The listing is the ground truth of a
reconciliation run: if it cannot be read the run fails with `ScanFailure`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from storage_reconciler.clients.blob_store import BlobStore
from storage_reconciler.exceptions import ListingShapeError, MalformedReference, ScanFailure
from storage_reconciler.utils.keys import KeyNormalizer, default_normalizer

logger = logging.getLogger(__name__)

# Field names accepted for the object key and its size, across store SDKs.
# Exactly one key field must be present on an entry.
KEY_FIELDS = ("key", "name", "path", "Key")
SIZE_FIELDS = ("size", "size_bytes", "content_length", "Size", "ContentLength")


@dataclass(frozen=True)
class BlobRecord:
    """One object in the blob store.

    `key` is canonical and used for comparisons; `store_key` is the key exactly
    as listed and is what gets deleted. `size_bytes` is None when the store did
    not report a usable size.
    """

    key: str
    store_key: str
    size_bytes: int | None = None

    @property
    def size_known(self) -> bool:
        return self.size_bytes is not None


@dataclass
class ScanDiagnostics:
    """Non-fatal findings collected while scanning."""

    unparsable_blob_keys: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    unknown_size_keys: list[str] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    pages: int = 0


def coerce_listing_entry(entry: Any) -> tuple[str, int | None]:
    """Normalize one store-native listing entry into (raw_key, size).

    Accepted shapes:
    - a plain string (the key; size unknown)
    - a mapping with exactly one key field
    - an object with exactly one key attribute

    Raises:
        ListingShapeError: The entry matches none of the accepted shapes.
    """
    if isinstance(entry, str):
        return entry, None

    if isinstance(entry, Mapping):
        fields: Mapping[str, Any] = entry
    else:
        fields = {
            name: getattr(entry, name)
            for name in (*KEY_FIELDS, *SIZE_FIELDS)
            if hasattr(entry, name)
        }

    present = [name for name in KEY_FIELDS if fields.get(name) is not None]
    if len(present) != 1:
        raise ListingShapeError(
            f"Listing entry of type {type(entry).__name__} has key fields {present}; "
            f"expected exactly one of {KEY_FIELDS}"
        )
    raw_key = fields[present[0]]
    if not isinstance(raw_key, str):
        raise ListingShapeError(f"Listing entry key is {type(raw_key).__name__}, expected str")

    return raw_key, _coerce_size(fields)


def _coerce_size(fields: Mapping[str, Any]) -> int | None:
    for name in SIZE_FIELDS:
        value = fields.get(name)
        if value is None:
            continue
        # bool is an int subclass; never treat True/False as a byte count
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value if value >= 0 else None
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return None
    return None


class BlobInventoryScanner:
    """Produces BlobRecords from a blob store.

    Each call to `scan()` starts a fresh listing; there is no shared cursor.

    Usage:
        scanner = BlobInventoryScanner(blob_store)
        records = [record async for record in scanner.scan("photo/")]
    """

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        normalizer: KeyNormalizer | None = None,
    ) -> None:
        self._store = blob_store
        self._normalizer = normalizer or default_normalizer()
        self.diagnostics = ScanDiagnostics()

    async def scan(self, prefix: str | None = None) -> AsyncIterator[BlobRecord]:
        """Lazily yield every object under `prefix`.

        Raises:
            ScanFailure: The store's listing call failed or returned an
                unrecognized entry shape.
        """
        page_token: str | None = None
        seen_tokens: set[str] = set()

        while True:
            try:
                page = await self._store.list(prefix, page_token=page_token)
            except Exception as exc:
                raise ScanFailure(f"Failed to list blob store (prefix={prefix!r}): {exc}") from exc
            self.diagnostics.pages += 1

            for entry in page.entries:
                record = self._to_record(entry)
                if record is not None:
                    yield record

            page_token = page.next_page_token
            if not page_token:
                break
            if page_token in seen_tokens:
                raise ScanFailure(f"Blob store returned a repeated page token: {page_token!r}")
            seen_tokens.add(page_token)

    def _to_record(self, entry: Any) -> BlobRecord | None:
        raw_key, size = coerce_listing_entry(entry)

        try:
            key = self._normalizer.normalize(raw_key)
        except MalformedReference as exc:
            logger.warning("Skipping unparsable blob key %r: %s", raw_key, exc.reason)
            self.diagnostics.unparsable_blob_keys.append(raw_key)
            return None

        if size is None:
            logger.debug("No usable size for %s", raw_key)
            self.diagnostics.unknown_size_keys.append(key)

        return BlobRecord(key=key, store_key=raw_key, size_bytes=size)

    async def collect(self, prefixes: Sequence[str] = ()) -> list[BlobRecord]:
        """Scan one or more prefixes into a list, de-duplicating raw keys.

        An empty `prefixes` scans the whole store.
        """
        self.diagnostics = ScanDiagnostics()
        records: list[BlobRecord] = []
        seen: set[str] = set()
        scan_prefixes: list[str | None] = list(prefixes) or [None]
        for prefix in scan_prefixes:
            async for record in self.scan(prefix):
                if record.store_key in seen:
                    continue
                seen.add(record.store_key)
                records.append(record)

        logger.info(
            "Scanned %d blobs (%d unparsable, %d unknown size)",
            len(records),
            len(self.diagnostics.unparsable_blob_keys),
            len(self.diagnostics.unknown_size_keys),
        )
        return records

"""Relational ownership store over SQLAlchemy.

Reads every column that embeds a storage reference and implements the two
relational writes the reconciler performs: purging records whose blob is gone
and re-pointing them at the blob they meant.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

from sqlalchemy import Select, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storage_reconciler.exceptions import ExternalReference, MalformedReference, VerificationAmbiguous
from storage_reconciler.models.enums import RecordKind
from storage_reconciler.models.hero_image import HeroImage, UserHeroSelection
from storage_reconciler.models.photo import Photo
from storage_reconciler.models.user import User
from storage_reconciler.reconciliation.ownership import OwnershipRecord, ReferenceRow
from storage_reconciler.utils.keys import KeyNormalizer, default_normalizer

logger = logging.getLogger(__name__)

# Owner recorded for shared hero images nobody uploaded
GLOBAL_OWNER = "global"


class SqlOwnershipStore:
    """OwnershipStore backed by the platform's tables.

    A photo references both `file_key` and `image_url`; a hero image both
    `url` and `image_url`. Both columns are reported so that a blob reachable
    through either one is never treated as orphaned.

    Usage:
        async with async_session_factory() as session:
            store = SqlOwnershipStore(session)
            index = await OwnershipIndexBuilder(store).build_index()
    """

    def __init__(self, session: AsyncSession, *, normalizer: KeyNormalizer | None = None) -> None:
        """Initialize the store with a database session."""
        self._session = session
        self._normalizer = normalizer or default_normalizer()

    async def photo_references(self) -> list[ReferenceRow]:
        stmt = select(Photo.id, Photo.user_id, Photo.file_key, Photo.image_url).order_by(Photo.id)
        result = await self._session.execute(stmt)

        rows: list[ReferenceRow] = []
        for photo_id, user_id, file_key, image_url in result.all():
            for reference in _distinct(file_key, image_url):
                rows.append(ReferenceRow(RecordKind.PHOTO, str(photo_id), user_id, reference))
        return rows

    async def hero_references(self) -> list[ReferenceRow]:
        """Hero banners and photographers' hero selections."""
        rows: list[ReferenceRow] = []

        heroes = await self._session.execute(
            select(
                HeroImage.id,
                HeroImage.user_id,
                HeroImage.added_by,
                HeroImage.url,
                HeroImage.image_url,
            ).order_by(HeroImage.id)
        )
        for hero_id, user_id, added_by, url, image_url in heroes.all():
            owner = user_id or added_by or GLOBAL_OWNER
            for reference in _distinct(url, image_url):
                rows.append(ReferenceRow(RecordKind.HERO_IMAGE, hero_id, owner, reference))

        selections = await self._session.execute(
            select(
                UserHeroSelection.id,
                UserHeroSelection.user_id,
                UserHeroSelection.custom_image_url,
            )
            .where(UserHeroSelection.custom_image_url.is_not(None))
            .order_by(UserHeroSelection.id)
        )
        for selection_id, user_id, custom_url in selections.all():
            rows.append(ReferenceRow(RecordKind.HERO_SELECTION, str(selection_id), user_id, custom_url))

        return rows

    async def profile_references(self) -> list[ReferenceRow]:
        stmt = (
            select(User.id, User.profile_image_url)
            .where(User.profile_image_url.is_not(None))
            .order_by(User.id)
        )
        result = await self._session.execute(stmt)
        return [
            ReferenceRow(RecordKind.PROFILE_IMAGE, user_id, user_id, url)
            for user_id, url in result.all()
        ]

    async def is_referenced(self, key: str) -> bool:
        """Re-check, against live rows, whether anything references `key`.

        Only rows whose reference mentions the key's filename are loaded.

        Raises:
            VerificationAmbiguous: A row mentioning the file has a reference
                that cannot be normalized, so it may point at this key.
        """
        filename = key.rsplit("/", 1)[-1]
        needles = {filename, quote(filename)}

        for kind, record_id, reference in await self._mentions(needles):
            try:
                if self._normalizer.normalize(reference) == key:
                    logger.debug("%s is referenced by %s %s", key, kind.value, record_id)
                    return True
            except ExternalReference:
                continue
            except MalformedReference as exc:
                raise VerificationAmbiguous(
                    key, f"{kind.value} {record_id} has unparsable reference ({exc.reason})"
                ) from exc
        return False

    async def _mentions(self, needles: set[str]) -> list[tuple[RecordKind, str, str]]:
        queries: list[tuple[RecordKind, Select[Any], Sequence[Any]]] = [
            (RecordKind.PHOTO, select(Photo.id, Photo.file_key, Photo.image_url), (Photo.file_key, Photo.image_url)),
            (RecordKind.HERO_IMAGE, select(HeroImage.id, HeroImage.url, HeroImage.image_url), (HeroImage.url, HeroImage.image_url)),
            (
                RecordKind.HERO_SELECTION,
                select(UserHeroSelection.id, UserHeroSelection.custom_image_url),
                (UserHeroSelection.custom_image_url,),
            ),
            (RecordKind.PROFILE_IMAGE, select(User.id, User.profile_image_url), (User.profile_image_url,)),
        ]

        found: list[tuple[RecordKind, str, str]] = []
        for kind, stmt, columns in queries:
            condition = or_(
                *(column.contains(needle, autoescape=True) for column in columns for needle in needles)
            )
            result = await self._session.execute(stmt.where(condition))
            for record_id, *references in result.all():
                for reference in _distinct(*references):
                    found.append((kind, str(record_id), reference))
        return found

    async def purge(self, records: Sequence[OwnershipRecord]) -> int:
        """Remove all given records in one transaction.

        Photos and hero selections are deleted. Hero images are deleted after
        detaching selections that point at them. Profile records clear the
        user's pointer; the user row stays.

        Each statement is guarded on the row still holding the reference it
        was indexed with. If any guard matches nothing, the row changed since
        the scan and the whole purge is rolled back.

        Returns:
            Number of rows deleted or updated.

        Raises:
            VerificationAmbiguous: A record no longer matches its reference.
        """
        grouped: dict[tuple[RecordKind, str], set[str]] = defaultdict(set)
        for record in records:
            grouped[record.record_ref].add(record.raw_reference)

        affected = 0
        try:
            for (kind, record_id), raw_references in sorted(grouped.items()):
                count = await self._purge_one(kind, record_id, raw_references)
                if count == 0:
                    raise VerificationAmbiguous(
                        records[0].referenced_key,
                        f"{kind.value} {record_id} no longer holds the scanned reference",
                    )
                affected += count
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        logger.info("Purged %d record(s) in one transaction", affected)
        return affected

    async def _purge_one(self, kind: RecordKind, record_id: str, raws: set[str]) -> int:
        if kind == RecordKind.PHOTO:
            result = await self._session.execute(
                delete(Photo).where(
                    Photo.id == int(record_id),
                    or_(Photo.file_key.in_(raws), Photo.image_url.in_(raws)),
                ).execution_options(synchronize_session=False)
            )
            return result.rowcount  # pyright: ignore[reportAttributeAccessIssue]

        if kind == RecordKind.HERO_IMAGE:
            await self._session.execute(
                update(UserHeroSelection)
                .where(UserHeroSelection.hero_image_id == record_id)
                .values(hero_image_id=None)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(
                delete(HeroImage).where(
                    HeroImage.id == record_id,
                    or_(HeroImage.url.in_(raws), HeroImage.image_url.in_(raws)),
                ).execution_options(synchronize_session=False)
            )
            return result.rowcount  # pyright: ignore[reportAttributeAccessIssue]

        if kind == RecordKind.HERO_SELECTION:
            result = await self._session.execute(
                delete(UserHeroSelection).where(
                    UserHeroSelection.id == int(record_id),
                    UserHeroSelection.custom_image_url.in_(raws),
                ).execution_options(synchronize_session=False)
            )
            return result.rowcount  # pyright: ignore[reportAttributeAccessIssue]

        result = await self._session.execute(
            update(User)
            .where(User.id == record_id, User.profile_image_url.in_(raws))
            .values(profile_image_url=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount  # pyright: ignore[reportAttributeAccessIssue]


    async def repoint(self, records: Sequence[OwnershipRecord], new_key: str) -> int:
        """Rewrite the given records' reference to `new_key` in one transaction.

        Only columns still holding the scanned reference change. Where the old
        key appears verbatim in a reference it is swapped in place, keeping the
        URL style. Otherwise `file_key` gets the bare key and URL columns get
        the public URL.

        Returns:
            Number of column values rewritten.

        Raises:
            VerificationAmbiguous: A record no longer holds the scanned
                reference, or its rewrite would not resolve to `new_key`.
        """
        affected = 0
        try:
            for record in sorted(records, key=lambda r: (r.record_ref, r.raw_reference)):
                count = await self._repoint_one(record, new_key)
                if count == 0:
                    kind, record_id = record.record_ref
                    raise VerificationAmbiguous(
                        record.referenced_key,
                        f"{kind.value} {record_id} no longer holds the scanned reference",
                    )
                affected += count
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        logger.info("Re-pointed %d reference(s) to %s in one transaction", affected, new_key)
        return affected

    async def _repoint_one(self, record: OwnershipRecord, new_key: str) -> int:
        model, id_column, columns = _REFERENCE_COLUMNS[record.record_kind]
        record_id: int | str = record.record_id
        if record.record_kind in _INTEGER_IDS:
            record_id = int(record.record_id)

        count = 0
        for column, bare in columns:
            result = await self._session.execute(
                update(model)
                .where(id_column == record_id, column == record.raw_reference)
                .values({column: self._rewrite(record, new_key, bare=bare)})
                .execution_options(synchronize_session=False)
            )
            count += result.rowcount  # pyright: ignore[reportAttributeAccessIssue]
        return count

    def _rewrite(self, record: OwnershipRecord, new_key: str, *, bare: bool) -> str:
        raw, old_key = record.raw_reference, record.referenced_key
        if old_key in raw:
            head, _, tail = raw.rpartition(old_key)
            reference = head + new_key + tail
        else:
            reference = new_key if bare else self._normalizer.public_url(new_key)

        if self._normalizer.try_normalize(reference) != new_key:
            raise VerificationAmbiguous(old_key, f"rewritten reference {reference!r} does not resolve to {new_key}")
        return reference


# Columns holding a storage reference, per record kind; `bare` columns store keys, not URLs
_REFERENCE_COLUMNS: dict[RecordKind, tuple[Any, Any, tuple[tuple[Any, bool], ...]]] = {
    RecordKind.PHOTO: (Photo, Photo.id, ((Photo.file_key, True), (Photo.image_url, False))),
    RecordKind.HERO_IMAGE: (HeroImage, HeroImage.id, ((HeroImage.url, False), (HeroImage.image_url, False))),
    RecordKind.HERO_SELECTION: (
        UserHeroSelection,
        UserHeroSelection.id,
        ((UserHeroSelection.custom_image_url, False),),
    ),
    RecordKind.PROFILE_IMAGE: (User, User.id, ((User.profile_image_url, False),)),
}
_INTEGER_IDS = frozenset({RecordKind.PHOTO, RecordKind.HERO_SELECTION})


def _distinct(*references: str | None) -> list[str]:
    """Non-empty references in order, without repeats."""
    seen: list[str] = []
    for reference in references:
        if reference and reference.strip() and reference not in seen:
            seen.append(reference)
    return seen

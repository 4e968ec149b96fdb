"""Blob store clients.

The reconciler consumes the blob store through the `BlobStore` protocol only.
Clients are constructed once per process (see `build_blob_store`) and passed
explicitly to the scanner and executor.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import ClientError

from storage_reconciler.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ListingPage:
    """One page of a blob-store listing.

    `entries` are store-native and are normalized by the scanner's adapter.
    `next_page_token` is None on the last page or for stores that do not paginate.
    """

    entries: list[Any] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]
    next_page_token: str | None = None


class BlobStore(Protocol):
    """Minimal interface the reconciler needs from an object store."""

    async def list(self, prefix: str | None = None, *, page_token: str | None = None) -> ListingPage:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def read(self, key: str) -> bytes:
        ...

    async def write(self, key: str, data: bytes) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class LocalBlobStore:
    """Blob store backed by a directory tree.

    Keys map to paths relative to `root`. Listing returns one page.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if path != self._root and self._root not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    async def list(self, prefix: str | None = None, *, page_token: str | None = None) -> ListingPage:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _list_sync(self, prefix: str | None) -> ListingPage:
        if not self._root.is_dir():
            raise FileNotFoundError(f"Storage root does not exist: {self._root}")

        entries: list[dict[str, Any]] = []
        for dirpath, _dirnames, filenames in os.walk(self._root):
            for fname in filenames:
                full_path = Path(dirpath) / fname
                key = full_path.relative_to(self._root).as_posix()
                if prefix and not key.startswith(prefix):
                    continue
                try:
                    size: int | None = full_path.stat().st_size
                except OSError:
                    size = None
                entries.append({"key": key, "size": size})

        entries.sort(key=lambda e: e["key"])
        return ListingPage(entries=entries)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path_for(key).is_file)

    async def read(self, key: str) -> bytes:
        return await asyncio.to_thread(self._path_for(key).read_bytes)

    async def write(self, key: str, data: bytes) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)


class S3BlobStore:
    """Blob store backed by an S3-compatible bucket (AWS S3, R2, MinIO).

    boto3 is synchronous, so every call runs in a worker thread.
    """

    # Keys per list_objects_v2 page
    DEFAULT_PAGE_SIZE = 1000

    def __init__(self, client: Any, bucket: str, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._client = client
        self._bucket = bucket
        self._page_size = page_size

    @classmethod
    def from_settings(cls, config: Settings) -> S3BlobStore:
        if not config.s3_bucket:
            raise ValueError("s3_bucket must be set when blob_backend is 's3'")

        client = boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint_url,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key_id,
            aws_secret_access_key=config.s3_secret_access_key,
        )
        return cls(client, config.s3_bucket)

    async def list(self, prefix: str | None = None, *, page_token: str | None = None) -> ListingPage:
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "MaxKeys": self._page_size}
        if prefix:
            kwargs["Prefix"] = prefix
        if page_token:
            kwargs["ContinuationToken"] = page_token

        response = await asyncio.to_thread(self._client.list_objects_v2, **kwargs)
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListingPage(entries=list(response.get("Contents", [])), next_page_token=next_token)

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True

    async def read(self, key: str) -> bytes:
        response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket, Key=key)
        return await asyncio.to_thread(response["Body"].read)

    async def write(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._client.put_object, Bucket=self._bucket, Key=key, Body=data)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)


def build_blob_store(config: Settings) -> BlobStore:
    """Construct the configured blob store client."""
    if config.blob_backend == "s3":
        logger.info("Using S3 blob store bucket=%s endpoint=%s", config.s3_bucket, config.s3_endpoint_url)
        return S3BlobStore.from_settings(config)

    logger.info("Using local blob store root=%s", config.blob_local_root)
    return LocalBlobStore(config.blob_local_root)

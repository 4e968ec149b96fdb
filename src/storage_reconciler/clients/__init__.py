"""Clients for external storage services."""

from storage_reconciler.clients.blob_store import (
    BlobStore,
    ListingPage,
    LocalBlobStore,
    S3BlobStore,
    build_blob_store,
)

__all__ = [
    "BlobStore",
    "ListingPage",
    "LocalBlobStore",
    "S3BlobStore",
    "build_blob_store",
]

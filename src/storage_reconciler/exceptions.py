"""Error taxonomy for reconciliation runs.

Fatal errors (ScanFailure, IndexFailure) propagate and end the run. All other
errors are captured per item into the run's result structures.
"""

from __future__ import annotations


class StorageReconcilerError(Exception):
    """Base class for all reconciler errors."""


class MalformedReference(StorageReconcilerError, ValueError):
    """A stored reference could not be normalized into a storage key."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"Malformed reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason


class ExternalReference(MalformedReference):
    """A reference that points outside the blob store (data URI, foreign host)."""


class ScanFailure(StorageReconcilerError):
    """Listing the blob store failed. Fatal: there is no ground truth."""


class ListingShapeError(ScanFailure):
    """A listing entry did not match any accepted shape."""


class IndexFailure(StorageReconcilerError):
    """An ownership source could not be read. Fatal: a partial index is unsafe."""


class DeleteFailure(StorageReconcilerError):
    """A blob or relational delete failed for a single item."""

    def __init__(self, key: str, cause: str) -> None:
        super().__init__(f"Failed to delete {key}: {cause}")
        self.key = key
        self.cause = cause


class VerificationAmbiguous(StorageReconcilerError):
    """An existence or reference check returned an indeterminate result."""

    def __init__(self, key: str, cause: str) -> None:
        super().__init__(f"Could not verify {key}: {cause}")
        self.key = key
        self.cause = cause

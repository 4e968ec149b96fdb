"""Enumerations for the storage reconciler data model."""

from enum import Enum


class RecordKind(str, Enum):
    """Which relational source a storage reference came from."""

    PHOTO = "photo"
    HERO_IMAGE = "hero_image"
    HERO_SELECTION = "hero_selection"  # Custom banner chosen by a photographer
    PROFILE_IMAGE = "profile_image"


class UsageOperation(str, Enum):
    """Kind of usage-ledger event."""

    UPLOAD = "upload"
    DELETE = "delete"


class DiscrepancyKind(str, Enum):
    """Classification of a key after joining blob inventory and ownership index."""

    ORPHANED = "orphaned"  # In blob store, referenced by nothing
    PHANTOM = "phantom"  # Referenced, but missing from blob store
    MATCHED = "matched"  # Present in both; never actioned


class KeyScope(str, Enum):
    """Visibility scope implied by a key's category prefix."""

    GLOBAL = "global"  # Readable by anyone (global/hero-images/)
    OWNER = "owner"  # Readable only by the owning user
    UNKNOWN = "unknown"  # Legacy or unrecognized layout


class ExecutionMode(str, Enum):
    """Whether the GC executor may mutate the stores."""

    DRY_RUN = "dry_run"
    EXECUTE = "execute"


class ActionOutcome(str, Enum):
    """Per-item outcome of a GC action."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    """Why the executor declined to act on a discrepancy."""

    SIZE_UNKNOWN = "size_unknown"
    VERIFICATION_AMBIGUOUS = "verification_ambiguous"
    ALREADY_ABSENT = "already_absent"  # Orphan vanished before we deleted it
    NOW_REFERENCED = "now_referenced"  # A reference appeared after the scan
    BLOB_REAPPEARED = "blob_reappeared"  # Phantom's blob exists after all
    PARTIALLY_VALID = "partially_valid"  # A record still references an existing blob
    REPOINT_AMBIGUOUS = "repoint_ambiguous"  # Several orphans could be the missing file
    REPOINT_CANDIDATE = "repoint_candidate"  # Orphan may be the file a broken reference meant
    CANCELLED = "cancelled"

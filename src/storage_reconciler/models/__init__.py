"""Database models for the storage reconciler."""

from storage_reconciler.models.base import Base
from storage_reconciler.models.enums import (
    ActionOutcome,
    DiscrepancyKind,
    ExecutionMode,
    KeyScope,
    RecordKind,
    SkipReason,
    UsageOperation,
)
from storage_reconciler.models.hero_image import HeroImage, UserHeroSelection
from storage_reconciler.models.photo import Photo
from storage_reconciler.models.storage_usage import StorageUsageEvent
from storage_reconciler.models.user import User

__all__ = [
    "ActionOutcome",
    "Base",
    "DiscrepancyKind",
    "ExecutionMode",
    "HeroImage",
    "KeyScope",
    "Photo",
    "RecordKind",
    "SkipReason",
    "StorageUsageEvent",
    "UsageOperation",
    "User",
    "UserHeroSelection",
]

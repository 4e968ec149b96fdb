"""Utility modules for the storage reconciler."""

from storage_reconciler.utils.keys import (
    KeyNormalizer,
    ParsedKey,
    default_normalizer,
    estimate_size_bytes,
    is_within,
    normalize,
    parse_key,
)
from storage_reconciler.utils.units import format_bytes

__all__ = [
    "KeyNormalizer",
    "ParsedKey",
    "default_normalizer",
    "estimate_size_bytes",
    "format_bytes",
    "is_within",
    "normalize",
    "parse_key",
]

"""Storage key normalization and parsing.

Database rows and the blob store spell the same object in different ways:
public URLs (`/images/photo/1/2024/05/a.jpg`), absolute URLs, URL-encoded
keys and raw keys. Every comparison in a reconciliation run goes through
`normalize()` so both sides use one canonical spelling.

Canonical keys never start or end with a separator, never contain empty, `.`
or `..` segments, and contain no percent-escapes, so normalizing a canonical
key is a no-op.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

from storage_reconciler.config import settings
from storage_reconciler.exceptions import ExternalReference, MalformedReference
from storage_reconciler.models.enums import KeyScope

# Categories whose keys embed the owning user: {category}/{ownerId}/{yyyy}/{mm}/{file}
OWNER_CATEGORIES = frozenset({"photo", "profile"})

# Shared namespaces: global/{namespace}/{file}
GLOBAL_ROOT = "global"
HERO_NAMESPACE = "hero-images"

_PERCENT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")
_FORBIDDEN_CHARS = re.compile(r"[?#\\\x00-\x1f\x7f]")


@dataclass(frozen=True)
class ParsedKey:
    """Structural view of a canonical key."""

    key: str
    category: str
    scope: KeyScope
    owner_id: str | None = None
    namespace: str | None = None

    @property
    def filename(self) -> str:
        return self.key.rsplit("/", 1)[-1]


class KeyNormalizer:
    """Canonicalizes stored references into comparable storage keys.

    Usage:
        normalizer = KeyNormalizer(public_prefixes=["/images/"])
        normalizer.normalize("/images/photo%2F1%2Fa.jpg")  # -> "photo/1/a.jpg"
    """

    def __init__(
        self,
        public_prefixes: Iterable[str] = ("/images/",),
        public_hosts: Iterable[str] = (),
    ) -> None:
        # Prefixes are matched against URL paths, which always start with "/".
        # Longest first so "/images/global/" wins over "/images/".
        self._prefixes = sorted(
            ("/" + p.lstrip("/") for p in public_prefixes if p.strip("/")),
            key=len,
            reverse=True,
        )
        self._hosts = frozenset(h.lower() for h in public_hosts)

    def normalize(self, reference: str) -> str:
        """Normalize a reference into a canonical storage key.

        Steps:
        - Reject data URIs and URLs on hosts that are not public blob hosts
        - Strip scheme and host from absolute URLs, drop query and fragment
        - Strip the public URL prefix
        - URL-decode exactly once, stripping the prefix afterwards if the
          encoded form hid it (never both)
        - Collapse duplicate separators and `.` segments

        Raises:
            ExternalReference: The reference points outside the blob store.
            MalformedReference: The reference is empty, traverses upwards,
                is double-encoded, or contains forbidden characters.
        """
        if not isinstance(reference, str):
            raise MalformedReference(repr(reference), "not a string")

        raw = reference.strip()
        if not raw:
            raise MalformedReference(reference, "empty reference")

        lowered = raw.lower()
        if lowered.startswith("data:"):
            raise ExternalReference(reference, "inline data URI")

        path = raw
        if lowered.startswith(("http://", "https://")):
            parts = urlsplit(raw)
            host = (parts.hostname or "").lower()
            if host not in self._hosts:
                raise ExternalReference(reference, f"host {host or '?'} is not a public blob host")
            path = parts.path
        else:
            path = _strip_query(path)

        path, stripped = self._strip_prefix(path)

        decoded = unquote(path)
        if not stripped:
            # An encoded public URL only shows its prefix once decoded
            decoded, _ = self._strip_prefix(decoded)
        if _PERCENT_ESCAPE.search(decoded):
            raise MalformedReference(reference, "still percent-encoded after one decode")
        if _FORBIDDEN_CHARS.search(decoded):
            raise MalformedReference(reference, "contains forbidden characters")

        segments: list[str] = []
        for segment in decoded.strip().split("/"):
            if segment in ("", "."):
                continue
            if segment == "..":
                raise MalformedReference(reference, "parent-directory traversal")
            if segment != segment.strip():
                raise MalformedReference(reference, "segment has surrounding whitespace")
            segments.append(segment)

        if not segments:
            raise MalformedReference(reference, "empty after normalization")
        if segments[0].lower().startswith("data:"):
            raise MalformedReference(reference, "decodes to a data URI")

        return "/".join(segments)

    def public_url(self, key: str) -> str:
        """Public URL path for a canonical key, using the shortest configured prefix."""
        if not self._prefixes:
            return key
        return self._prefixes[-1].rstrip("/") + "/" + key

    def _strip_prefix(self, path: str) -> tuple[str, bool]:
        for prefix in self._prefixes:
            if path.startswith(prefix):
                return path[len(prefix):], True
        return path, False

    def try_normalize(self, reference: str | None) -> str | None:
        """Normalize, returning None instead of raising."""
        if reference is None:
            return None
        try:
            return self.normalize(reference)
        except MalformedReference:
            return None


def _strip_query(path: str) -> str:
    for marker in ("?", "#"):
        index = path.find(marker)
        if index != -1:
            path = path[:index]
    return path


def default_normalizer() -> KeyNormalizer:
    """Normalizer configured from settings."""
    return KeyNormalizer(
        public_prefixes=settings.public_url_prefixes,
        public_hosts=settings.public_hosts,
    )


def normalize(reference: str) -> str:
    """Normalize a reference using the configured public prefixes and hosts."""
    return default_normalizer().normalize(reference)


def parse_key(key: str) -> ParsedKey:
    """Split a canonical key into category, scope and owner.

    Examples:
        "photo/42/2024/05/a.jpg" -> category=photo, scope=OWNER, owner_id="42"
        "global/hero-images/h.jpg" -> category=hero, scope=GLOBAL
        "hero/42/2025/05/x.jpg" -> category=hero, scope=UNKNOWN (legacy layout)
    """
    parts = key.split("/")
    head = parts[0]

    if head == GLOBAL_ROOT and len(parts) >= 3:
        namespace = parts[1]
        category = "hero" if namespace == HERO_NAMESPACE else namespace
        return ParsedKey(key=key, category=category, scope=KeyScope.GLOBAL, namespace=namespace)

    if head in OWNER_CATEGORIES and len(parts) >= 3:
        return ParsedKey(key=key, category=head, scope=KeyScope.OWNER, owner_id=parts[1])

    # Legacy per-user hero uploads (hero/{userId}/...) and anything unrecognized
    return ParsedKey(key=key, category=head if len(parts) > 1 else "other", scope=KeyScope.UNKNOWN)


def is_within(key: str, prefixes: Iterable[str]) -> bool:
    """Whether a canonical key falls under any of the given key prefixes.

    An empty prefix collection means "everything".
    """
    prefixes = list(prefixes)
    if not prefixes:
        return True
    return any(key.startswith(prefix) for prefix in prefixes)


# Typical compressed sizes by category, used only for labeled estimates
_ESTIMATED_BYTES = {
    "photo": 1_500_000,
    "hero": 800_000,
    "profile": 150_000,
}


def estimate_size_bytes(key: str) -> int | None:
    """Rough size guess for a key whose real size is unknown.

    The result is only ever reported as a separately labeled estimate and is
    never added to measured totals.
    """
    return _ESTIMATED_BYTES.get(parse_key(key).category)

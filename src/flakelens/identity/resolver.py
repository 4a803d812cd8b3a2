"""Test identity resolver.

Maps raw (title path, file path) pairs reported by test runners onto stable
TestIdentity objects. Identity depends on the title path only, so a test moved
to another file keeps its history.

Known limitation: if two different titles hash to the same truncated
fingerprint, the later one is disambiguated by also hashing the file it was
first seen in. Which of the two gets the plain fingerprint therefore depends on
observation order.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Callable, Sequence

from flakelens.models.identity import TestIdentity

logger = logging.getLogger(__name__)

TITLE_SEPARATOR = " › "

# Separators runners use between suite / describe / test titles
_SEPARATOR_PATTERN = re.compile(r"\s+›\s+|\s+>\s+|::")

FINGERPRINT_LENGTH = 16


def _sha256_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()[:FINGERPRINT_LENGTH]


def normalize_title_path(title_path: str | Sequence[str]) -> tuple[str, ...]:
    """Canonicalize a title path into trimmed, non-empty segments.

    Args:
        title_path: Either a single string using any known separator, or a
            sequence of segments (each of which may itself contain separators).

    Returns:
        Tuple of segments. Case is preserved.
    """
    raw = [title_path] if isinstance(title_path, str) else list(title_path)
    segments: list[str] = []
    for part in raw:
        for piece in _SEPARATOR_PATTERN.split(part):
            cleaned = piece.strip()
            if cleaned:
                segments.append(cleaned)
    return tuple(segments)


def canonical_title(title_path: str | Sequence[str]) -> str:
    """Join a normalized title path with the canonical separator."""
    return TITLE_SEPARATOR.join(normalize_title_path(title_path))


class IdentityResolver:
    """Resolves raw test titles to stable identities. Thread-safe."""

    def __init__(self, hasher: Callable[[str], str] | None = None) -> None:
        """Initialize the resolver.

        Args:
            hasher: Function mapping canonical text to a fingerprint. Defaults
                to truncated SHA-256.
        """
        self._hash = hasher or _sha256_fingerprint
        self._lock = threading.Lock()
        self._by_title: dict[str, TestIdentity] = {}
        self._by_fingerprint: dict[str, TestIdentity] = {}
        self._file_paths: dict[str, list[str]] = {}

    def resolve(self, title_path: str | Sequence[str], file_path: str = "") -> TestIdentity:
        """Return the identity for a test, creating it on first observation.

        Args:
            title_path: Suite / describe / test titles.
            file_path: Source file the test was reported from.

        Returns:
            The stable TestIdentity.

        Raises:
            ValueError: If the title path is empty after normalization.
        """
        segments = normalize_title_path(title_path)
        if not segments:
            msg = "Test title path is empty"
            raise ValueError(msg)
        title = TITLE_SEPARATOR.join(segments)

        with self._lock:
            identity = self._by_title.get(title)
            if identity is None:
                identity = self._create(segments, title, file_path)
            self._track_path(identity.fingerprint, file_path)
            return identity

    def _create(self, segments: tuple[str, ...], title: str, file_path: str) -> TestIdentity:
        fingerprint = self._hash(title)
        owner = self._by_fingerprint.get(fingerprint)
        if owner is not None and owner.title != title:
            logger.warning(
                "Fingerprint collision between %r and %r; disambiguating by file path",
                owner.title,
                title,
            )
            fingerprint = self._hash(f"{title}\0{file_path}")
        identity = TestIdentity(
            fingerprint=fingerprint,
            title_path=segments,
            title=title,
            file_path=file_path,
        )
        self._by_title[title] = identity
        self._by_fingerprint[fingerprint] = identity
        return identity

    def _track_path(self, fingerprint: str, file_path: str) -> None:
        if not file_path:
            return
        paths = self._file_paths.setdefault(fingerprint, [])
        if not paths or paths[-1] != file_path:
            if paths:
                logger.debug("Test %s moved from %s to %s", fingerprint, paths[-1], file_path)
            paths.append(file_path)

    def register(self, identity: TestIdentity) -> None:
        """Register a known identity (used when rebuilding from an archive)."""
        with self._lock:
            self._by_title.setdefault(identity.title, identity)
            self._by_fingerprint.setdefault(identity.fingerprint, identity)

    def lookup(self, title_path: str | Sequence[str]) -> TestIdentity | None:
        """Find an already-known identity by title without creating one."""
        title = canonical_title(title_path)
        with self._lock:
            return self._by_title.get(title)

    def get(self, fingerprint: str) -> TestIdentity | None:
        """Find an identity by fingerprint."""
        with self._lock:
            return self._by_fingerprint.get(fingerprint)

    def file_paths(self, fingerprint: str) -> list[str]:
        """File paths the test has been reported from, oldest first."""
        with self._lock:
            return list(self._file_paths.get(fingerprint, []))

    def identities(self) -> list[TestIdentity]:
        """All known identities."""
        with self._lock:
            return list(self._by_fingerprint.values())

    def forget(self, fingerprint: str) -> None:
        """Drop an identity (after its history was pruned)."""
        with self._lock:
            identity = self._by_fingerprint.pop(fingerprint, None)
            if identity is not None:
                self._by_title.pop(identity.title, None)
            self._file_paths.pop(fingerprint, None)

"""Test identity resolution across runs and file moves."""

from flakelens.identity.resolver import (
    TITLE_SEPARATOR,
    IdentityResolver,
    canonical_title,
    normalize_title_path,
)

__all__ = [
    "TITLE_SEPARATOR",
    "IdentityResolver",
    "canonical_title",
    "normalize_title_path",
]

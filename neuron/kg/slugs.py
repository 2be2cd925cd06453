"""
Slug generation for node keys.

Slugs are lowercase ASCII, hyphen-separated, and stable for a given
input so that re-creating a node from the same label or source record
always lands on the same key.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata

MAX_SLUG_LENGTH = 255
_SOURCE_SLUG_BASE_LENGTH = 200

_NON_WORD = re.compile(r"[^a-z0-9\s-]")
_SEPARATORS = re.compile(r"[\s_-]+")


def slugify(text: str) -> str:
    """
    Convert text into a URL-safe slug.

    Steps:
    1. Unicode NFKD normalization, dropping non-ASCII marks
    2. Lowercase
    3. Remove anything that is not a letter, digit, space or hyphen
    4. Collapse whitespace/underscore/hyphen runs into a single hyphen

    Args:
        text: Arbitrary label text

    Returns:
        Slug string (may be empty if text has no slug-able characters)

    Examples:
        >>> slugify("Alpha")
        'alpha'
        >>> slugify("  Café au Lait!  ")
        'cafe-au-lait'
        >>> slugify("C++ / Rust")
        'c-rust'
    """
    if not text:
        return ""

    ascii_text = (
        unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    )
    cleaned = _NON_WORD.sub("", ascii_text.lower())
    return _SEPARATORS.sub("-", cleaned).strip("-")


def stable_slug_base(title: str) -> str:
    """Slug for a record title, falling back to 'untitled'."""
    return slugify(title) or "untitled"


def build_source_aware_slug(title: str, source_key: str, external_id: str) -> str:
    """
    Build a node slug that is unique per (source, external id).

    Two records with the same title from different sources, or with
    different ids in one source, never collide.

    Args:
        title: Record title (human-readable part of the slug)
        source_key: "<connector type>:<source name>"
        external_id: Record id within the source

    Returns:
        "<title-slug>-<10 hex chars>", at most MAX_SLUG_LENGTH long
    """
    base = stable_slug_base(title)[:_SOURCE_SLUG_BASE_LENGTH].rstrip("-")
    digest = hashlib.sha256(f"{source_key}:{external_id}".encode("utf-8")).hexdigest()
    return f"{base or 'untitled'}-{digest[:10]}"[:MAX_SLUG_LENGTH]

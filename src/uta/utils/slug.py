"""Helpers for turning dotted names into file-safe identifiers."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_NON_IDENTIFIER: Pattern[str] = re.compile(r"[^a-z0-9_]+")
_NON_SLUG: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_UNDERSCORE_COLLAPSE = re.compile(r"_{2,}")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase, filesystem-friendly slug."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _HYPHEN_COLLAPSE.sub("-", _NON_SLUG.sub("-", source)).strip("-")
    if not slug:
        slug = fallback.lower() or "item"
    return abbreviate(slug, max_length=max_length, joiner="-")


def identifier_slug(value: str | None, *, fallback: str = "target", max_length: int = 60) -> str:
    """Return a lowercase slug that is also a valid Python identifier.

    ``pkg.mod.Class`` becomes ``pkg_mod_class``; names that would start with
    a digit get a leading underscore.
    """
    source = (value or "").strip().lower()
    slug = _UNDERSCORE_COLLAPSE.sub("_", _NON_IDENTIFIER.sub("_", source)).strip("_")
    if not slug:
        slug = fallback
    if slug[0].isdigit():
        slug = f"_{slug}"
    return abbreviate(slug, max_length=max_length, joiner="_")


def abbreviate(segment: str, *, max_length: int = 80, joiner: str = "-") -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    if len(segment) <= max_length:
        return segment
    digest = hashlib.sha256(segment.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = segment[:prefix_length].rstrip(joiner) or segment[:prefix_length]
    return f"{prefix}{joiner}{digest}"

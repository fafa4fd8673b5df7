"""Shared utility helpers."""

from .slug import abbreviate, identifier_slug, slugify

__all__ = ["abbreviate", "identifier_slug", "slugify"]

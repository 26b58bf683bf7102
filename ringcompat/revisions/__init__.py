"""Fetching, building and caching daemon revisions."""

from .resolver import RevisionResolver

__all__ = ["RevisionResolver"]

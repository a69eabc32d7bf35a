"""Versioned canonical-category to synonym mapping used by the pre-filter."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalise_label(value: Optional[str]) -> str:
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value).strip().casefold())


class CategoryMap:
    """Exact lookup table; no substring or fuzzy matching."""

    def __init__(self, version: str, mapping: Mapping[str, Iterable[str]]) -> None:
        self.version = version
        self._lookup: Dict[str, str] = {}
        for canonical, synonyms in mapping.items():
            key = normalise_label(canonical)
            if not key:
                continue
            self._register(key, key)
            for synonym in synonyms or []:
                alias = normalise_label(synonym)
                if alias:
                    self._register(alias, key)

    def _register(self, alias: str, canonical: str) -> None:
        existing = self._lookup.get(alias)
        if existing is not None and existing != canonical:
            logger.warning(
                "Category synonym %r maps to both %r and %r; keeping %r",
                alias,
                existing,
                canonical,
                existing,
            )
            return
        self._lookup[alias] = canonical

    def canonical(self, value: Optional[str]) -> Optional[str]:
        """Return the canonical category, or the normalised label when unmapped."""

        label = normalise_label(value)
        if not label:
            return None
        return self._lookup.get(label, label)

    def same_category(self, left: Optional[str], right: Optional[str]) -> bool:
        first = self.canonical(left)
        return first is not None and first == self.canonical(right)

    @classmethod
    def from_settings(cls, settings) -> "CategoryMap":
        return cls(
            getattr(settings, "category_map_version", "unversioned"),
            getattr(settings, "category_map", {}) or {},
        )

"""Builder name normalization, alias mapping and slugs."""

from __future__ import annotations

import re
from collections.abc import Mapping

_WHITESPACE_RE = re.compile(r"\s+")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_name(name: str) -> str:
    """Case-insensitive, whitespace-collapsed form of a builder name."""
    return _WHITESPACE_RE.sub(" ", name).strip().casefold()


def slugify(name: str) -> str:
    """URL slug for a builder name ("OF Builder #3" -> "of-builder-3")."""
    return _NON_SLUG_RE.sub("-", name.lower()).strip("-")


class NameAliasTable:
    """Maps variant spellings of a builder name onto one canonical name.

    Lookups and keys are normalized, so `{"Atlas Labs": "Atlas"}` also
    matches " atlas   LABS ".

    Example:
        >>> aliases = NameAliasTable({"Atlas Labs": "Atlas"})
        >>> aliases.canonical("ATLAS labs")
        'atlas'
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._aliases = {normalize_name(k): normalize_name(v) for k, v in (aliases or {}).items()}

    def __len__(self) -> int:
        return len(self._aliases)

    def canonical(self, name: str) -> str:
        key = normalize_name(name)
        return self._aliases.get(key, key)

"""Ranked matching of model-reported field names onto known fields.

Models paraphrase field names ("Port Authority", "portAuthority",
"port authority name"). Matching is tried in rank order:

    1. exact      key, extraction key or label, case-insensitive
    2. normalized same, ignoring case, spaces, underscores and punctuation
    3. substring  either side contains the other (normalized)

Anything else is unmatched and the caller applies its default.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, TypeVar

from portpass.research_core.profiles import FieldSpec

T = TypeVar("T")

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


class MatchKind(str, Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    SUBSTRING = "substring"
    DEFAULT = "default"


@dataclass(slots=True)
class FieldMatch(Generic[T]):
    item: T | None
    kind: MatchKind


def _normalize(name: str) -> str:
    return _NON_ALNUM_RE.sub("", name.lower())


def _names(spec: FieldSpec) -> list[str]:
    names = [spec.key, spec.label]
    if spec.extraction_key:
        names.append(spec.extraction_key)
    return names


class FieldMatcher(Generic[T]):
    """Index model items by their reported field name and resolve per field."""

    def __init__(self, items: Iterable[tuple[str, T]]):
        self._items = [(str(name or ""), item) for name, item in items]

    def match(self, spec: FieldSpec) -> FieldMatch[T]:
        names = _names(spec)
        lowered = {n.lower() for n in names}
        for reported, item in self._items:
            if reported.strip().lower() in lowered:
                return FieldMatch(item, MatchKind.EXACT)

        normalized = {_normalize(n) for n in names}
        for reported, item in self._items:
            if _normalize(reported) in normalized:
                return FieldMatch(item, MatchKind.NORMALIZED)

        for reported, item in self._items:
            candidate = _normalize(reported)
            if not candidate:
                continue
            for name in normalized:
                if candidate in name or name in candidate:
                    return FieldMatch(item, MatchKind.SUBSTRING)

        return FieldMatch(None, MatchKind.DEFAULT)

"""Heuristic confidence scoring over research findings.

The score is the sum of four independently capped components:

    source quality   max 0.3
    consistency      max 0.3
    recency          max 0.2
    completeness     max 0.2
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Sequence

OFFICIAL_KEYWORDS = ("port authority", "official", "government", "customs")
DIRECTORY_KEYWORDS = ("directory", "maritime")

_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_DIGIT_RE = re.compile(r"\d")


def source_quality_score(content: str, sources: Sequence[str]) -> float:
    lowered = content.lower()
    if any(keyword in lowered for keyword in OFFICIAL_KEYWORDS):
        return 0.3
    if any(keyword in lowered for keyword in DIRECTORY_KEYWORDS):
        return 0.2
    if sources:
        return 0.1
    return 0.0


def consistency_score(sources: Sequence[str]) -> float:
    if len(sources) >= 2:
        return 0.3
    if len(sources) == 1:
        return 0.15
    return 0.05


def recency_score(content: str, current_year: int | None = None) -> float:
    match = _YEAR_RE.search(content)
    if not match:
        return 0.1
    if current_year is None:
        current_year = datetime.now(timezone.utc).year
    age = current_year - int(match.group(1))
    if age <= 1:
        return 0.2
    if age <= 3:
        return 0.1
    return 0.05


def completeness_score(content: str) -> float:
    long_enough = len(content) > 100
    if long_enough and _DIGIT_RE.search(content):
        return 0.2
    if long_enough:
        return 0.1
    return 0.05


def calculate_confidence(
    content: str,
    sources: Sequence[str],
    current_year: int | None = None,
) -> float:
    """Deterministic 0..1 score for a block of findings and its citations."""
    content = content or ""
    sources = list(sources or [])
    score = (
        source_quality_score(content, sources)
        + consistency_score(sources)
        + recency_score(content, current_year)
        + completeness_score(content)
    )
    return round(min(score, 1.0), 4)


def blend_confidence(llm_confidence: float, heuristic_confidence: float) -> float:
    """Weighted blend used for every approval decision."""
    llm = min(max(float(llm_confidence), 0.0), 1.0)
    heuristic = min(max(float(heuristic_confidence), 0.0), 1.0)
    return round(0.6 * llm + 0.4 * heuristic, 4)

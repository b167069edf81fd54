from __future__ import annotations

import random

import pytest

from portpass.research_core.confidence import (
    blend_confidence,
    calculate_confidence,
    completeness_score,
    recency_score,
    source_quality_score,
)


def test_empty_findings_score_is_floor():
    score = calculate_confidence("", [])
    assert score <= 0.25
    assert score == pytest.approx(0.2)


def test_strong_findings_are_capped_at_one():
    content = (
        "The Port Authority of Valencia confirmed in its 2025 annual report that "
        "container throughput reached 5.4 million TEU across all public terminals."
    )
    assert calculate_confidence(content, ["https://a.es", "https://b.es"], current_year=2026) == 1.0


def test_source_quality_tiers():
    assert source_quality_score("Official customs notice", []) == 0.3
    assert source_quality_score("Listed in a maritime directory", []) == 0.2
    assert source_quality_score("Blog post", ["https://blog"]) == 0.1
    assert source_quality_score("Blog post", []) == 0.0


def test_recency_uses_first_year_mentioned():
    assert recency_score("Updated 2025, founded 1990", current_year=2026) == 0.2
    assert recency_score("Survey from 2023", current_year=2026) == 0.1
    assert recency_score("Survey from 2015", current_year=2026) == 0.05
    assert recency_score("No dates here", current_year=2026) == 0.1


def test_completeness_requires_length_and_digits():
    long_text = "x" * 120
    assert completeness_score(long_text) == 0.1
    assert completeness_score(long_text + " 42") == 0.2
    assert completeness_score("short 42") == 0.05


def test_score_always_within_unit_interval():
    rng = random.Random(7)
    words = ["port authority", "official", "maritime", "2024", "1999", "TEU", "42", "terminal", "x" * 60]
    for _ in range(200):
        content = " ".join(rng.choice(words) for _ in range(rng.randint(0, 12)))
        sources = [f"https://s{i}" for i in range(rng.randint(0, 4))]
        score = calculate_confidence(content, sources)
        assert 0.0 <= score <= 1.0


def test_blend_weights_llm_over_heuristic():
    assert blend_confidence(0.9, 1.0) == pytest.approx(0.94)
    assert blend_confidence(0.4, 0.5) == pytest.approx(0.44)
    assert blend_confidence(1.7, -0.2) == pytest.approx(0.6)

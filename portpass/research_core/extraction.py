"""Structured field extraction from combined research findings.

The extraction service may answer each field in one of two shapes:

    "port_authority": "Port of Rotterdam Authority"            # legacy scalar
    "port_authority": {"value": ..., "confidence": 0.9,        # enriched
                       "sources": [0, 2], "quality": "explicit"}

Both are normalized here into ``ExtractedField``; nothing past this module
sees the raw shapes.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Sequence

from portpass.errors import ErrorCategory, ResearchError
from portpass.llm_client import CompletionClient, extract_json_object
from portpass.models.research import ExtractedField, FieldQuality, ResearchQuery
from portpass.research_core.confidence import blend_confidence, calculate_confidence
from portpass.research_core.profiles import EntityProfile, FieldSpec
from portpass.research_core.run_settings import RunSettings
from portpass.services.logger import RunObserver
from portpass.services.prompt_store import render_prompt

SECTION_DELIMITER = "\n\n---\n\n"
ELISION_MARKER = "\n\n[... middle section truncated ...]\n\n"
DEFAULT_LLM_CONFIDENCE = 0.5


@dataclass(slots=True)
class CombinedReport:
    text: str
    index_map: dict[str, int]
    queries: list[ResearchQuery]

    def index_description(self) -> str:
        return ", ".join(f"{idx}={q.title}" for idx, q in enumerate(self.queries))

    def query_at(self, index: int) -> ResearchQuery | None:
        if 0 <= index < len(self.queries):
            return self.queries[index]
        return None


def build_combined_report(queries: Sequence[ResearchQuery]) -> CombinedReport:
    """Join successful findings under their section headers, in query order."""
    ordered = list(queries)
    sections = [f"{q.section_header}\n\n{q.result_text.strip()}" for q in ordered]
    return CombinedReport(
        text=SECTION_DELIMITER.join(sections),
        index_map={q.query_type: idx for idx, q in enumerate(ordered)},
        queries=ordered,
    )


def elide_middle(text: str, budget: int, head: int, tail: int) -> str:
    """Keep head and tail when over budget so both context and citations survive."""
    if len(text) <= budget:
        return text
    return text[:head] + ELISION_MARKER + text[-tail:]


# --- Response normalization ---

def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_LLM_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_LLM_CONFIDENCE
    if confidence != confidence:  # NaN
        return DEFAULT_LLM_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def _coerce_indices(value: Any, query_count: int) -> set[int]:
    if value is None:
        return set()
    if not isinstance(value, (list, tuple, set)):
        value = [value]
    indices: set[int] = set()
    for item in value:
        if isinstance(item, bool):
            continue
        try:
            idx = int(item)
        except (TypeError, ValueError):
            continue
        if 0 <= idx < query_count:
            indices.add(idx)
    return indices


def _coerce_quality(value: Any) -> FieldQuality | None:
    try:
        return FieldQuality(str(value).strip().lower()) if value is not None else None
    except ValueError:
        return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def normalize_field(field_key: str, raw: Any, query_count: int) -> ExtractedField:
    """Collapse either response shape into one ``ExtractedField``."""
    if isinstance(raw, dict) and "value" in raw:
        value = raw.get("value")
        return ExtractedField(
            field_key=field_key,
            raw_value=None if _is_empty(value) else value,
            llm_confidence=_coerce_confidence(raw.get("confidence", DEFAULT_LLM_CONFIDENCE)),
            source_query_indices=_coerce_indices(raw.get("sources"), query_count),
            quality=_coerce_quality(raw.get("quality")),
        )
    return ExtractedField(
        field_key=field_key,
        raw_value=None if _is_empty(raw) else raw,
        llm_confidence=DEFAULT_LLM_CONFIDENCE,
    )


def normalize_response(
    payload: dict[str, Any],
    profile: EntityProfile,
    query_count: int,
) -> dict[str, ExtractedField]:
    """Map the service payload onto the profile's fields, keyed by field key."""
    lowered = {str(k).lower(): v for k, v in payload.items()}
    extracted: dict[str, ExtractedField] = {}
    for spec in profile.fields:
        raw = None
        for candidate in (spec.source_key, spec.key):
            if candidate in payload:
                raw = payload[candidate]
                break
            if candidate.lower() in lowered:
                raw = lowered[candidate.lower()]
                break
        extracted[spec.key] = normalize_field(spec.key, raw, query_count)
    return extracted


# --- Confidence ---

def _keyword_fallback_query(spec: FieldSpec, queries: Sequence[ResearchQuery]) -> ResearchQuery | None:
    for keyword in spec.keywords:
        for query in queries:
            if keyword.lower() in query.query_text.lower():
                return query
    return None


def heuristic_confidence(
    spec: FieldSpec,
    extracted: ExtractedField,
    report: CombinedReport,
) -> float:
    """Score only the findings the field was attributed to.

    Without attributions, the first query whose text mentions one of the
    field's keywords stands in as the best-guess source.
    """
    attributed = [report.queries[i] for i in sorted(extracted.source_query_indices)]
    if not attributed:
        guess = _keyword_fallback_query(spec, report.queries)
        attributed = [guess] if guess else []
    content = "\n\n".join(q.result_text for q in attributed)
    sources: list[str] = []
    for q in attributed:
        sources.extend(q.sources)
    return calculate_confidence(content, sources)


def combined_confidence(spec: FieldSpec, extracted: ExtractedField, report: CombinedReport) -> float:
    return blend_confidence(extracted.llm_confidence, heuristic_confidence(spec, extracted, report))


def attributed_sources(extracted: ExtractedField, report: CombinedReport) -> list[str]:
    """Titles of the attributed queries, else every citation gathered in the run."""
    titles = [report.queries[i].title for i in sorted(extracted.source_query_indices)]
    if titles:
        return titles
    sources: list[str] = []
    for q in report.queries:
        for source in q.sources:
            if source not in sources:
                sources.append(source)
    return sources


# --- Service call ---

def _field_schema(profile: EntityProfile) -> str:
    return "\n".join(f"- {spec.source_key}: {spec.description}" for spec in profile.fields)


def build_extraction_prompt(profile: EntityProfile, report: CombinedReport, run_settings: RunSettings) -> str:
    text = elide_middle(
        report.text,
        run_settings.extraction_char_budget,
        run_settings.extraction_head_chars,
        run_settings.extraction_tail_chars,
    )
    return render_prompt(
        "extraction.template",
        entity_label=profile.label,
        query_index=report.index_description(),
        field_schema=_field_schema(profile),
        report=text,
    )


async def extract_fields(
    llm: CompletionClient,
    profile: EntityProfile,
    report: CombinedReport,
    run_settings: RunSettings,
    observer: RunObserver | None = None,
) -> dict[str, ExtractedField]:
    if not report.queries:
        raise ResearchError(
            ErrorCategory.API_ERROR,
            "All research queries failed. Please try again.",
            retryable=True,
        )

    prompt = build_extraction_prompt(profile, report, run_settings)
    raw_text = await llm.complete(
        prompt,
        json_mode=True,
        temperature=0.1,
        caller="extraction",
        observer=observer,
    )
    try:
        payload = extract_json_object(raw_text)
    except json.JSONDecodeError as exc:
        raise ResearchError(
            ErrorCategory.VALIDATION_ERROR,
            "Received unexpected data format. Please try again.",
            original_error=f"Extraction response was not JSON: {exc}",
            retryable=False,
        ) from exc

    return normalize_response(payload, profile, len(report.queries))

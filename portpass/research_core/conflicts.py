from __future__ import annotations

import json
from typing import Any

from loguru import logger

from portpass.errors import ResearchError
from portpass.llm_client import CompletionClient, extract_json_object
from portpass.models.research import ConflictEntry, ExtractedField
from portpass.research_core.extraction import CombinedReport
from portpass.research_core.field_matcher import FieldMatcher, MatchKind
from portpass.research_core.profiles import EntityProfile
from portpass.research_core.run_settings import RunSettings
from portpass.services.logger import RunObserver
from portpass.services.prompt_store import render_prompt


def build_conflict_prompt(
    profile: EntityProfile,
    report: CombinedReport,
    extracted: dict[str, ExtractedField],
    run_settings: RunSettings,
) -> str:
    query_results = "\n\n".join(
        f"[{idx}] {q.title}:\n{q.result_text[: run_settings.conflict_excerpt_chars]}"
        for idx, q in enumerate(report.queries)
    )
    values = {
        key: field.raw_value
        for key, field in extracted.items()
        if field.raw_value is not None
    }
    return render_prompt(
        "conflicts.detect",
        entity_label=profile.label,
        query_results=query_results,
        extracted_values=json.dumps(values, indent=2, default=str),
    )


def _parse_entry(raw: Any, report: CombinedReport) -> ConflictEntry | None:
    if not isinstance(raw, dict):
        return None
    index = raw.get("sourceQueryIndex", raw.get("source_query_index"))
    try:
        index = int(index) if index is not None and not isinstance(index, bool) else None
    except (TypeError, ValueError):
        index = None
    query = report.query_at(index) if index is not None else None
    title = raw.get("sourceQueryTitle") or raw.get("source_query_title") or (query.title if query else "")
    try:
        confidence = min(max(float(raw.get("confidence", 0.5)), 0.0), 1.0)
    except (TypeError, ValueError):
        confidence = 0.5
    evidence = raw.get("evidence")
    return ConflictEntry(
        conflicting_value=raw.get("value"),
        source_query_index=index,
        source_query_title=str(title),
        confidence=confidence,
        evidence=str(evidence) if evidence else None,
    )


def parse_conflicts(
    payload: dict[str, Any],
    profile: EntityProfile,
    report: CombinedReport,
) -> dict[str, list[ConflictEntry]]:
    raw_conflicts = payload.get("conflicts")
    if not isinstance(raw_conflicts, list):
        return {}

    parsed: list[tuple[str, list[ConflictEntry]]] = []
    for item in raw_conflicts:
        if not isinstance(item, dict):
            continue
        values = item.get("conflictingValues") or item.get("conflicting_values") or []
        entries = [e for e in (_parse_entry(v, report) for v in values) if e is not None]
        if entries:
            parsed.append((str(item.get("field", "")), entries))

    matcher = FieldMatcher(parsed)
    conflicts: dict[str, list[ConflictEntry]] = {}
    for spec in profile.fields:
        match = matcher.match(spec)
        if match.kind != MatchKind.DEFAULT and match.item:
            conflicts[spec.key] = match.item
    return conflicts


async def detect_conflicts(
    llm: CompletionClient,
    profile: EntityProfile,
    report: CombinedReport,
    extracted: dict[str, ExtractedField],
    run_settings: RunSettings,
    observer: RunObserver | None = None,
) -> dict[str, list[ConflictEntry]]:
    """Best-effort: any service or parse failure yields an empty conflict set."""
    if len(report.queries) < 2:
        return {}
    prompt = build_conflict_prompt(profile, report, extracted, run_settings)
    try:
        raw_text = await llm.complete(
            prompt,
            json_mode=True,
            temperature=0.2,
            caller="conflict_detection",
            observer=observer,
        )
        payload = extract_json_object(raw_text)
    except (ResearchError, json.JSONDecodeError) as exc:
        if observer is not None:
            observer.degraded("conflict_detection", str(exc))
        else:
            logger.warning(f"Conflict detection failed, continuing without conflicts: {exc}")
        return {}
    return parse_conflicts(payload, profile, report)

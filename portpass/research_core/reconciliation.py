"""Turn extracted fields into reviewable field-update proposals."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from portpass.errors import ErrorCategory, ResearchError
from portpass.llm_client import CompletionClient, extract_json_object
from portpass.models.research import (
    ConflictEntry,
    ExtractedField,
    FieldProposal,
    ShouldUpdateAnalysis,
    UpdatePriority,
    ValidationResult,
)
from portpass.research_core.extraction import CombinedReport, attributed_sources, combined_confidence
from portpass.research_core.field_matcher import FieldMatcher, MatchKind
from portpass.research_core.profiles import COORDINATES, LIST, REFERENCE, EntityProfile, FieldSpec
from portpass.research_core.run_settings import RunSettings
from portpass.research_core.validators import validate_coordinates, validate_field
from portpass.services.logger import RunObserver
from portpass.services.prompt_store import render_prompt

INVALID_PENALTY = 0.2
WARNING_PENALTY = 0.1
FALLBACK_MIN_CONFIDENCE = 0.5
GEOCODED_VALID_CONFIDENCE = 0.9
GEOCODED_INVALID_CONFIDENCE = 0.5

FALLBACK_UPDATE_REASON = "Proposed value differs from current and has sufficient confidence"
FALLBACK_KEEP_REASON = "Insufficient confidence or no change needed"
UNMATCHED_REASON = "No specific reasoning provided"
GEOCODED_REASON = "Location geocoded from port name and country using OpenStreetMap"

_PRIORITY_RANK = {UpdatePriority.HIGH: 0, UpdatePriority.MEDIUM: 1, UpdatePriority.LOW: 2}


class Geocoder(Protocol):
    source_label: str

    async def geocode_port(self, port_name: str, country: str) -> tuple[float, float] | None: ...


@dataclass(slots=True)
class ScoredField:
    spec: FieldSpec
    extracted: ExtractedField
    current_value: Any
    proposed_value: Any
    confidence: float
    validation: ValidationResult


# --- Scoring and validation ---

def apply_validation_penalty(confidence: float, validation: ValidationResult) -> float:
    if not validation.is_valid:
        confidence -= INVALID_PENALTY
    elif validation.warnings:
        confidence -= WARNING_PENALTY
    return round(max(confidence, 0.0), 4)


def score_fields(
    profile: EntityProfile,
    extracted: dict[str, ExtractedField],
    report: CombinedReport,
    record: dict[str, Any],
) -> list[ScoredField]:
    """Validate, correct and score every field with a non-null extracted value."""
    scored: list[ScoredField] = []
    for spec in profile.fields:
        field = extracted.get(spec.key)
        if field is None or field.raw_value is None:
            continue
        validation = validate_field(spec.validator, field.raw_value)
        if validation.corrected_value is not None:
            proposed = validation.corrected_value
        elif not validation.is_valid:
            proposed = field.raw_value
        else:
            # Validator cleaned the value away (e.g. a list of blanks).
            continue
        confidence = apply_validation_penalty(combined_confidence(spec, field, report), validation)
        scored.append(
            ScoredField(
                spec=spec,
                extracted=field,
                current_value=spec.current_value(record),
                proposed_value=proposed,
                confidence=confidence,
                validation=validation,
            )
        )
    return scored


def raise_on_critical(scored: list[ScoredField]) -> None:
    critical = [s for s in scored if s.validation.critical]
    if not critical:
        return
    details = " | ".join(f"{s.spec.label}: {'; '.join(s.validation.errors)}" for s in critical)
    raise ResearchError(
        ErrorCategory.VALIDATION_ERROR,
        "Critical validation errors detected. Please review the extracted data.",
        original_error=details,
        retryable=False,
    )


def _comparable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip().lower()
        return stripped or None
    if isinstance(value, (list, tuple)):
        return frozenset(str(v).strip().lower() for v in value) or None
    if isinstance(value, dict) and {"lat", "lon"} <= value.keys():
        try:
            return (round(float(value["lat"]), 6), round(float(value["lon"]), 6))
        except (TypeError, ValueError):
            return json.dumps(value, sort_keys=True, default=str)
    return value


def values_differ(current: Any, proposed: Any) -> bool:
    return _comparable(current) != _comparable(proposed)


def fallback_should_update(current: Any, proposed: Any, confidence: float) -> tuple[bool, str]:
    should = values_differ(current, proposed) and confidence >= FALLBACK_MIN_CONFIDENCE
    return should, FALLBACK_UPDATE_REASON if should else FALLBACK_KEEP_REASON


# --- Batch should-update analysis ---

def _display(value: Any) -> str:
    if value is None or value == "" or value == []:
        return "Not set"
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(value)


def build_analysis_prompt(
    profile: EntityProfile,
    scored: list[ScoredField],
    report: CombinedReport,
    run_settings: RunSettings,
) -> str:
    blocks = [
        "\n".join(
            [
                f"FIELD: {s.spec.label} ({s.spec.key})",
                f"CURRENT: {_display(s.current_value)}",
                f"PROPOSED: {_display(s.proposed_value)}",
                f"CONFIDENCE: {round(s.confidence * 100)}%",
            ]
        )
        for s in scored
    ]
    return render_prompt(
        "analysis.should_update",
        entity_label=profile.label,
        fields_block="\n\n".join(blocks),
        research_excerpt=report.text[: run_settings.analysis_excerpt_chars],
    )


def _parse_priority(value: Any) -> UpdatePriority | None:
    try:
        return UpdatePriority(str(value).strip().lower()) if value is not None else None
    except ValueError:
        return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def parse_analyses(payload: dict[str, Any]) -> list[ShouldUpdateAnalysis]:
    raw = payload.get("analyses")
    if not isinstance(raw, list):
        raise ValueError("analysis response has no 'analyses' list")
    analyses: list[ShouldUpdateAnalysis] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        should = item.get("shouldUpdate", item.get("should_update", True))
        analyses.append(
            ShouldUpdateAnalysis(
                field=str(item.get("field", "")),
                should_update=_parse_bool(should),
                reasoning=str(item.get("reasoning") or UNMATCHED_REASON),
                update_priority=_parse_priority(item.get("updatePriority", item.get("update_priority"))),
            )
        )
    return analyses


async def analyze_should_update(
    llm: CompletionClient,
    profile: EntityProfile,
    scored: list[ScoredField],
    report: CombinedReport,
    run_settings: RunSettings,
    observer: RunObserver | None = None,
) -> list[ShouldUpdateAnalysis] | None:
    """One batch call for all fields; None means fall back to the deterministic rule."""
    if not scored:
        return []
    prompt = build_analysis_prompt(profile, scored, report, run_settings)
    try:
        raw_text = await llm.complete(
            prompt,
            json_mode=True,
            temperature=0.2,
            caller="should_update_analysis",
            observer=observer,
        )
        return parse_analyses(extract_json_object(raw_text))
    except (ResearchError, ValueError) as exc:
        if observer is not None:
            observer.degraded("analyzing", str(exc))
        else:
            logger.warning(f"Should-update analysis failed, using fallback rule: {exc}")
        return None


# --- Proposals ---

def build_proposals(
    scored: list[ScoredField],
    analyses: list[ShouldUpdateAnalysis] | None,
    conflicts: dict[str, list[ConflictEntry]],
    report: CombinedReport,
) -> list[FieldProposal]:
    matcher = FieldMatcher((a.field, a) for a in analyses or [])
    proposals: list[FieldProposal] = []

    for s in scored:
        priority = s.spec.default_priority
        if analyses is None:
            should_update, reasoning = fallback_should_update(s.current_value, s.proposed_value, s.confidence)
        else:
            match = matcher.match(s.spec)
            if match.kind == MatchKind.DEFAULT or match.item is None:
                should_update, reasoning = True, UNMATCHED_REASON
            else:
                should_update = match.item.should_update
                reasoning = match.item.reasoning
                priority = match.item.update_priority or priority

        proposals.append(
            FieldProposal(
                field=s.spec.key,
                label=s.spec.label,
                current_value=s.current_value,
                proposed_value=s.proposed_value,
                confidence=s.confidence,
                should_update=should_update,
                reasoning=reasoning,
                sources=attributed_sources(s.extracted, report),
                update_priority=priority,
                validation_errors=list(s.validation.errors),
                validation_warnings=list(s.validation.warnings),
                conflicts=list(conflicts.get(s.spec.key, [])),
                quality=s.extracted.quality,
            )
        )

    return order_by_priority(proposals)


def order_by_priority(proposals: list[FieldProposal]) -> list[FieldProposal]:
    """Stable sort, high priority first."""
    return sorted(proposals, key=lambda p: _PRIORITY_RANK[p.update_priority])


async def propose_location(
    profile: EntityProfile,
    record: dict[str, Any],
    geocoder: Geocoder | None,
) -> FieldProposal | None:
    """Geocoded location, only for records that have no coordinates yet."""
    spec = profile.location_field
    if not profile.geocode_location or spec is None or geocoder is None:
        return None
    if spec.current_value(record) is not None:
        return None

    coords = await geocoder.geocode_port(
        str(record.get("name") or ""),
        str(record.get("country") or ""),
    )
    if coords is None:
        return None

    lat, lon = coords
    validation = validate_coordinates({"lat": lat, "lon": lon})
    return FieldProposal(
        field=spec.key,
        label=spec.label,
        current_value=None,
        proposed_value=validation.corrected_value or {"lat": lat, "lon": lon},
        confidence=GEOCODED_VALID_CONFIDENCE if validation.is_valid else GEOCODED_INVALID_CONFIDENCE,
        should_update=True,
        reasoning=GEOCODED_REASON,
        sources=[geocoder.source_label],
        update_priority=spec.default_priority,
        validation_errors=list(validation.errors),
        validation_warnings=list(validation.warnings),
    )


class PortDirectory(Protocol):
    async def find_port_by_name(self, name: str, country: str | None) -> dict[str, Any] | None: ...


async def resolve_port_assignment(
    proposal: FieldProposal,
    record: dict[str, Any],
    directory: PortDirectory,
) -> Any:
    """Resolve a suggested port name to a port id in the operator's country.

    Returns the new port id, or None when the suggestion does not resolve
    to a different known port. Unresolvable suggestions stay visible but
    are marked as not to be applied.
    """
    country = record.get("port_country") or record.get("country")
    port = await directory.find_port_by_name(str(proposal.proposed_value), country)
    if port is None:
        proposal.should_update = False
        proposal.validation_warnings.append(
            f'Suggested port "{proposal.proposed_value}" does not match a known port in {country or "the same country"}'
        )
        return None
    if str(port.get("id")) == str(record.get("port_id")):
        proposal.should_update = False
        proposal.reasoning = "Operator is already assigned to this port"
        return None
    return port.get("id")


def build_update_payload(
    profile: EntityProfile,
    proposals: list[FieldProposal],
    *,
    notes_value: str | None,
    summary: str,
    researched_at: str,
    resolved_references: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Column values for every proposal plus the bookkeeping pair.

    Computed at preview time; the apply step writes only the approved subset.
    """
    resolved_references = resolved_references or {}
    payload: dict[str, Any] = {}
    for proposal in proposals:
        spec = profile.get_field(proposal.field)
        if spec is None:
            continue
        if spec.kind == REFERENCE:
            if resolved_references.get(spec.key) is not None:
                payload[spec.key] = resolved_references[spec.key]
            continue
        if spec.kind in (COORDINATES, LIST) or proposal.proposed_value is not None:
            payload.update(spec.to_columns(proposal.proposed_value))
    if notes_value is not None:
        payload[profile.notes_column] = notes_value
    payload["last_deep_research_at"] = researched_at
    payload["last_deep_research_summary"] = summary
    return payload

from __future__ import annotations

import json
import random

import pytest

from portpass.errors import ErrorCategory, ResearchError
from portpass.models.research import ConflictEntry, QueryMode, ResearchQuery, UpdatePriority
from portpass.research_core.extraction import build_combined_report, normalize_field
from portpass.research_core.profiles import PORT_PROFILE, TERMINAL_OPERATOR_PROFILE
from portpass.research_core.reconciliation import (
    FALLBACK_KEEP_REASON,
    FALLBACK_UPDATE_REASON,
    UNMATCHED_REASON,
    ScoredField,
    analyze_should_update,
    apply_validation_penalty,
    build_proposals,
    build_update_payload,
    fallback_should_update,
    propose_location,
    raise_on_critical,
    resolve_port_assignment,
    score_fields,
    values_differ,
)
from portpass.research_core.run_settings import RunSettings
from portpass.research_core.validators import validate_field
from tests.conftest import FakeLLM

REPORT = build_combined_report(
    [
        ResearchQuery(
            query_type="governance",
            title="Governance",
            query_text="Research the port authority",
            mode=QueryMode.STANDARD,
            section_header="## Governance Report",
            result_text="The port authority runs the port.",
            sources=["https://a"],
        ),
        ResearchQuery(
            query_type="isps_risk",
            title="ISPS Risk",
            query_text="Assess ISPS risk",
            mode=QueryMode.STANDARD,
            section_header="## ISPS Risk & Enforcement Report",
            result_text="Risk is rated medium.",
        ),
    ]
)


def _extracted(**values):
    return {key: normalize_field(key, raw, len(REPORT.queries)) for key, raw in values.items()}


def _scored(key: str, proposed, confidence: float, current=None) -> ScoredField:
    spec = PORT_PROFILE.get_field(key)
    return ScoredField(
        spec=spec,
        extracted=normalize_field(key, proposed, 2),
        current_value=current,
        proposed_value=proposed,
        confidence=confidence,
        validation=validate_field(spec.validator, proposed),
    )


def test_validation_penalties():
    valid = validate_field("isps_level", "High")
    case_fixed = validate_field("isps_level", "high")
    invalid = validate_field("isps_level", "highish risk")
    assert apply_validation_penalty(0.7, valid) == 0.7
    assert apply_validation_penalty(0.7, case_fixed) == pytest.approx(0.6)
    assert apply_validation_penalty(0.7, invalid) == pytest.approx(0.5)
    assert apply_validation_penalty(0.1, invalid) == 0.0


def test_score_fields_applies_corrections_and_skips_nulls():
    extracted = _extracted(
        port_level_isps_risk={"value": "high", "confidence": 0.8, "sources": [1]},
        port_authority=None,
        identity_competitors={"value": [" ", ""], "confidence": 0.9},
    )
    scored = score_fields(PORT_PROFILE, extracted, REPORT, {"port_level_isps_risk": "Low"})
    assert [s.spec.key for s in scored] == ["port_level_isps_risk"]
    assert scored[0].proposed_value == "High"
    assert scored[0].current_value == "Low"


def test_raise_on_critical_lists_every_offending_field():
    scored = [_scored("port_level_isps_risk", "Purple", 0.8), _scored("isps_enforcement_strength", "Mauve", 0.8)]
    with pytest.raises(ResearchError) as exc_info:
        raise_on_critical(scored)
    assert exc_info.value.category == ErrorCategory.VALIDATION_ERROR
    assert "Port-Level ISPS Risk" in exc_info.value.original_error
    assert "ISPS Enforcement Strength" in exc_info.value.original_error


def test_values_differ_ignores_case_and_list_order():
    assert not values_differ("Port Authority", " port authority ")
    assert not values_differ(["A", "B"], ["b", "a"])
    assert values_differ(None, "x")
    assert not values_differ({"lat": 1.0, "lon": 2.0}, {"lat": 1, "lon": 2})


def test_fallback_rule():
    assert fallback_should_update("Low", "High", 0.5) == (True, FALLBACK_UPDATE_REASON)
    assert fallback_should_update("Low", "High", 0.49) == (False, FALLBACK_KEEP_REASON)
    assert fallback_should_update("High", "high", 0.9) == (False, FALLBACK_KEEP_REASON)


@pytest.mark.asyncio
async def test_analysis_uses_single_batch_call():
    llm = FakeLLM(
        {
            "should_update_analysis": {
                "analyses": [
                    {"field": "port_authority", "shouldUpdate": False, "reasoning": "Same", "updatePriority": "low"}
                ]
            }
        }
    )
    scored = [_scored("port_authority", "Port Authority X", 0.9), _scored("port_level_isps_risk", "High", 0.9)]

    analyses = await analyze_should_update(llm, PORT_PROFILE, scored, REPORT, RunSettings())

    assert len(llm.calls) == 1
    assert analyses[0].should_update is False
    assert analyses[0].update_priority == UpdatePriority.LOW
    assert "CONFIDENCE: 90%" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_analysis_failure_returns_none():
    scored = [_scored("port_authority", "Port Authority X", 0.9)]
    assert await analyze_should_update(FakeLLM(), PORT_PROFILE, scored, REPORT, RunSettings()) is None
    no_list = FakeLLM({"should_update_analysis": {"result": []}})
    assert await analyze_should_update(no_list, PORT_PROFILE, scored, REPORT, RunSettings()) is None


def test_proposals_use_analysis_or_defaults_and_sort_by_priority():
    from portpass.models.research import ShouldUpdateAnalysis

    scored = [
        _scored("port_level_isps_risk", "High", 0.7, current="High"),
        _scored("identity_adoption_rate", "40%", 0.6),
        _scored("port_authority", "Port Authority X", 0.9),
    ]
    analyses = [
        ShouldUpdateAnalysis("Port-Level ISPS Risk", False, "Unchanged", UpdatePriority.LOW),
        ShouldUpdateAnalysis("port_authority", True, "Was empty", None),
    ]
    conflicts = {
        "port_authority": [
            ConflictEntry("Port Authority X", 0, "Governance", 0.8),
            ConflictEntry("City Port Office", 1, "ISPS Risk", 0.4),
        ]
    }

    proposals = build_proposals(scored, analyses, conflicts, REPORT)

    assert [p.field for p in proposals] == ["port_authority", "identity_adoption_rate", "port_level_isps_risk"]
    authority, adoption, risk = proposals
    assert authority.update_priority == UpdatePriority.HIGH
    assert authority.has_conflict is True
    assert adoption.should_update is True
    assert adoption.reasoning == UNMATCHED_REASON
    assert risk.should_update is False
    assert risk.update_priority == UpdatePriority.LOW


def test_auto_approval_tracks_confidence_threshold():
    rng = random.Random(1234)
    for _ in range(300):
        llm_confidence = rng.random()
        query = REPORT.queries[rng.randint(0, 1)]
        extracted = _extracted(
            port_authority={"value": "Port Authority X", "confidence": llm_confidence, "sources": [REPORT.index_map[query.query_type]]}
        )
        scored = score_fields(PORT_PROFILE, extracted, REPORT, {})
        for proposal in build_proposals(scored, None, {}, REPORT):
            assert proposal.auto_approved == (proposal.confidence > 0.80)
            assert 0.0 <= proposal.confidence <= 1.0


class _StubGeocoder:
    source_label = "OpenStreetMap"

    def __init__(self, result):
        self.result = result
        self.calls = []

    async def geocode_port(self, port_name, country):
        self.calls.append((port_name, country))
        return self.result


@pytest.mark.asyncio
async def test_location_proposed_only_when_missing():
    geocoder = _StubGeocoder((51.9, 4.5))
    proposal = await propose_location(PORT_PROFILE, {"name": "Rotterdam", "country": "Netherlands"}, geocoder)
    assert proposal.proposed_value == {"lat": 51.9, "lon": 4.5}
    assert proposal.reasoning.startswith("Location geocoded")
    assert geocoder.calls == [("Rotterdam", "Netherlands")]

    existing = {"name": "Rotterdam", "country": "Netherlands", "latitude": 1.0, "longitude": 2.0}
    assert await propose_location(PORT_PROFILE, existing, geocoder) is None
    assert await propose_location(TERMINAL_OPERATOR_PROFILE, {"name": "x"}, geocoder) is None


@pytest.mark.asyncio
async def test_port_assignment_resolution(store):
    record = await store.get_record("terminal_operator", "op1")
    spec = TERMINAL_OPERATOR_PROFILE.get_field("port_id")

    def proposal_for(name):
        from portpass.models.research import FieldProposal

        return FieldProposal(spec.key, spec.label, "Rotterdam", name, 0.8, True, "moved")

    moved = proposal_for("Amsterdam")
    assert await resolve_port_assignment(moved, record, store) == "p2"

    same = proposal_for("rotterdam")
    assert await resolve_port_assignment(same, record, store) is None
    assert same.should_update is False

    abroad = proposal_for("Antwerp")
    assert await resolve_port_assignment(abroad, record, store) is None
    assert abroad.should_update is False
    assert abroad.validation_warnings


def test_update_payload_encodes_columns():
    from portpass.models.research import FieldProposal

    proposals = [
        FieldProposal("identity_competitors", "Identity Competitors", None, ["Portbase"], 0.7, True, "r"),
        FieldProposal("location", "Location", None, {"lat": 1.5, "lon": 2.5}, 0.9, True, "r"),
        FieldProposal("port_authority", "Port Authority", None, "PA", 0.9, False, "r"),
    ]
    payload = build_update_payload(
        PORT_PROFILE,
        proposals,
        notes_value="notes",
        summary="summary",
        researched_at="2026-03-01T00:00:00+00:00",
    )
    assert json.loads(payload["identity_competitors"]) == ["Portbase"]
    assert payload["latitude"] == 1.5
    assert payload["longitude"] == 2.5
    assert payload["port_authority"] == "PA"
    assert payload["strategic_notes"] == "notes"
    assert payload["last_deep_research_summary"] == "summary"
    assert "location" not in payload

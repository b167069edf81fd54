from __future__ import annotations

from datetime import datetime, timezone

import pytest

from portpass.models.research import FieldProposal
from portpass.research_core.apply import apply_updates, select_auto_approved, select_updates
from portpass.research_core.profiles import PORT_PROFILE, TERMINAL_OPERATOR_PROFILE

PORT_PAYLOAD = {
    "last_deep_research_at": "2026-03-01T10:00:00+00:00",
    "last_deep_research_summary": "Rotterdam runs a landlord model.",
    "port_authority": "Port of Rotterdam Authority",
    "port_level_isps_risk": "Medium",
    "strategic_notes": "Existing analyst notes.\n\n--- Deep Research 2026-03-01 ---\n- New concession round",
}


def test_only_approved_fields_and_bookkeeping_are_selected():
    updates, applied = select_updates(PORT_PROFILE, PORT_PAYLOAD, ["port_authority"])

    assert applied == ["port_authority"]
    assert updates == {
        "last_deep_research_at": "2026-03-01T10:00:00+00:00",
        "last_deep_research_summary": "Rotterdam runs a landlord model.",
        "port_authority": "Port of Rotterdam Authority",
    }


def test_approved_field_missing_from_payload_is_skipped():
    updates, applied = select_updates(PORT_PROFILE, PORT_PAYLOAD, ["identity_adoption_rate", "not_a_field"])
    assert applied == []
    assert set(updates) == {"last_deep_research_at", "last_deep_research_summary"}


def test_notes_are_written_only_when_approved():
    updates, applied = select_updates(PORT_PROFILE, PORT_PAYLOAD, ["strategic_notes"])
    assert applied == ["strategic_notes"]
    assert updates["strategic_notes"].startswith("Existing analyst notes.")


def test_coordinates_write_both_columns():
    payload = {"last_deep_research_at": "2026-03-01T10:00:00+00:00", "latitude": 51.9, "longitude": 4.0}
    updates, applied = select_updates(TERMINAL_OPERATOR_PROFILE, payload, ["coordinates"])
    assert applied == ["coordinates"]
    assert updates["latitude"] == 51.9
    assert updates["longitude"] == 4.0


@pytest.mark.asyncio
async def test_apply_is_idempotent(store):
    approved = ["port_authority", "port_level_isps_risk", "strategic_notes"]

    first = await apply_updates(store, PORT_PROFILE, "p1", PORT_PAYLOAD, approved)
    second = await apply_updates(store, PORT_PROFILE, "p1", PORT_PAYLOAD, approved)

    assert first.record == second.record
    assert first.updated_fields == approved
    assert second.record["port_authority"] == "Port of Rotterdam Authority"
    assert second.record["country"] == "Netherlands"


def _proposal(name, confidence, should_update):
    return FieldProposal(
        field=name,
        label=name,
        current_value=None,
        proposed_value="x",
        confidence=confidence,
        should_update=should_update,
        reasoning="",
    )


def test_select_auto_approved_requires_confidence_and_update():
    proposals = [
        _proposal("a", 0.95, True),
        _proposal("b", 0.95, False),
        _proposal("c", 0.80, True),
        _proposal("d", 0.81, True),
    ]
    assert select_auto_approved(proposals) == ["a", "d"]


def test_missing_bookkeeping_is_defaulted():
    updates, applied = select_updates(
        PORT_PROFILE,
        {"port_authority": "Port of Rotterdam Authority"},
        ["port_authority"],
        researched_at="2026-03-02T09:00:00+00:00",
    )
    assert applied == ["port_authority"]
    assert updates["last_deep_research_at"] == "2026-03-02T09:00:00+00:00"
    assert updates["last_deep_research_summary"] == ""


def test_missing_timestamp_defaults_to_now():
    updates, _ = select_updates(PORT_PROFILE, {}, [])
    stamped = datetime.fromisoformat(updates["last_deep_research_at"])
    assert abs((datetime.now(timezone.utc) - stamped).total_seconds()) < 60

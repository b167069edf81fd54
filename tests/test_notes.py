from __future__ import annotations

import random
import string
from datetime import date

import pytest

from portpass.models.research import QueryMode, ResearchQuery
from portpass.research_core.extraction import build_combined_report
from portpass.research_core.notes import combine_notes, generate_summary, synthesize_notes
from portpass.research_core.profiles import PORT_PROFILE
from portpass.research_core.run_settings import RunSettings
from tests.conftest import FakeLLM

DAY = date(2026, 3, 1)

REPORT = build_combined_report(
    [
        ResearchQuery(
            query_type="governance",
            title="Governance",
            query_text="...",
            mode=QueryMode.STANDARD,
            section_header="## Governance Report",
            result_text="A landlord port authority model with a new 2026 concession round. " * 10,
        )
    ]
)


def test_combine_appends_dated_block():
    assert combine_notes("Old notes.", "  New bullet.  ", DAY) == (
        "Old notes.\n\n--- Deep Research 2026-03-01 ---\nNew bullet."
    )
    assert combine_notes(None, "New bullet.", DAY) == "--- Deep Research 2026-03-01 ---\nNew bullet."


@pytest.mark.asyncio
async def test_model_combined_notes_are_ignored():
    llm = FakeLLM(
        {"notes": {"newFindings": "- New concession round", "combinedNotes": "rewritten and shortened"}}
    )
    notes = await synthesize_notes(llm, PORT_PROFILE, "Old notes.", REPORT, RunSettings(), DAY)
    assert notes.generated_by == "llm"
    assert notes.new_findings == "- New concession round"
    assert notes.combined_notes == "Old notes.\n\n--- Deep Research 2026-03-01 ---\n- New concession round"
    assert llm.calls[0]["temperature"] == 0.4


@pytest.mark.asyncio
async def test_notes_fall_back_to_report_excerpt():
    notes = await synthesize_notes(FakeLLM(), PORT_PROFILE, "Old notes.", REPORT, RunSettings(), DAY)
    assert notes.generated_by == "fallback"
    assert notes.new_findings == REPORT.text[:200].strip() + "..."
    assert notes.combined_notes.startswith("Old notes.\n\n--- Deep Research 2026-03-01 ---\n")


@pytest.mark.asyncio
async def test_notes_without_new_findings_fall_back():
    llm = FakeLLM({"notes": {"combinedNotes": "only this"}})
    notes = await synthesize_notes(llm, PORT_PROFILE, None, REPORT, RunSettings(), DAY)
    assert notes.generated_by == "fallback"


@pytest.mark.asyncio
async def test_combined_notes_never_lose_prior_content():
    rng = random.Random(99)
    alphabet = string.ascii_letters + string.digits + " \n-*.,"
    for i in range(50):
        current = "".join(rng.choice(alphabet) for _ in range(rng.randint(1, 300)))
        responses = [
            {"notes": {"newFindings": "- finding", "combinedNotes": ""}},
            {"notes": "garbage"},
            {},
        ]
        llm = FakeLLM(responses[i % len(responses)])
        notes = await synthesize_notes(llm, PORT_PROFILE, current, REPORT, RunSettings(), DAY)
        assert notes.combined_notes.startswith(current)
        assert notes.current_notes == current


@pytest.mark.asyncio
async def test_summary_and_fallback():
    llm = FakeLLM({"summary": "  Rotterdam runs a landlord model.  "})
    assert await generate_summary(llm, PORT_PROFILE, REPORT, RunSettings()) == "Rotterdam runs a landlord model."
    assert llm.calls[0]["json_mode"] is False
    assert llm.calls[0]["temperature"] == 0.3

    fallback = await generate_summary(FakeLLM(), PORT_PROFILE, REPORT, RunSettings())
    assert fallback == REPORT.text[:200]

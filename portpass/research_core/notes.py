"""Strategic notes and run summary.

Notes are an audit trail: new findings are only ever appended below a
dated separator, never merged into or rewritten over existing text.
"""
from __future__ import annotations

import json
from datetime import date

from portpass.errors import ResearchError
from portpass.llm_client import CompletionClient, extract_json_object
from portpass.models.research import NotesProposal
from portpass.research_core.extraction import CombinedReport
from portpass.research_core.profiles import EntityProfile
from portpass.research_core.run_settings import RunSettings
from portpass.services.logger import RunObserver
from portpass.services.prompt_store import render_prompt


def notes_header(day: date) -> str:
    return f"--- Deep Research {day.isoformat()} ---"


def combine_notes(current_notes: str | None, new_findings: str, day: date) -> str:
    block = f"{notes_header(day)}\n{new_findings.strip()}"
    if not current_notes:
        return block
    return f"{current_notes}\n\n{block}"


def fallback_notes(
    current_notes: str | None,
    report: CombinedReport,
    day: date,
    max_chars: int,
) -> NotesProposal:
    excerpt = report.text[:max_chars].strip()
    if len(report.text) > max_chars:
        excerpt += "..."
    return NotesProposal(
        current_notes=current_notes or "",
        new_findings=excerpt,
        combined_notes=combine_notes(current_notes, excerpt, day),
        generated_by="fallback",
    )


async def synthesize_notes(
    llm: CompletionClient,
    profile: EntityProfile,
    current_notes: str | None,
    report: CombinedReport,
    run_settings: RunSettings,
    day: date,
    observer: RunObserver | None = None,
) -> NotesProposal:
    prompt = render_prompt(
        "notes.synthesize",
        entity_label=profile.label,
        current_notes=current_notes or "(none)",
        report=report.text[: run_settings.notes_char_budget],
    )
    try:
        raw_text = await llm.complete(
            prompt,
            json_mode=True,
            temperature=0.4,
            caller="notes",
            observer=observer,
        )
        payload = extract_json_object(raw_text)
    except (ResearchError, json.JSONDecodeError) as exc:
        if observer is not None:
            observer.degraded("notes", str(exc))
        return fallback_notes(current_notes, report, day, run_settings.notes_fallback_chars)

    new_findings = payload.get("newFindings") or payload.get("new_findings")
    if not isinstance(new_findings, str) or not new_findings.strip():
        if observer is not None:
            observer.degraded("notes", "response had no new findings")
        return fallback_notes(current_notes, report, day, run_settings.notes_fallback_chars)

    # The model's own combinedNotes is ignored: it may drop or reword prior notes.
    return NotesProposal(
        current_notes=current_notes or "",
        new_findings=new_findings.strip(),
        combined_notes=combine_notes(current_notes, new_findings, day),
    )


async def generate_summary(
    llm: CompletionClient,
    profile: EntityProfile,
    report: CombinedReport,
    run_settings: RunSettings,
    observer: RunObserver | None = None,
) -> str:
    prompt = render_prompt(
        "summary.generate",
        entity_label=profile.label,
        report=report.text[: run_settings.summary_char_budget],
    )
    try:
        summary = await llm.complete(prompt, temperature=0.3, caller="summary", observer=observer)
    except ResearchError as exc:
        if observer is not None:
            observer.degraded("summary", str(exc))
        return report.text[: run_settings.summary_fallback_chars]
    return summary.strip() or report.text[: run_settings.summary_fallback_chars]

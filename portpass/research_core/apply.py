"""Commit half of the preview/apply protocol."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from portpass.models.research import FieldProposal
from portpass.research_core.profiles import EntityProfile
from portpass.services.record_store import RecordStore


@dataclass(slots=True)
class ApplyResult:
    record: dict[str, Any]
    updated_fields: list[str] = field(default_factory=list)
    written_columns: list[str] = field(default_factory=list)


def columns_for(profile: EntityProfile, field_name: str) -> tuple[str, ...]:
    """Columns an approved field name writes; unknown names map to nothing."""
    if field_name == profile.notes_column:
        return (profile.notes_column,)
    spec = profile.get_field(field_name)
    if spec is None:
        return ()
    return spec.columns()


def bookkeeping_defaults(researched_at: str | None = None) -> dict[str, Any]:
    return {
        "last_deep_research_at": researched_at or datetime.now(timezone.utc).isoformat(),
        "last_deep_research_summary": "",
    }


def select_updates(
    profile: EntityProfile,
    update_payload: dict[str, Any],
    approved_fields: Iterable[str],
    researched_at: str | None = None,
) -> tuple[dict[str, Any], list[str]]:
    """Pick the bookkeeping pair plus approved fields present in the payload.

    The bookkeeping pair is always written; a payload missing it gets the
    current time and an empty summary. An approved field absent from the
    payload is skipped, not an error.
    """
    defaults = bookkeeping_defaults(researched_at)
    updates: dict[str, Any] = {
        column: update_payload[column] if column in update_payload else defaults.get(column)
        for column in profile.bookkeeping_columns
    }
    applied: list[str] = []
    for name in dict.fromkeys(approved_fields):
        columns = [c for c in columns_for(profile, name) if c in update_payload]
        if not columns:
            continue
        for column in columns:
            updates[column] = update_payload[column]
        applied.append(name)
    return updates, applied


async def apply_updates(
    store: RecordStore,
    profile: EntityProfile,
    entity_id: str,
    update_payload: dict[str, Any],
    approved_fields: Iterable[str],
) -> ApplyResult:
    updates, applied = select_updates(profile, update_payload, approved_fields)
    record = await store.update_record(profile.entity_type, entity_id, updates)
    return ApplyResult(record=record, updated_fields=applied, written_columns=sorted(updates))


def select_auto_approved(proposals: Iterable[FieldProposal]) -> list[str]:
    """Field names for an "accept all high confidence" action."""
    return [p.field for p in proposals if p.auto_approved and p.should_update]

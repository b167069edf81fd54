from __future__ import annotations

import copy
from typing import Any, Protocol

from portpass.config import settings


class RecordStore(Protocol):
    async def get_record(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...
    async def update_record(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...
    async def save_research_report(self, entity_type: str, entity_id: str, report: str) -> None: ...
    async def find_port_by_name(self, name: str, country: str | None) -> dict[str, Any] | None: ...


class RecordNotFound(LookupError):
    pass


def match_port(ports: list[dict[str, Any]], name: str, country: str | None) -> dict[str, Any] | None:
    """Exact (case-insensitive) name match, else a unique substring match, within ``country``."""
    wanted = name.strip().lower()
    if not wanted:
        return None
    candidates = [
        p for p in ports
        if country is None or str(p.get("country") or "").lower() == str(country).lower()
    ]
    exact = [p for p in candidates if str(p.get("name") or "").strip().lower() == wanted]
    if exact:
        return exact[0]
    partial = [
        p for p in candidates
        if wanted in str(p.get("name") or "").lower() or str(p.get("name") or "").lower() in wanted
    ]
    return partial[0] if len(partial) == 1 else None


class InMemoryRecordStore:
    """Dict-backed store for local runs and tests."""

    def __init__(self, records: dict[str, dict[str, dict[str, Any]]] | None = None):
        self._records: dict[str, dict[str, dict[str, Any]]] = copy.deepcopy(records or {})
        self.write_count = 0

    def add(self, entity_type: str, record: dict[str, Any]) -> None:
        self._records.setdefault(entity_type, {})[str(record["id"])] = dict(record)

    async def get_record(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        record = self._records.get(entity_type, {}).get(str(entity_id))
        if record is None:
            return None
        record = dict(record)
        if entity_type == "terminal_operator" and record.get("port_id") is not None:
            port = self._records.get("port", {}).get(str(record["port_id"]))
            if port:
                record.setdefault("port_name", port.get("name"))
                record.setdefault("port_country", port.get("country"))
        return record

    async def update_record(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        record = self._records.get(entity_type, {}).get(str(entity_id))
        if record is None:
            raise RecordNotFound(f"{entity_type} {entity_id} not found")
        record.update(fields)
        self.write_count += 1
        return await self.get_record(entity_type, entity_id)

    async def save_research_report(self, entity_type: str, entity_id: str, report: str) -> None:
        await self.update_record(entity_type, entity_id, {"last_deep_research_report": report})

    async def find_port_by_name(self, name: str, country: str | None) -> dict[str, Any] | None:
        return match_port(list(self._records.get("port", {}).values()), name, country)


_store: RecordStore | None = None


def get_record_store() -> RecordStore:
    global _store
    if _store is None:
        backend = settings.record_store.lower().strip()
        if backend == "postgres":
            from portpass.services.database import PostgresRecordStore

            _store = PostgresRecordStore()
        elif backend == "memory":
            _store = InMemoryRecordStore()
        else:
            raise ValueError(f"Unsupported RECORD_STORE: {settings.record_store}")
    return _store


def strip_report(report: str, max_bytes: int) -> str:
    """Drop null bytes (rejected by Postgres text columns) and cap the UTF-8 size."""
    cleaned = report.replace("\x00", "")
    encoded = cleaned.encode("utf-8")
    if len(encoded) <= max_bytes:
        return cleaned
    return encoded[:max_bytes].decode("utf-8", errors="ignore")

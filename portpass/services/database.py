"""PostgreSQL record store using asyncpg."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from portpass.config import settings
from portpass.research_core.profiles import get_profile
from portpass.services.logger import log_db_operation
from portpass.services.record_store import RecordNotFound, match_port


# Connection pool
_pool: asyncpg.Pool | None = None

_TIMESTAMP_COLUMNS = {"last_deep_research_at"}

_SELECT_SQL = {
    "port": """
        SELECT p.*, c.name AS cluster_name
        FROM ports p
        LEFT JOIN clusters c ON c.id = p.cluster_id
        WHERE p.id = $1
    """,
    "terminal_operator": """
        SELECT o.*, p.name AS port_name, p.country AS port_country
        FROM terminal_operators o
        LEFT JOIN ports p ON p.id = o.port_id
        WHERE o.id = $1
    """,
}


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


def _coerce_column_value(column: str, value: Any) -> Any:
    if column in _TIMESTAMP_COLUMNS and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


async def get_record(entity_type: str, entity_id: str) -> dict[str, Any] | None:
    """Fetch one entity with the joined names its research queries need."""
    sql = _SELECT_SQL.get(entity_type)
    if sql is None:
        raise KeyError(f"Unknown entity type: {entity_type}")
    pool = await _get_pool()
    async with pool.acquire() as conn:
        result = await conn.fetchrow(sql, entity_id)
        return dict(result) if result else None


async def update_record(entity_type: str, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Write the given columns; only columns the profile declares are accepted."""
    profile = get_profile(entity_type)
    allowed = profile.writable_columns()
    updates = {k: _coerce_column_value(k, v) for k, v in fields.items() if k in allowed}
    rejected = sorted(set(fields) - set(updates))
    if rejected:
        raise ValueError(f"Columns not writable for {entity_type}: {rejected}")
    if not updates:
        record = await get_record(entity_type, entity_id)
        if record is None:
            raise RecordNotFound(f"{entity_type} {entity_id} not found")
        return record

    set_clause = ", ".join(f"{k} = ${i+2}" for i, k in enumerate(updates.keys()))
    values = list(updates.values())

    pool = await _get_pool()
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchrow(
                f"""
                UPDATE {profile.table}
                SET {set_clause}, updated_at = NOW()
                WHERE id = $1
                RETURNING id
                """,
                entity_id,
                *values,
            )
    except asyncpg.PostgresError as exc:
        log_db_operation("update", profile.table, "failed", details=entity_id, error=str(exc))
        raise
    if result is None:
        raise RecordNotFound(f"{entity_type} {entity_id} not found")
    log_db_operation("update", profile.table, "success", details=f"{entity_id}: {sorted(updates)}")
    return await get_record(entity_type, entity_id)


async def save_research_report(entity_type: str, entity_id: str, report: str) -> None:
    profile = get_profile(entity_type)
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"UPDATE {profile.table} SET {profile.report_column} = $2 WHERE id = $1",
            entity_id,
            report,
        )
    log_db_operation("update", profile.table, "success", details=f"{entity_id}: {profile.report_column}")


async def find_port_by_name(name: str, country: str | None) -> dict[str, Any] | None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        if country:
            results = await conn.fetch(
                "SELECT id, name, country FROM ports WHERE LOWER(country) = LOWER($1)",
                country,
            )
        else:
            results = await conn.fetch("SELECT id, name, country FROM ports")
    return match_port([dict(r) for r in results], name, country)


class PostgresRecordStore:
    """``RecordStore`` facade over the module-level query functions."""

    async def get_record(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        return await get_record(entity_type, entity_id)

    async def update_record(self, entity_type: str, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await update_record(entity_type, entity_id, fields)

    async def save_research_report(self, entity_type: str, entity_id: str, report: str) -> None:
        await save_research_report(entity_type, entity_id, report)

    async def find_port_by_name(self, name: str, country: str | None) -> dict[str, Any] | None:
        return await find_port_by_name(name, country)

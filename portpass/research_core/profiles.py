"""Per-entity research topology: which queries run and which fields they feed."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from portpass.models.research import QueryMode, QuerySpec, ResearchQuery, UpdatePriority
from portpass.services.prompt_store import render_prompt

LIST = "list"
TEXT = "text"
COORDINATES = "coordinates"
REFERENCE = "reference"


def parse_list_column(value: Any) -> list[str] | None:
    """List columns are stored as JSON text; tolerate already-decoded lists."""
    if value is None or value == "":
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [part.strip() for part in value.split(",") if part.strip()]
        return parsed if isinstance(parsed, list) else None
    return None


@dataclass(slots=True)
class FieldSpec:
    key: str
    label: str
    description: str
    validator: str | None = None
    kind: str = TEXT
    default_priority: UpdatePriority = UpdatePriority.MEDIUM
    keywords: tuple[str, ...] = ()
    extraction_key: str | None = None

    @property
    def source_key(self) -> str:
        """Key the extraction service uses for this field."""
        return self.extraction_key or self.key

    def current_value(self, record: dict[str, Any]) -> Any:
        if self.kind == COORDINATES:
            lat, lon = record.get("latitude"), record.get("longitude")
            if lat is None or lon is None:
                return None
            return {"lat": lat, "lon": lon}
        if self.kind == LIST:
            return parse_list_column(record.get(self.key))
        if self.kind == REFERENCE:
            return record.get("port_name")
        return record.get(self.key)

    def to_columns(self, value: Any) -> dict[str, Any]:
        if self.kind == COORDINATES:
            if not isinstance(value, dict):
                return {}
            return {"latitude": value.get("lat"), "longitude": value.get("lon")}
        if self.kind == LIST:
            return {self.key: json.dumps(value) if value is not None else None}
        return {self.key: value}

    def columns(self) -> tuple[str, ...]:
        if self.kind == COORDINATES:
            return ("latitude", "longitude")
        return (self.key,)


@dataclass(slots=True)
class EntityProfile:
    entity_type: str
    label: str
    table: str
    queries: tuple[QuerySpec, ...]
    fields: tuple[FieldSpec, ...]
    query_context: Callable[[dict[str, Any]], dict[str, str]]
    location_field: FieldSpec | None = None
    geocode_location: bool = False
    notes_column: str = "strategic_notes"
    bookkeeping_columns: tuple[str, ...] = ("last_deep_research_at", "last_deep_research_summary")
    report_column: str = "last_deep_research_report"

    def build_queries(self, record: dict[str, Any]) -> list[ResearchQuery]:
        context = self.query_context(record)
        return [
            ResearchQuery(
                query_type=spec.query_type,
                title=spec.title,
                query_text=render_prompt(spec.prompt_key, **context),
                mode=spec.mode,
                section_header=spec.section_header,
            )
            for spec in self.queries
        ]

    def get_field(self, key: str) -> FieldSpec | None:
        for spec in self.all_fields():
            if spec.key == key:
                return spec
        return None

    def all_fields(self) -> tuple[FieldSpec, ...]:
        if self.location_field is not None and self.location_field not in self.fields:
            return self.fields + (self.location_field,)
        return self.fields

    def writable_columns(self) -> set[str]:
        columns: set[str] = {self.notes_column, *self.bookkeeping_columns, self.report_column}
        for spec in self.all_fields():
            columns.update(spec.columns())
        return columns

    def display_name(self, record: dict[str, Any]) -> str:
        return str(record.get("name") or record.get("id") or "")


def _port_context(record: dict[str, Any]) -> dict[str, str]:
    return {
        "name": str(record.get("name") or ""),
        "country": str(record.get("country") or "Unknown"),
        "cluster": str(record.get("cluster_name") or record.get("cluster_id") or "Unknown"),
    }


def _operator_context(record: dict[str, Any]) -> dict[str, str]:
    return {
        "name": str(record.get("name") or ""),
        "port": str(record.get("port_name") or "Unknown"),
        "country": str(record.get("port_country") or record.get("country") or "Unknown"),
    }


PORT_PROFILE = EntityProfile(
    entity_type="port",
    label="port",
    table="ports",
    queries=(
        QuerySpec(
            query_type="governance",
            title="Governance",
            section_header="## Governance Report",
            prompt_key="queries.port.governance",
            keywords=("authority", "governance", "government"),
        ),
        QuerySpec(
            query_type="isps_risk",
            title="ISPS Risk",
            section_header="## ISPS Risk & Enforcement Report",
            prompt_key="queries.port.isps_risk",
            keywords=("isps", "security", "enforcement"),
        ),
        QuerySpec(
            query_type="strategic_intelligence",
            title="Strategic Intelligence",
            section_header="## Strategic Intelligence Report",
            prompt_key="queries.port.strategic_intelligence",
            mode=QueryMode.DEEP,
            keywords=("network", "cluster", "competitive", "identity", "adoption"),
        ),
    ),
    fields=(
        FieldSpec(
            key="port_authority",
            label="Port Authority",
            description="Official name of the port authority (string)",
            validator="port_authority",
            default_priority=UpdatePriority.HIGH,
            keywords=("authority", "governance"),
        ),
        FieldSpec(
            key="identity_competitors",
            label="Identity Competitors",
            description="Digital identity or credentialing systems competing at this port (list of strings)",
            validator="name_list_competitors",
            kind=LIST,
            keywords=("identity", "competitor", "credential"),
        ),
        FieldSpec(
            key="identity_adoption_rate",
            label="Identity Adoption Rate",
            description='Adoption of digital identity systems: a percentage like "40%" or High/Medium/Low/None',
            validator="adoption_rate",
            keywords=("adoption", "identity"),
        ),
        FieldSpec(
            key="port_level_isps_risk",
            label="Port-Level ISPS Risk",
            description="ISPS security risk level: one of Low, Medium, High, Very High",
            validator="isps_level",
            keywords=("isps", "risk", "security"),
        ),
        FieldSpec(
            key="isps_enforcement_strength",
            label="ISPS Enforcement Strength",
            description="ISPS enforcement strength: one of Weak, Moderate, Strong, Very Strong",
            validator="enforcement_strength",
            keywords=("enforcement", "isps"),
        ),
    ),
    query_context=_port_context,
    location_field=FieldSpec(
        key="location",
        label="Location",
        description="Port coordinates",
        validator="coordinates",
        kind=COORDINATES,
    ),
    geocode_location=True,
)


TERMINAL_OPERATOR_PROFILE = EntityProfile(
    entity_type="terminal_operator",
    label="terminal operator",
    table="terminal_operators",
    queries=(
        QuerySpec(
            query_type="identity_location",
            title="Location",
            section_header="## Location Report",
            prompt_key="queries.terminal_operator.identity_location",
            keywords=("location", "latitude", "longitude", "port"),
        ),
        QuerySpec(
            query_type="capacity_operations",
            title="Capacity & Operations",
            section_header="## Capacity & Operations Report",
            prompt_key="queries.terminal_operator.capacity_operations",
            keywords=("capacity", "cargo", "operator", "parent"),
        ),
    ),
    fields=(
        FieldSpec(
            key="operator_type",
            label="Operator Type",
            description='Either "commercial" (serves third parties) or "captive" (serves its own cargo)',
            validator="operator_type",
            keywords=("commercial", "captive", "operator"),
        ),
        FieldSpec(
            key="parent_companies",
            label="Parent Companies",
            description="Parent or owning companies (list of strings)",
            validator="name_list_parents",
            kind=LIST,
            keywords=("parent", "owner", "subsidiary"),
        ),
        FieldSpec(
            key="cargo_types",
            label="Cargo Types",
            description="Cargo categories handled (list, from: Container, RoRo, Dry Bulk, Liquid Bulk, Break Bulk, Multipurpose, Passenger/Ferry)",
            validator="cargo_types",
            kind=LIST,
            keywords=("cargo", "container", "bulk"),
        ),
        FieldSpec(
            key="capacity",
            label="Capacity",
            description='Annual capacity with unit, e.g. "2.5 million TEU" or "10 million tons"',
            validator="capacity",
            keywords=("capacity", "teu", "tons"),
        ),
        FieldSpec(
            key="coordinates",
            label="Coordinates",
            description='Terminal coordinates as {"lat": number, "lon": number}',
            validator="coordinates",
            kind=COORDINATES,
            extraction_key="new_coordinates",
            keywords=("latitude", "longitude", "location"),
        ),
        FieldSpec(
            key="port_id",
            label="Port Assignment",
            description="Name of the port the operator is actually located in, only if different from the current port",
            validator="port_name",
            kind=REFERENCE,
            default_priority=UpdatePriority.HIGH,
            extraction_key="suggested_port_name",
            keywords=("located", "port"),
        ),
    ),
    query_context=_operator_context,
)


PROFILES: dict[str, EntityProfile] = {
    PORT_PROFILE.entity_type: PORT_PROFILE,
    TERMINAL_OPERATOR_PROFILE.entity_type: TERMINAL_OPERATOR_PROFILE,
}


def get_profile(entity_type: str) -> EntityProfile:
    try:
        return PROFILES[entity_type]
    except KeyError:
        raise KeyError(f"Unknown entity type: {entity_type}") from None

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from portpass.errors import ResearchError


class QueryMode(str, Enum):
    STANDARD = "standard"
    DEEP = "deep"


class FieldQuality(str, Enum):
    EXPLICIT = "explicit"
    INFERRED = "inferred"
    PARTIAL = "partial"


class UpdatePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(slots=True)
class QuerySpec:
    """One entry of an entity type's fixed query set."""

    query_type: str
    title: str
    section_header: str
    prompt_key: str
    mode: QueryMode = QueryMode.STANDARD
    keywords: tuple[str, ...] = ()


@dataclass(slots=True)
class ResearchQuery:
    query_type: str
    title: str
    query_text: str
    mode: QueryMode
    section_header: str
    result_text: str = ""
    sources: list[str] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_type": self.query_type,
            "title": self.title,
            "query": self.query_text,
            "mode": self.mode.value,
            "result": self.result_text,
            "sources": list(self.sources),
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class RetrievalResult:
    content: str
    sources: list[str] = field(default_factory=list)
    model: str = ""


@dataclass(slots=True)
class ExtractedField:
    field_key: str
    raw_value: Any
    llm_confidence: float = 0.5
    source_query_indices: set[int] = field(default_factory=set)
    quality: FieldQuality | None = None


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    corrected_value: Any = None
    suggestions: list[str] = field(default_factory=list)
    critical: bool = False

    @property
    def has_correction(self) -> bool:
        return self.corrected_value is not None


@dataclass(slots=True)
class ConflictEntry:
    conflicting_value: Any
    source_query_index: int | None
    source_query_title: str
    confidence: float
    evidence: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflicting_value": self.conflicting_value,
            "source_query_index": self.source_query_index,
            "source_query_title": self.source_query_title,
            "confidence": self.confidence,
            "evidence": self.evidence,
        }


@dataclass(slots=True)
class ShouldUpdateAnalysis:
    field: str
    should_update: bool
    reasoning: str
    update_priority: UpdatePriority | None = None


@dataclass(slots=True)
class FieldProposal:
    field: str
    label: str
    current_value: Any
    proposed_value: Any
    confidence: float
    should_update: bool
    reasoning: str
    sources: list[str] = field(default_factory=list)
    update_priority: UpdatePriority = UpdatePriority.MEDIUM
    validation_errors: list[str] = field(default_factory=list)
    validation_warnings: list[str] = field(default_factory=list)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    quality: FieldQuality | None = None

    @property
    def has_conflict(self) -> bool:
        return len(self.conflicts) > 1

    @property
    def auto_approved(self) -> bool:
        return self.confidence > 0.80

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "label": self.label,
            "current_value": self.current_value,
            "proposed_value": self.proposed_value,
            "confidence": round(self.confidence, 4),
            "should_update": self.should_update,
            "reasoning": self.reasoning,
            "sources": list(self.sources),
            "update_priority": self.update_priority.value,
            "validation_errors": list(self.validation_errors),
            "validation_warnings": list(self.validation_warnings),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "has_conflict": self.has_conflict,
            "auto_approved": self.auto_approved,
            "quality": self.quality.value if self.quality else None,
        }


@dataclass(slots=True)
class NotesProposal:
    current_notes: str
    new_findings: str
    combined_notes: str
    generated_by: str = "llm"  # llm | fallback

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_notes": self.current_notes,
            "new_findings": self.new_findings,
            "combined_notes": self.combined_notes,
            "generated_by": self.generated_by,
        }


@dataclass(slots=True)
class QueryFailure:
    query: ResearchQuery
    error: ResearchError
    retryable: bool


@dataclass
class ResearchRunState:
    """Per-run accumulator; discarded when the run ends."""

    queries: list[ResearchQuery]
    completed: dict[str, ResearchQuery] = field(default_factory=dict)
    failures: dict[str, QueryFailure] = field(default_factory=dict)
    retry_queue: list[ResearchQuery] = field(default_factory=list)
    retry_attempts: int = 0
    started_at: float = field(default_factory=time.monotonic)
    phase_elapsed_ms: dict[str, int] = field(default_factory=dict)

    @property
    def successful_queries(self) -> list[ResearchQuery]:
        """Successful queries in the entity's fixed query order."""
        return [q for q in self.queries if q.query_type in self.completed]

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

from __future__ import annotations

from dataclasses import dataclass

from portpass.config import Settings, settings as global_settings


@dataclass(slots=True)
class RunSettings:
    """Tunables snapshotted at run start so a run never re-reads global config."""

    standard_timeout_seconds: float = 180.0
    deep_timeout_seconds: float = 300.0
    retry_backoff_seconds: float = 2.0
    llm_timeout_seconds: float = 120.0
    extraction_char_budget: int = 12000
    extraction_head_chars: int = 8000
    extraction_tail_chars: int = 2000
    conflict_excerpt_chars: int = 1000
    analysis_excerpt_chars: int = 2000
    summary_char_budget: int = 4000
    summary_fallback_chars: int = 200
    notes_char_budget: int = 6000
    notes_fallback_chars: int = 200
    report_max_bytes: int = 500 * 1024
    persist_report: bool = True

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "RunSettings":
        s = source or global_settings
        return cls(
            standard_timeout_seconds=s.research_query_timeout_seconds,
            deep_timeout_seconds=s.deep_research_query_timeout_seconds,
            retry_backoff_seconds=s.retry_backoff_seconds,
            llm_timeout_seconds=s.llm_call_timeout_seconds,
            extraction_char_budget=s.extraction_char_budget,
            extraction_head_chars=s.extraction_head_chars,
            extraction_tail_chars=s.extraction_tail_chars,
            conflict_excerpt_chars=s.conflict_excerpt_chars,
            analysis_excerpt_chars=s.analysis_excerpt_chars,
            summary_char_budget=s.summary_char_budget,
            summary_fallback_chars=s.summary_fallback_chars,
            notes_char_budget=s.notes_char_budget,
            notes_fallback_chars=s.notes_fallback_chars,
            report_max_bytes=s.report_max_bytes,
            persist_report=s.persist_research_report,
        )

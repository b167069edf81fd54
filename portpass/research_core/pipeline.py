"""Deep research pipeline: queries -> extraction -> reconciliation -> preview."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

from loguru import logger

from portpass.errors import ErrorCategory, ResearchError, RunCancelled
from portpass.llm_client import CompletionClient
from portpass.models.events import SSEEvent
from portpass.models.research import FieldProposal, ResearchRunState
from portpass.research_core.apply import select_auto_approved
from portpass.research_core.conflicts import detect_conflicts
from portpass.research_core.extraction import CombinedReport, build_combined_report, extract_fields
from portpass.research_core.notes import generate_summary, synthesize_notes
from portpass.research_core.profiles import REFERENCE, EntityProfile
from portpass.research_core.query_orchestrator import ParallelQueryOrchestrator
from portpass.research_core.reconciliation import (
    Geocoder,
    analyze_should_update,
    build_proposals,
    build_update_payload,
    order_by_priority,
    propose_location,
    raise_on_critical,
    resolve_port_assignment,
    score_fields,
)
from portpass.research_core.run_settings import RunSettings
from portpass.services import streaming
from portpass.services.cancellation import CancellationToken, StepTimeout, run_step
from portpass.services.logger import RunObserver
from portpass.services.record_store import RecordStore, strip_report
from portpass.services.streaming import ProgressTracker, RunPhase
from portpass.tools.research_provider import ResearchProvider

CANCELLED_MESSAGE = "Research was cancelled."
UNKNOWN_MESSAGE = "An unexpected error occurred. Please try again."
REPORT_SAVE_FAILED_MESSAGE = (
    "Research completed but failed to save report. Report will not persist after refresh."
)
GEOCODE_TIMEOUT_SECONDS = 30.0


class RunScopedClient:
    """Extraction client bound to one run's token and per-call deadline."""

    def __init__(self, llm: CompletionClient, token: CancellationToken, timeout_seconds: float):
        self._llm = llm
        self._token = token
        self._timeout_seconds = timeout_seconds

    @property
    def model(self) -> str:
        return getattr(self._llm, "model", "")

    async def complete(self, prompt: str, **kwargs: Any) -> str:
        try:
            return await run_step(self._llm.complete(prompt, **kwargs), self._token, self._timeout_seconds)
        except StepTimeout as exc:
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "The AI service took too long to respond. Please try again.",
                original_error=str(exc),
                retryable=True,
                timed_out=True,
            ) from exc


class DeepResearchPipeline:
    """Runs one entity through the research state machine.

    ``run`` yields status events and ends with exactly one preview or
    error event. Nothing is written to the entity's fields here; the only
    write is archiving the combined report after the preview.
    """

    def __init__(
        self,
        profile: EntityProfile,
        *,
        provider: ResearchProvider,
        llm: CompletionClient,
        store: RecordStore,
        geocoder: Geocoder | None = None,
        run_settings: RunSettings | None = None,
        observer: RunObserver | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.profile = profile
        self.provider = provider
        self.llm = llm
        self.store = store
        self.geocoder = geocoder
        self.run_settings = run_settings or RunSettings.from_settings()
        self.observer = observer
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(
        self,
        record: dict[str, Any],
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[SSEEvent, None]:
        token = token or CancellationToken()
        entity_id = str(record.get("id"))
        observer = self.observer or RunObserver(uuid4().hex, self.profile.entity_type, entity_id)
        tracker = ProgressTracker()

        try:
            async for event in self._stages(record, token, tracker, observer):
                yield event
        except ResearchError as exc:
            observer.error(f"Research failed: {exc!r}")
            yield self._fail(tracker, streaming.error_from(exc))
        except RunCancelled:
            observer.info("Research cancelled by caller")
            yield self._fail(
                tracker,
                streaming.error(ErrorCategory.NETWORK_ERROR, CANCELLED_MESSAGE, retryable=False),
            )
        except Exception as exc:
            observer.exception("Unexpected research failure")
            yield self._fail(
                tracker,
                streaming.error(
                    ErrorCategory.UNKNOWN_ERROR,
                    UNKNOWN_MESSAGE,
                    original_error=str(exc),
                    retryable=True,
                ),
            )

    @staticmethod
    def _fail(tracker: ProgressTracker, event: SSEEvent) -> SSEEvent:
        if tracker.finished:
            # Post-preview failures never produce a second terminal event.
            logger.error(f"Dropping error after terminal event: {event.data}")
            return streaming.warning(
                ErrorCategory(event.data["category"]),
                event.data["message"],
                event.data.get("original_error"),
            )
        return tracker.fail(event)

    async def _stages(
        self,
        record: dict[str, Any],
        token: CancellationToken,
        tracker: ProgressTracker,
        observer: RunObserver,
    ) -> AsyncGenerator[SSEEvent, None]:
        profile = self.profile
        rs = self.run_settings
        llm = RunScopedClient(self.llm, token, rs.llm_timeout_seconds)
        name = profile.display_name(record)

        yield tracker.status(RunPhase.INIT, f"Starting deep research for {name}...", 0)

        # Querying
        state = ResearchRunState(queries=profile.build_queries(record))
        orchestrator = ParallelQueryOrchestrator(self.provider, rs, observer)
        total = len(state.queries)
        yield tracker.status(RunPhase.QUERYING, f"Running {total} research queries in parallel...", 20)
        observer.stage_started("querying", queries=total)
        await orchestrator.run_initial(state, token)

        if state.retry_queue:
            retrying = len(state.retry_queue)
            yield tracker.status(
                RunPhase.RETRYING,
                f"Retrying {retrying} failed {'query' if retrying == 1 else 'queries'}...",
                65,
            )
            await orchestrator.run_retries(state, token)

        succeeded = len(state.successful_queries)
        observer.stage_completed("querying", succeeded=succeeded, retry_attempts=state.retry_attempts)
        yield tracker.status(
            RunPhase.QUERYING,
            f"Research complete. {succeeded}/{total} queries successful",
            70,
        )

        # Extracting
        report = build_combined_report(state.successful_queries)
        yield tracker.status(RunPhase.EXTRACTING, "Extracting structured data from findings...", 85)
        observer.stage_started("extracting")
        extracted = await extract_fields(llm, profile, report, rs, observer)
        observer.stage_completed(
            "extracting",
            fields=sum(1 for f in extracted.values() if f.raw_value is not None),
        )

        # Validating
        yield tracker.status(RunPhase.VALIDATING, "Scoring and validating extracted fields...", 90)
        scored = score_fields(profile, extracted, report, record)
        raise_on_critical(scored)

        # Conflict detection
        yield tracker.status(RunPhase.CONFLICT_DETECTION, "Checking sources for conflicting values...", 93)
        observer.stage_started("conflict_detection")
        conflicts = await detect_conflicts(llm, profile, report, extracted, rs, observer)
        observer.stage_completed("conflict_detection", fields_with_conflicts=len(conflicts))

        # Analyzing
        yield tracker.status(RunPhase.ANALYZING, "Analyzing which fields should be updated...", 95)
        observer.stage_started("analyzing")
        analyses = await analyze_should_update(llm, profile, scored, report, rs, observer)
        proposals = build_proposals(scored, analyses, conflicts, report)

        location = await self._propose_location(record, token)
        if location is not None:
            proposals = order_by_priority([*proposals, location])

        resolved = await self._resolve_references(proposals, record)
        observer.stage_completed("analyzing", proposals=len(proposals), fallback=analyses is None)

        # Notes
        yield tracker.status(RunPhase.NOTES, "Generating summary and strategic notes...", 97)
        observer.stage_started("notes")
        researched_at = self.clock()
        summary = await generate_summary(llm, profile, report, rs, observer)
        notes = await synthesize_notes(
            llm,
            profile,
            record.get(profile.notes_column),
            report,
            rs,
            researched_at.date(),
            observer,
        )
        observer.stage_completed("notes", generated_by=notes.generated_by)

        yield tracker.status(RunPhase.NOTES, "Preparing preview...", 99)
        update_payload = build_update_payload(
            profile,
            proposals,
            notes_value=notes.combined_notes,
            summary=summary,
            researched_at=researched_at.isoformat(),
            resolved_references=resolved,
        )
        yield tracker.preview(
            self._preview_payload(record, state, report, proposals, notes, summary, update_payload, observer)
        )

        if rs.persist_report:
            warning = await self._archive_report(record, report)
            if warning is not None:
                yield warning

    async def _propose_location(
        self,
        record: dict[str, Any],
        token: CancellationToken,
    ) -> FieldProposal | None:
        if self.geocoder is None:
            return None
        try:
            return await run_step(
                propose_location(self.profile, record, self.geocoder),
                token,
                GEOCODE_TIMEOUT_SECONDS,
            )
        except StepTimeout:
            logger.warning("Geocoding timed out; skipping location proposal")
            return None

    async def _resolve_references(
        self,
        proposals: list[FieldProposal],
        record: dict[str, Any],
    ) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for proposal in proposals:
            spec = self.profile.get_field(proposal.field)
            if spec is None or spec.kind != REFERENCE:
                continue
            port_id = await resolve_port_assignment(proposal, record, self.store)
            if port_id is not None:
                resolved[spec.key] = port_id
        return resolved

    def _preview_payload(
        self,
        record: dict[str, Any],
        state: ResearchRunState,
        report: CombinedReport,
        proposals: list[FieldProposal],
        notes: Any,
        summary: str,
        update_payload: dict[str, Any],
        observer: RunObserver,
    ) -> dict[str, Any]:
        return {
            "entity_type": self.profile.entity_type,
            "entity_id": str(record.get("id")),
            "field_proposals": [p.to_dict() for p in proposals],
            "notes_proposal": notes.to_dict(),
            "raw_queries": [q.to_dict() for q in report.queries],
            "failed_queries": [
                {
                    "query_type": f.query.query_type,
                    "title": f.query.title,
                    "category": f.error.category.value,
                    "message": f.error.message,
                    "attempts": f.query.attempts,
                }
                for f in state.failures.values()
            ],
            "combined_report": report.text,
            "summary": summary,
            "update_payload": update_payload,
            "auto_approved_fields": select_auto_approved(proposals),
            "timings": dict(observer.timings),
        }

    async def _archive_report(self, record: dict[str, Any], report: CombinedReport) -> SSEEvent | None:
        try:
            await self.store.save_research_report(
                self.profile.entity_type,
                str(record.get("id")),
                strip_report(report.text, self.run_settings.report_max_bytes),
            )
        except Exception as exc:
            logger.exception("Failed to archive research report")
            return streaming.warning(ErrorCategory.DATABASE_ERROR, REPORT_SAVE_FAILED_MESSAGE, str(exc))
        return None

from __future__ import annotations

import asyncio
import json as _json

from fastapi import APIRouter, Depends, Header, HTTPException
from sse_starlette.sse import EventSourceResponse

from portpass.api.deps import (
    get_llm,
    get_location_geocoder,
    get_research_provider,
    get_run_registry,
    get_run_settings,
    get_store,
)
from portpass.config import settings
from portpass.llm_client import CompletionClient
from portpass.models.events import SSEEvent
from portpass.models.schemas import ApplyRequest, ApplyResponse
from portpass.research_core.apply import apply_updates
from portpass.research_core.pipeline import DeepResearchPipeline
from portpass.research_core.profiles import EntityProfile, get_profile
from portpass.research_core.run_settings import RunSettings
from portpass.services import logger as log_service
from portpass.services.cancellation import CancellationToken
from portpass.services.record_store import RecordNotFound, RecordStore
from portpass.services.run_registry import RunRegistry
from portpass.tools.geocoding import NominatimGeocoder
from portpass.tools.research_provider import ResearchProvider

router = APIRouter(prefix="/api", tags=["deep-research"])

# Strong references so unattended (background) runs are not garbage collected.
_running_tasks: set[asyncio.Task] = set()


def _profile_or_404(entity_type: str) -> EntityProfile:
    try:
        return get_profile(entity_type)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity_type}")


def _is_background(background: bool, header_value: str | None) -> bool:
    return background or (header_value or "").strip().lower() == "true"


def _sse(event: SSEEvent) -> dict[str, str]:
    return {"event": event.event.value, "data": _json.dumps(event.data, default=str)}


@router.post("/{entity_type}/{entity_id}/deep-research")
async def deep_research(
    entity_type: str,
    entity_id: str,
    background: bool = False,
    x_background_mode: str | None = Header(default=None),
    store: RecordStore = Depends(get_store),
    provider: ResearchProvider = Depends(get_research_provider),
    llm: CompletionClient = Depends(get_llm),
    geocoder: NominatimGeocoder | None = Depends(get_location_geocoder),
    run_settings: RunSettings = Depends(get_run_settings),
    registry: RunRegistry = Depends(get_run_registry),
):
    """Stream a deep research run for one entity as SSE.

    In foreground mode closing the stream cancels the run. In background
    mode the run keeps going unattended; per-query timeouts still apply.
    """
    profile = _profile_or_404(entity_type)
    record = await store.get_record(entity_type, entity_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"{profile.label.capitalize()} not found")

    background_mode = _is_background(background, x_background_mode)
    token = CancellationToken()
    exclusive = settings.enforce_single_run_per_entity
    if exclusive and not registry.try_acquire(entity_type, entity_id, token):
        raise HTTPException(
            status_code=409,
            detail=f"Deep research is already running for this {profile.label}",
        )

    pipeline = DeepResearchPipeline(
        profile,
        provider=provider,
        llm=llm,
        store=store,
        geocoder=geocoder,
        run_settings=run_settings,
    )
    queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()

    async def pump() -> None:
        try:
            async for event in pipeline.run(record, token):
                await queue.put(event)
        finally:
            if exclusive:
                registry.release(entity_type, entity_id, token)
            await queue.put(None)

    log_service.log_event(
        event_type="deep_research_started",
        message="Deep research started",
        entity_type=entity_type,
        entity_id=entity_id,
        background=background_mode,
    )
    task = asyncio.create_task(pump())
    _running_tasks.add(task)
    task.add_done_callback(_running_tasks.discard)

    async def event_generator():
        drained = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    drained = True
                    break
                yield _sse(event)
        finally:
            if not drained and not background_mode:
                token.cancel("caller disconnected")
                log_service.log_event(
                    event_type="deep_research_cancelled",
                    message="Caller disconnected; cancelling run",
                    entity_type=entity_type,
                    entity_id=entity_id,
                )

    return EventSourceResponse(event_generator())


@router.patch(
    "/{entity_type}/{entity_id}/deep-research/apply",
    response_model=ApplyResponse,
)
async def apply_deep_research(
    entity_type: str,
    entity_id: str,
    request: ApplyRequest,
    store: RecordStore = Depends(get_store),
):
    """Write the approved subset of a previewed update payload."""
    profile = _profile_or_404(entity_type)
    if not request.update_payload:
        raise HTTPException(status_code=400, detail="update_payload is required")

    try:
        result = await apply_updates(
            store,
            profile,
            entity_id,
            request.update_payload,
            request.approved_fields,
        )
    except RecordNotFound:
        raise HTTPException(status_code=404, detail=f"{profile.label.capitalize()} not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    log_service.log_event(
        event_type="deep_research_applied",
        message="Deep research updates applied",
        entity_type=entity_type,
        entity_id=entity_id,
        updated_fields=result.updated_fields,
    )
    count = len(result.updated_fields)
    return ApplyResponse(
        success=True,
        message=f"Applied {count} approved field{'s' if count != 1 else ''}",
        updated_fields=result.updated_fields,
        record=result.record,
    )

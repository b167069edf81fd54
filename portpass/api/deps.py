"""Route dependencies; tests swap these through ``app.dependency_overrides``."""
from __future__ import annotations

from portpass.llm_client import CompletionClient, client
from portpass.research_core.run_settings import RunSettings
from portpass.services.record_store import RecordStore, get_record_store
from portpass.services.run_registry import RunRegistry, run_registry
from portpass.tools.geocoding import NominatimGeocoder, get_geocoder
from portpass.tools.research_provider import ResearchProvider, get_provider


def get_store() -> RecordStore:
    return get_record_store()


def get_research_provider() -> ResearchProvider:
    return get_provider()


def get_llm() -> CompletionClient:
    return client()


def get_location_geocoder() -> NominatimGeocoder | None:
    return get_geocoder()


def get_run_settings() -> RunSettings:
    return RunSettings.from_settings()


def get_run_registry() -> RunRegistry:
    return run_registry

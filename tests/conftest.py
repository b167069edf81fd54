from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from portpass.errors import ErrorCategory, ResearchError
from portpass.models.research import QueryMode, RetrievalResult
from portpass.research_core.run_settings import RunSettings
from portpass.services.record_store import InMemoryRecordStore

# Distinctive phrases from each rendered research query, used to tell
# queries apart inside the fake provider.
QUERY_MARKERS = {
    "governance": "governance structure",
    "isps_risk": "ISPS security risk",
    "strategic_intelligence": "network effects",
    "identity_location": "exact location",
    "capacity_operations": "annual capacity",
}

HANG = object()


def query_type_of(query_text: str) -> str:
    for query_type, marker in QUERY_MARKERS.items():
        if marker in query_text:
            return query_type
    raise AssertionError(f"Unrecognized query text: {query_text[:80]}")


def findings(text: str, *sources: str) -> RetrievalResult:
    return RetrievalResult(content=text, sources=list(sources), model="fake")


def service_down(status_code: int = 503) -> ResearchError:
    return ResearchError(
        ErrorCategory.API_ERROR,
        "The research service is temporarily unavailable.",
        retryable=True,
        status_code=status_code,
    )


class FakeProvider:
    """Scripted retrieval provider.

    ``outcomes`` maps query type to a list consumed one item per call; the
    last item repeats. Items are a ``RetrievalResult``, an exception to
    raise, or ``HANG`` to block until cancelled.
    """

    name = "fake"

    def __init__(self, outcomes: dict[str, list[Any]] | None = None, default: Any = None):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.default = default
        self.calls: list[tuple[str, QueryMode]] = []

    def calls_for(self, query_type: str) -> int:
        return sum(1 for qt, _ in self.calls if qt == query_type)

    async def execute(
        self,
        query_text: str,
        mode: QueryMode,
        *,
        system_prompt: str | None = None,
    ) -> RetrievalResult:
        query_type = query_type_of(query_text)
        self.calls.append((query_type, mode))
        script = self.outcomes.get(query_type)
        if script:
            outcome = script.pop(0) if len(script) > 1 else script[0]
        else:
            outcome = self.default or findings(f"Findings for {query_type}.", "https://example.org")
        if outcome is HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeLLM:
    """Completion client answering by ``caller``.

    A value may be a string, an exception to raise, or a dict (sent back as
    JSON). Callers without a scripted answer raise an API error, which
    pushes best-effort stages onto their fallbacks.
    """

    model = "fake-llm"

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses = dict(responses or {})
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        prompt: str,
        *,
        json_mode: bool = False,
        temperature: float = 0.1,
        caller: str = "extraction",
        observer: Any = None,
    ) -> str:
        self.calls.append(
            {"caller": caller, "prompt": prompt, "json_mode": json_mode, "temperature": temperature}
        )
        response = self.responses.get(caller)
        if response is None:
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "The AI service is temporarily unavailable. Please try again.",
                retryable=True,
            )
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response

    def callers(self) -> list[str]:
        return [c["caller"] for c in self.calls]


@pytest.fixture
def fast_settings() -> RunSettings:
    return RunSettings(
        standard_timeout_seconds=0.5,
        deep_timeout_seconds=1.0,
        retry_backoff_seconds=0.0,
        llm_timeout_seconds=1.0,
    )


@pytest.fixture
def port_record() -> dict[str, Any]:
    return {
        "id": "p1",
        "name": "Rotterdam",
        "country": "Netherlands",
        "cluster_name": "North Sea",
        "port_authority": None,
        "identity_competitors": None,
        "identity_adoption_rate": None,
        "port_level_isps_risk": None,
        "isps_enforcement_strength": None,
        "latitude": 51.95,
        "longitude": 4.14,
        "strategic_notes": "Existing analyst notes.",
    }


@pytest.fixture
def operator_record() -> dict[str, Any]:
    return {
        "id": "op1",
        "name": "Maasvlakte Terminal Co",
        "port_id": "p1",
        "operator_type": None,
        "parent_companies": None,
        "cargo_types": None,
        "capacity": None,
        "latitude": None,
        "longitude": None,
        "strategic_notes": None,
    }


@pytest.fixture
def store(port_record, operator_record) -> InMemoryRecordStore:
    memory = InMemoryRecordStore()
    memory.add("port", port_record)
    memory.add("port", {"id": "p2", "name": "Amsterdam", "country": "Netherlands"})
    memory.add("port", {"id": "p3", "name": "Antwerp", "country": "Belgium"})
    memory.add("terminal_operator", operator_record)
    return memory

"""Knowledge-retrieval providers.

A provider answers one research query in either standard or deep mode and
returns the findings text plus its citation list. Cancellation is applied
by the caller cancelling the awaiting task, which aborts the in-flight
HTTP request.
"""
from __future__ import annotations

import re
from typing import Any, Protocol

import httpx
from loguru import logger
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from portpass.config import settings
from portpass.errors import ErrorCategory, ResearchError
from portpass.models.research import QueryMode, RetrievalResult
from portpass.services.prompt_store import render_prompt

_CITATION_MARKER_RE = re.compile(r"\[(\d+)\]")

# Status codes that mean "this model is not available here", so the next
# model in the chain is tried instead of failing the query.
_MODEL_FALLBACK_STATUSES = {400, 404}


class ResearchProvider(Protocol):
    name: str

    async def execute(
        self,
        query_text: str,
        mode: QueryMode,
        *,
        system_prompt: str | None = None,
    ) -> RetrievalResult: ...


def classify_status(status_code: int, detail: str) -> ResearchError:
    """Map a non-2xx provider response to the error taxonomy."""
    if status_code >= 500:
        return ResearchError(
            ErrorCategory.API_ERROR,
            "The research service is temporarily unavailable.",
            original_error=f"HTTP {status_code}: {detail}",
            retryable=True,
            status_code=status_code,
        )
    if status_code == 401:
        return ResearchError(
            ErrorCategory.NETWORK_ERROR,
            "Research service rejected the API key.",
            original_error=f"HTTP 401: {detail}",
            retryable=False,
            status_code=status_code,
        )
    return ResearchError(
        ErrorCategory.NETWORK_ERROR,
        f"Research request failed with status {status_code}.",
        original_error=f"HTTP {status_code}: {detail}",
        retryable=True,
        status_code=status_code,
    )


def sources_from_markers(content: str) -> list[str]:
    """Build "Source N" labels from ``[n]`` citation markers, in first-seen order."""
    seen: list[str] = []
    for match in _CITATION_MARKER_RE.finditer(content or ""):
        label = f"Source {match.group(1)}"
        if label not in seen:
            seen.append(label)
    return seen


def _extract_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if payload.get("detail"):
            return str(payload["detail"])
    return response.text[:200]


class PerplexityProvider:
    name = "perplexity"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.perplexity.ai",
        standard_model: str = "sonar-pro",
        deep_model: str = "sonar-deep-research",
        transport: httpx.AsyncBaseTransport | None = None,
        request_timeout: float = 330.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.standard_model = standard_model
        self.deep_model = deep_model
        self._transport = transport
        self._request_timeout = request_timeout

    def model_chain(self, mode: QueryMode) -> list[str]:
        selected = self.deep_model if mode == QueryMode.DEEP else self.standard_model
        chain = [selected]
        if self.deep_model not in chain:
            chain.append(self.deep_model)
        return chain

    async def execute(
        self,
        query_text: str,
        mode: QueryMode,
        *,
        system_prompt: str | None = None,
    ) -> RetrievalResult:
        if not self.api_key:
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "Research service is not configured.",
                original_error="PPLX_API_KEY is not set",
                retryable=False,
            )
        system_prompt = system_prompt or render_prompt("provider.system_prompt")
        chain = self.model_chain(mode)
        last_error: ResearchError | None = None

        async with httpx.AsyncClient(timeout=self._request_timeout, transport=self._transport) as client:
            for model in chain:
                try:
                    return await self._call(client, model, query_text, system_prompt)
                except ResearchError as exc:
                    last_error = exc
                    if exc.status_code in _MODEL_FALLBACK_STATUSES and model != chain[-1]:
                        logger.warning(f"Perplexity model {model} unavailable ({exc.status_code}), trying next model")
                        continue
                    raise

        raise last_error or ResearchError(ErrorCategory.API_ERROR, "No research model is available.")

    async def _call(
        self,
        client: httpx.AsyncClient,
        model: str,
        query_text: str,
        system_prompt: str,
    ) -> RetrievalResult:
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json={
                    "model": model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": query_text},
                    ],
                    "temperature": 0.1,
                },
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as exc:
            raise ResearchError(
                ErrorCategory.NETWORK_ERROR,
                "Research request timed out.",
                original_error=str(exc),
                retryable=True,
                timed_out=True,
            ) from exc
        except httpx.RequestError as exc:
            raise ResearchError(
                ErrorCategory.NETWORK_ERROR,
                "Could not reach the research service.",
                original_error=str(exc),
                retryable=True,
            ) from exc

        if response.status_code >= 400:
            raise classify_status(response.status_code, _extract_error_message(response))

        payload = response.json()
        choices = payload.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        citations = payload.get("citations") or []
        sources = [str(c) for c in citations if c] or sources_from_markers(content)
        return RetrievalResult(content=content, sources=sources, model=model)


class OpenAIResearchProvider:
    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        research_model: str = "o3-deep-research",
        fallback_model: str = "gpt-4o",
        openai_client: Any | None = None,
    ):
        self.api_key = api_key
        self.research_model = research_model
        self.fallback_model = fallback_model
        self._client = openai_client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    def model_chain(self, mode: QueryMode) -> list[str]:
        if mode == QueryMode.DEEP:
            return [self.research_model, self.fallback_model]
        return [self.fallback_model]

    async def execute(
        self,
        query_text: str,
        mode: QueryMode,
        *,
        system_prompt: str | None = None,
    ) -> RetrievalResult:
        if not self.api_key:
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "Research service is not configured.",
                original_error="OPENAI_API_KEY is not set",
                retryable=False,
            )
        system_prompt = system_prompt or render_prompt("provider.system_prompt")
        chain = self.model_chain(mode)

        for model in chain:
            try:
                response = await self._get_client().chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": query_text},
                    ],
                )
            except APIStatusError as exc:
                if exc.status_code in _MODEL_FALLBACK_STATUSES and model != chain[-1]:
                    logger.warning(f"OpenAI model {model} unavailable ({exc.status_code}), trying next model")
                    continue
                raise classify_status(exc.status_code, str(exc)) from exc
            except APITimeoutError as exc:
                raise ResearchError(
                    ErrorCategory.NETWORK_ERROR,
                    "Research request timed out.",
                    original_error=str(exc),
                    retryable=True,
                    timed_out=True,
                ) from exc
            except APIConnectionError as exc:
                raise ResearchError(
                    ErrorCategory.NETWORK_ERROR,
                    "Could not reach the research service.",
                    original_error=str(exc),
                    retryable=True,
                ) from exc

            content = (response.choices[0].message.content or "") if response.choices else ""
            return RetrievalResult(content=content, sources=sources_from_markers(content), model=model)

        raise ResearchError(
            ErrorCategory.API_ERROR,
            "No research model is available.",
            retryable=True,
        )


def get_provider() -> ResearchProvider:
    """Build the configured retrieval provider."""
    provider = settings.research_provider.lower().strip()
    if provider == "perplexity":
        return PerplexityProvider(
            settings.pplx_api_key,
            base_url=settings.perplexity_base_url,
            standard_model=settings.perplexity_standard_model,
            deep_model=settings.perplexity_deep_model,
            request_timeout=settings.deep_research_query_timeout_seconds + 30,
        )
    if provider == "openai":
        return OpenAIResearchProvider(
            settings.openai_api_key,
            research_model=settings.openai_research_model,
            fallback_model=settings.openai_fallback_model,
        )
    raise ValueError(f"Unsupported RESEARCH_PROVIDER: {settings.research_provider}")

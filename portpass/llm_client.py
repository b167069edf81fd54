"""Extraction/analysis service client over an OpenAI-compatible gateway."""
from __future__ import annotations

import json
import time
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from portpass.config import settings
from portpass.errors import ErrorCategory, ResearchError
from portpass.services.logger import RunObserver, log_llm_call


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Parse the outermost JSON object from a model reply, tolerating code fences."""
    text = (raw_text or "").strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


class CompletionClient:
    """``complete(prompt, json_mode, temperature) -> text`` over chat completions.

    All five prompt templates (extraction, should-update analysis, conflict
    detection, notes, summary) share this transport.
    """

    def __init__(self, openai_client: Any, model: str):
        self._client = openai_client
        self.model = model

    async def complete(
        self,
        prompt: str,
        *,
        json_mode: bool = False,
        temperature: float = 0.1,
        caller: str = "extraction",
        observer: RunObserver | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        started = time.monotonic()
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._record(observer, caller, duration_ms, error=str(exc))
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "The AI service is temporarily unavailable. Please try again.",
                original_error=str(exc),
                retryable=True,
                status_code=getattr(exc, "status_code", None),
            ) from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            self._record(observer, caller, duration_ms, input_tokens, output_tokens, error="empty response")
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "The AI service returned an empty response. Please try again.",
                retryable=True,
            )

        self._record(observer, caller, duration_ms, input_tokens, output_tokens)
        return content

    def _record(
        self,
        observer: RunObserver | None,
        caller: str,
        duration_ms: int,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error: str | None = None,
    ) -> None:
        if observer is not None:
            observer.llm_call(
                model=self.model,
                caller=caller,
                duration_ms=duration_ms,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=error,
            )
            return
        log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            status="error" if error else "success",
            error=error,
        )


def get_model() -> str:
    """Get the active extraction model id."""
    return settings.extraction_model


def get_client() -> CompletionClient:
    """Create an extraction client via the OpenAI-compatible SDK."""
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return CompletionClient(openai_client, get_model())


_client: CompletionClient | None = None


def client() -> CompletionClient:
    """Get or create the extraction client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client

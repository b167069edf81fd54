from __future__ import annotations

from loguru import logger

from portpass.errors import ErrorCategory, ResearchError, RunCancelled, query_timeout
from portpass.models.research import QueryMode, ResearchQuery, RetrievalResult
from portpass.research_core.run_settings import RunSettings
from portpass.services.cancellation import CancellationToken, StepTimeout, run_step
from portpass.tools.research_provider import ResearchProvider


def timeout_for(query: ResearchQuery, run_settings: RunSettings) -> float:
    if query.mode == QueryMode.DEEP:
        return run_settings.deep_timeout_seconds
    return run_settings.standard_timeout_seconds


async def execute_query(
    provider: ResearchProvider,
    query: ResearchQuery,
    *,
    token: CancellationToken,
    timeout_seconds: float,
) -> RetrievalResult:
    """Run one research query under the run token and its own deadline.

    Raises ``RunCancelled`` when the run token fires, and a timed-out
    ``ResearchError`` when the per-query deadline passes. Findings are
    written onto ``query`` only on success.
    """
    query.attempts += 1
    try:
        result = await run_step(provider.execute(query.query_text, query.mode), token, timeout_seconds)
    except StepTimeout as exc:
        raise query_timeout(query.query_type, timeout_seconds) from exc
    except (ResearchError, RunCancelled):
        raise
    except Exception as exc:
        logger.exception(f"Unexpected provider failure for query {query.query_type}")
        raise ResearchError(
            ErrorCategory.NETWORK_ERROR,
            f"Research query '{query.title}' failed.",
            original_error=str(exc),
            retryable=True,
        ) from exc

    if not result.content.strip():
        raise ResearchError(
            ErrorCategory.API_ERROR,
            f"Research query '{query.title}' returned no findings.",
            retryable=True,
        )

    query.result_text = result.content
    query.sources = list(result.sources)
    return result

"""Parallel fan-out of an entity's fixed query set with one retry round."""
from __future__ import annotations

import asyncio

from portpass.errors import ResearchError, RunCancelled, query_timeout
from portpass.models.research import QueryFailure, QueryMode, ResearchQuery, ResearchRunState
from portpass.research_core.query_executor import execute_query, timeout_for
from portpass.research_core.run_settings import RunSettings
from portpass.services.cancellation import CancellationToken, run_step
from portpass.services.logger import RunObserver
from portpass.tools.research_provider import ResearchProvider


def global_timeout(query_count: int, run_settings: RunSettings) -> float:
    """Safety bound for the whole parallel phase."""
    if query_count <= 0:
        return 0.0
    std = run_settings.standard_timeout_seconds
    deep = run_settings.deep_timeout_seconds
    return max(std * query_count, deep + std * (query_count - 1))


def is_retryable(query: ResearchQuery, error: ResearchError) -> bool:
    if error.is_auth_failure:
        return False
    if error.timed_out:
        # Deep retrieval legitimately runs long; standard timeouts are final.
        return query.mode == QueryMode.DEEP
    return True


class ParallelQueryOrchestrator:
    def __init__(
        self,
        provider: ResearchProvider,
        run_settings: RunSettings,
        observer: RunObserver,
    ):
        self.provider = provider
        self.run_settings = run_settings
        self.observer = observer

    async def _attempt(self, query: ResearchQuery, token: CancellationToken) -> ResearchQuery:
        await execute_query(
            self.provider,
            query,
            token=token,
            timeout_seconds=timeout_for(query, self.run_settings),
        )
        self.observer.query_succeeded(
            query.query_type, query.attempts, len(query.sources), len(query.result_text)
        )
        return query

    def _record_failure(self, state: ResearchRunState, query: ResearchQuery, error: ResearchError) -> None:
        retryable = is_retryable(query, error)
        state.failures[query.query_type] = QueryFailure(query=query, error=error, retryable=retryable)
        self.observer.query_failed(query.query_type, query.attempts, error, retryable)

    async def run_initial(self, state: ResearchRunState, token: CancellationToken) -> None:
        """Run every query concurrently; one failure never cancels its siblings."""
        token.raise_if_cancelled()
        if not state.queries:
            return
        tasks = {asyncio.ensure_future(self._attempt(q, token)): q for q in state.queries}
        bound = global_timeout(len(state.queries), self.run_settings)
        try:
            done, pending = await asyncio.wait(tasks.keys(), timeout=bound)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()

        cancelled = False
        for task, query in tasks.items():
            if task in pending:
                self._record_failure(state, query, query_timeout(query.query_type, bound))
                continue
            exc = task.exception()
            if exc is None:
                state.completed[query.query_type] = query
            elif isinstance(exc, RunCancelled):
                cancelled = True
            elif isinstance(exc, ResearchError):
                self._record_failure(state, query, exc)
            else:
                raise exc

        if cancelled or token.cancelled:
            raise RunCancelled()

        state.retry_queue = [f.query for f in state.failures.values() if f.retryable]
        state.phase_elapsed_ms["querying"] = state.elapsed_ms

    async def run_retries(self, state: ResearchRunState, token: CancellationToken) -> None:
        """Retry each queued failure exactly once after the fixed backoff."""
        retry = list(state.retry_queue)
        state.retry_queue = []
        if not retry:
            return

        self.observer.retry_scheduled([q.query_type for q in retry], self.run_settings.retry_backoff_seconds)
        await run_step(asyncio.sleep(self.run_settings.retry_backoff_seconds), token)

        state.retry_attempts += len(retry)
        results = await asyncio.gather(
            *(self._attempt(q, token) for q in retry),
            return_exceptions=True,
        )

        cancelled = False
        for query, item in zip(retry, results):
            if isinstance(item, RunCancelled):
                cancelled = True
            elif isinstance(item, ResearchError):
                # A second failure is final; the run continues without this query.
                state.failures[query.query_type] = QueryFailure(query=query, error=item, retryable=False)
                self.observer.query_failed(query.query_type, query.attempts, item, False)
            elif isinstance(item, BaseException):
                raise item
            else:
                state.failures.pop(query.query_type, None)
                state.completed[query.query_type] = query

        if cancelled or token.cancelled:
            raise RunCancelled()
        state.phase_elapsed_ms["retrying"] = state.elapsed_ms

    async def run(self, state: ResearchRunState, token: CancellationToken) -> ResearchRunState:
        await self.run_initial(state, token)
        await self.run_retries(state, token)
        return state

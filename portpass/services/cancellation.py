"""Run-level cancellation token and per-step deadline helper."""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from portpass.errors import RunCancelled

T = TypeVar("T")


class CancellationToken:
    """Run-level token fired when the caller abandons the run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "caller disconnected") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled()


class StepTimeout(Exception):
    """A single step exceeded its own deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"step exceeded {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


async def run_step(
    awaitable: Awaitable[T],
    token: CancellationToken,
    timeout_seconds: float | None = None,
) -> T:
    """Await ``awaitable`` unless the run token fires or the step deadline passes.

    The two signals stay independent: the token raises ``RunCancelled``,
    the deadline raises ``StepTimeout``. Either way the in-flight call is
    cancelled.
    """
    if token.cancelled:
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise RunCancelled()
    call = asyncio.ensure_future(awaitable)
    cancel_wait = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {call, cancel_wait},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        cancel_wait.cancel()

    if call in done:
        return call.result()

    call.cancel()
    if token.cancelled:
        raise RunCancelled()
    raise StepTimeout(timeout_seconds or 0.0)

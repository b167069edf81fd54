from __future__ import annotations

from enum import Enum
from typing import Any

from portpass.errors import ErrorCategory, ResearchError
from portpass.models.events import EventType, SSEEvent


class RunPhase(str, Enum):
    INIT = "init"
    QUERYING = "querying"
    RETRYING = "retrying"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    CONFLICT_DETECTION = "conflict_detection"
    ANALYZING = "analyzing"
    NOTES = "notes"
    PREVIEW_READY = "preview_ready"
    ERROR = "error"


_FORWARD: dict[RunPhase, frozenset[RunPhase]] = {
    RunPhase.INIT: frozenset({RunPhase.QUERYING}),
    RunPhase.QUERYING: frozenset({RunPhase.RETRYING, RunPhase.EXTRACTING}),
    RunPhase.RETRYING: frozenset({RunPhase.QUERYING}),
    RunPhase.EXTRACTING: frozenset({RunPhase.VALIDATING}),
    RunPhase.VALIDATING: frozenset({RunPhase.CONFLICT_DETECTION}),
    RunPhase.CONFLICT_DETECTION: frozenset({RunPhase.ANALYZING}),
    RunPhase.ANALYZING: frozenset({RunPhase.NOTES}),
    RunPhase.NOTES: frozenset({RunPhase.PREVIEW_READY}),
}

_TERMINAL = frozenset({RunPhase.PREVIEW_READY, RunPhase.ERROR})


def status(message: str, step: str, progress: float) -> SSEEvent:
    return SSEEvent(
        event=EventType.STATUS,
        data={"message": message, "step": step, "progress": progress},
    )


def preview(payload: dict[str, Any]) -> SSEEvent:
    return SSEEvent(event=EventType.PREVIEW, data=payload)


def error(
    category: ErrorCategory,
    message: str,
    original_error: str | None = None,
    retryable: bool = False,
) -> SSEEvent:
    data: dict[str, Any] = {
        "category": category.value,
        "message": message,
        "retryable": retryable,
    }
    if original_error:
        data["original_error"] = original_error
    return SSEEvent(event=EventType.ERROR, data=data)


def error_from(exc: ResearchError) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data=exc.to_event_data())


def warning(category: ErrorCategory, message: str, original_error: str | None = None) -> SSEEvent:
    """Non-terminal notice emitted after the preview (e.g. report archival failure)."""
    data: dict[str, Any] = {"category": category.value, "message": message, "retryable": False}
    if original_error:
        data["original_error"] = original_error
    return SSEEvent(event=EventType.WARNING, data=data)


class ProgressTracker:
    """Enforces the run state machine and monotonic progress.

    Status updates within the current phase are always allowed. The only
    backward edge is retrying -> querying, taken at most once.
    """

    def __init__(self) -> None:
        self.phase = RunPhase.INIT
        self.progress = 0.0
        self.history: list[RunPhase] = [RunPhase.INIT]
        self._retried = False

    @property
    def finished(self) -> bool:
        return self.phase in _TERMINAL

    def _advance(self, phase: RunPhase) -> None:
        if self.finished:
            raise RuntimeError(f"Run already finished in phase '{self.phase.value}'")
        if phase == self.phase:
            return
        if phase == RunPhase.ERROR:
            self.phase = phase
            self.history.append(phase)
            return
        allowed = _FORWARD.get(self.phase, frozenset())
        if phase not in allowed:
            raise RuntimeError(f"Illegal phase transition {self.phase.value} -> {phase.value}")
        if phase == RunPhase.RETRYING:
            if self._retried:
                raise RuntimeError("Retry phase may only be entered once per run")
            self._retried = True
        self.phase = phase
        self.history.append(phase)

    def status(self, phase: RunPhase, message: str, progress: float) -> SSEEvent:
        self._advance(phase)
        self.progress = max(self.progress, min(float(progress), 100.0))
        return status(message, phase.value, self.progress)

    def preview(self, payload: dict[str, Any]) -> SSEEvent:
        self._advance(RunPhase.PREVIEW_READY)
        self.progress = 100.0
        return preview(payload)

    def fail(self, event: SSEEvent) -> SSEEvent:
        self._advance(RunPhase.ERROR)
        return event

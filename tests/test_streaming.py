from __future__ import annotations

import json

import pytest

from portpass.errors import ErrorCategory, ResearchError
from portpass.models.events import EventType
from portpass.services import streaming
from portpass.services.streaming import ProgressTracker, RunPhase


def test_event_format_is_sse():
    event = streaming.status("Running 3 research queries in parallel...", "querying", 20)
    lines = event.format().split("\n")
    assert lines[0] == "event: status"
    assert json.loads(lines[1][len("data: "):]) == {
        "message": "Running 3 research queries in parallel...",
        "step": "querying",
        "progress": 20,
    }


def test_error_from_research_error():
    exc = ResearchError(ErrorCategory.NETWORK_ERROR, "Research service rejected the API key.", status_code=401)
    event = streaming.error_from(exc)
    assert event.event == EventType.ERROR
    assert event.is_terminal
    assert event.data == {
        "category": "NETWORK_ERROR",
        "message": "Research service rejected the API key.",
        "retryable": False,
    }


def test_warning_is_not_terminal():
    event = streaming.warning(ErrorCategory.DATABASE_ERROR, "Could not save", "disk full")
    assert not event.is_terminal
    assert event.data["original_error"] == "disk full"


class TestProgressTracker:
    def test_full_run_with_retry(self):
        tracker = ProgressTracker()
        tracker.status(RunPhase.INIT, "start", 0)
        tracker.status(RunPhase.QUERYING, "querying", 20)
        tracker.status(RunPhase.RETRYING, "retrying", 65)
        tracker.status(RunPhase.QUERYING, "done", 70)
        for phase, progress in (
            (RunPhase.EXTRACTING, 85),
            (RunPhase.VALIDATING, 90),
            (RunPhase.CONFLICT_DETECTION, 93),
            (RunPhase.ANALYZING, 95),
            (RunPhase.NOTES, 97),
        ):
            tracker.status(phase, phase.value, progress)
        event = tracker.preview({"ok": True})
        assert event.event == EventType.PREVIEW
        assert tracker.progress == 100.0
        assert tracker.finished

    def test_progress_never_decreases(self):
        tracker = ProgressTracker()
        tracker.status(RunPhase.QUERYING, "querying", 60)
        event = tracker.status(RunPhase.QUERYING, "still querying", 20)
        assert event.data["progress"] == 60

    def test_skipping_phases_is_rejected(self):
        tracker = ProgressTracker()
        tracker.status(RunPhase.QUERYING, "querying", 20)
        with pytest.raises(RuntimeError):
            tracker.status(RunPhase.ANALYZING, "analyzing", 95)

    def test_retry_phase_entered_once(self):
        tracker = ProgressTracker()
        tracker.status(RunPhase.QUERYING, "q", 20)
        tracker.status(RunPhase.RETRYING, "r", 60)
        tracker.status(RunPhase.QUERYING, "q", 70)
        with pytest.raises(RuntimeError):
            tracker.status(RunPhase.RETRYING, "r", 75)

    def test_nothing_after_terminal_event(self):
        tracker = ProgressTracker()
        tracker.fail(streaming.error(ErrorCategory.UNKNOWN_ERROR, "boom", retryable=True))
        assert tracker.phase == RunPhase.ERROR
        with pytest.raises(RuntimeError):
            tracker.preview({})

"""Error taxonomy shared by the research pipeline, providers and routes."""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    JOB_ERROR = "JOB_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Categories a caller may retry when the error itself does not say otherwise.
_DEFAULT_RETRYABLE = {
    ErrorCategory.API_ERROR: True,
    ErrorCategory.NETWORK_ERROR: False,
    ErrorCategory.VALIDATION_ERROR: False,
    ErrorCategory.JOB_ERROR: True,
    ErrorCategory.DATABASE_ERROR: False,
    ErrorCategory.UNKNOWN_ERROR: True,
}


class ResearchError(Exception):
    """A categorized failure carrying a user-facing message."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        original_error: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.category = category
        self.message = message
        self.original_error = original_error
        self.retryable = _DEFAULT_RETRYABLE[category] if retryable is None else retryable
        self.status_code = status_code
        self.timed_out = timed_out

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == 401

    def to_event_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.original_error:
            data["original_error"] = self.original_error
        return data

    def __repr__(self) -> str:
        return (
            f"ResearchError({self.category.value}, {self.message!r}, "
            f"status_code={self.status_code}, timed_out={self.timed_out})"
        )


class RunCancelled(Exception):
    """Raised when the run-level cancellation token fires mid-flight."""

    def __init__(self, message: str = "Request aborted"):
        super().__init__(message)


def query_timeout(query_type: str, timeout_seconds: float) -> ResearchError:
    return ResearchError(
        ErrorCategory.NETWORK_ERROR,
        f"Query '{query_type}' timed out after {timeout_seconds:g}s",
        retryable=True,
        timed_out=True,
    )

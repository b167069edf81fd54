from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class ApplyRequest(BaseModel):
    update_payload: dict[str, Any] | None = None
    approved_fields: list[str] = Field(default_factory=list)


# --- Responses ---


class ApplyResponse(BaseModel):
    success: bool
    message: str
    updated_fields: list[str]
    record: dict[str, Any]

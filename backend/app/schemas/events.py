"""Request bodies for the generic event endpoint."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EventPostRequest(BaseModel):
    to: int = Field(..., description="Recipient user id")
    type: str = Field(..., description="Event type name")
    payload: dict[str, Any] | None = None

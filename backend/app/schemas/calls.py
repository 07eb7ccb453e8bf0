"""Request bodies for the call signaling endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CallInitiateRequest(_CamelModel):
    user_to_call: int = Field(alias="userToCall")
    signal_data: dict[str, Any] = Field(alias="signalData")
    is_video: bool = Field(default=False, alias="isVideo")
    from_username: str | None = Field(default=None, alias="fromUsername")
    call_id: str | None = Field(default=None, alias="callId", max_length=64)


class CallAnswerRequest(_CamelModel):
    to: int
    signal: dict[str, Any]
    call_id: str | None = Field(default=None, alias="callId", max_length=64)


class IceCandidateRequest(_CamelModel):
    to: int
    # ``None`` is the end-of-gathering marker.
    candidate: dict[str, Any] | None = None
    call_id: str | None = Field(default=None, alias="callId", max_length=64)


class CallEndRequest(_CamelModel):
    to: int | None = None
    call_id: str | None = Field(default=None, alias="callId", max_length=64)


class SignalAck(BaseModel):
    success: bool = True
    delivered: bool = False
    skipped: str | None = None

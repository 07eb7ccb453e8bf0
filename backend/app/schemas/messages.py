"""Schemas related to chat messages."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.enums import MessageType


class MessageCreate(BaseModel):
    """Body of ``POST /api/messages``; exactly one destination is required."""

    model_config = ConfigDict(populate_by_name=True)

    recipient_id: int | None = Field(default=None, alias="recipientId")
    group_id: int | None = Field(default=None, alias="groupId")
    content: str = ""
    type: MessageType = MessageType.TEXT
    file_url: str | None = Field(default=None, alias="fileUrl", max_length=1024)

    @model_validator(mode="after")
    def check_destination(self) -> "MessageCreate":
        if (self.recipient_id is None) == (self.group_id is None):
            raise ValueError("Provide exactly one of recipientId or groupId")
        if self.type is MessageType.TEXT and not self.content.strip():
            raise ValueError("Text messages cannot be empty")
        if self.type is not MessageType.TEXT and not self.file_url:
            raise ValueError("Media messages require fileUrl")
        return self

from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    """Kinds of chat message content."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


class UserRole(str, Enum):
    """Coarse account role carried in access tokens."""

    USER = "user"
    ADMIN = "admin"

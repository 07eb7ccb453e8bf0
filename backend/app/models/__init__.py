"""Database models package."""

from .base import Base
from .chat import Group, GroupMember, Message, User
from .enums import MessageType, UserRole

__all__ = [
    "Base",
    "User",
    "Group",
    "GroupMember",
    "Message",
    "MessageType",
    "UserRole",
]

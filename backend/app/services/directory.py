"""Read/write access to users, groups and messages for the signaling layer.

The realtime core only needs to know who should receive a message; this
service is the single place that touches the relational store for that.
"""

from __future__ import annotations

from datetime import timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from app.models import Group, GroupMember, Message, MessageType, User


class ChatDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user(self, user_id: int) -> User | None:
        return self.db.get(User, user_id)

    def get_group(self, group_id: int) -> Group | None:
        return self.db.get(Group, group_id)

    def group_member_ids(self, group_id: int) -> list[int]:
        """Member ids of *group_id*, in join order."""

        stmt = (
            select(GroupMember.user_id)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.id)
        )
        return list(self.db.execute(stmt).scalars())

    def is_group_member(self, group_id: int, user_id: int) -> bool:
        stmt = select(GroupMember.id).where(
            GroupMember.group_id == group_id,
            GroupMember.user_id == user_id,
        )
        return self.db.execute(stmt).first() is not None

    def create_message(
        self,
        *,
        sender_id: int,
        recipient_id: int | None = None,
        group_id: int | None = None,
        content: str = "",
        message_type: MessageType = MessageType.TEXT,
        file_url: str | None = None,
    ) -> Message:
        message = Message(
            sender_id=sender_id,
            recipient_id=recipient_id,
            group_id=group_id,
            content=content,
            type=message_type,
            file_url=file_url,
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    def direct_history(self, user_id: int, peer_id: int, *, limit: int = 50) -> list[Message]:
        """Latest messages exchanged between two users, oldest first."""

        stmt = (
            select(Message)
            .options(selectinload(Message.sender))
            .where(
                Message.group_id.is_(None),
                or_(
                    and_(Message.sender_id == user_id, Message.recipient_id == peer_id),
                    and_(Message.sender_id == peer_id, Message.recipient_id == user_id),
                ),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        return list(reversed(self.db.execute(stmt).scalars().all()))

    def group_history(self, group_id: int, *, limit: int = 50) -> list[Message]:
        stmt = (
            select(Message)
            .options(selectinload(Message.sender))
            .where(Message.group_id == group_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        return list(reversed(self.db.execute(stmt).scalars().all()))

    @staticmethod
    def serialize_message(message: Message) -> dict[str, Any]:
        """Render *message* in the ``receive_message`` payload shape."""

        sender = message.sender
        created_at = message.created_at
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return {
            "id": message.id,
            "sender": {
                "id": message.sender_id,
                "username": sender.username if sender else None,
                "nickname": sender.nickname if sender else None,
                "avatar": sender.avatar if sender else None,
            },
            "recipient": message.recipient_id,
            "groupId": message.group_id,
            "content": message.content,
            "type": MessageType(message.type).value,
            "fileUrl": message.file_url,
            "timestamp": created_at.isoformat() if created_at else None,
        }


__all__ = ["ChatDirectory"]

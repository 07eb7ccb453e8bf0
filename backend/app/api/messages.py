"""Message posting with realtime fan-out, plus conversation history."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_principal, get_directory, get_dispatcher, require_known_user
from app.config import get_settings
from app.core.security import Principal
from app.schemas import MessageCreate
from app.services.directory import ChatDirectory
from parley.realtime.dispatcher import EventDispatcher
from parley.realtime.events import EventType

router = APIRouter(prefix="/messages", tags=["messages"])

settings = get_settings()

logger = logging.getLogger(__name__)


def _history_limit(limit: int | None) -> int:
    if limit is None:
        return settings.chat_history_default_limit
    return max(1, min(limit, settings.chat_history_max_limit))


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageCreate,
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    if len(body.content) > settings.chat_message_max_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Message exceeds {settings.chat_message_max_length} characters",
        )

    if body.group_id is not None:
        if directory.get_group(body.group_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
        if not directory.is_group_member(body.group_id, principal.user_id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a group member")
    else:
        require_known_user(directory, body.recipient_id)

    message = directory.create_message(
        sender_id=principal.user_id,
        recipient_id=body.recipient_id,
        group_id=body.group_id,
        content=body.content,
        message_type=body.type,
        file_url=body.file_url,
    )
    payload = directory.serialize_message(message)

    if body.group_id is not None:
        targets = directory.group_member_ids(body.group_id)
    else:
        # the sender gets a copy too so their other sessions stay in sync
        targets = [body.recipient_id, principal.user_id]
    results = await dispatcher.dispatch_many(targets, EventType.RECEIVE_MESSAGE, payload)
    logger.info(
        "Message dispatched",
        extra={
            "message_id": message.id,
            "recipients": len(results),
            "pushed": sum(1 for delivered in results.values() if delivered),
        },
    )
    return payload


@router.get("/direct/{peer_id}")
def read_direct_history(
    peer_id: int,
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
) -> list[dict[str, Any]]:
    require_known_user(directory, peer_id)
    messages = directory.direct_history(principal.user_id, peer_id, limit=_history_limit(limit))
    return [directory.serialize_message(message) for message in messages]


@router.get("/groups/{group_id}")
def read_group_history(
    group_id: int,
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
) -> list[dict[str, Any]]:
    if directory.get_group(group_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    if not directory.is_group_member(group_id, principal.user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a group member")
    messages = directory.group_history(group_id, limit=_history_limit(limit))
    return [directory.serialize_message(message) for message in messages]

"""Push channel, poll endpoint and generic event posting."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Collection

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, StreamingResponse

from app.api.deps import (
    get_current_principal,
    get_directory,
    get_realtime,
    get_stream_principal,
    require_known_user,
)
from app.core.security import Principal
from app.monitoring.metrics import signal_polls_total
from app.schemas import EventPostRequest, SignalAck
from app.services.directory import ChatDirectory
from parley.realtime.events import CONNECTED_FRAME, EventError, EventType, event_to_dict
from parley.realtime.registry import StreamSink
from parley.realtime.services import RealtimeServices

router = APIRouter(prefix="/events", tags=["events"])

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_KNOWN_TYPES = frozenset(item.value for item in EventType)

# only emitted after the directory has persisted the message or group
SERVER_OWNED_TYPES = frozenset(
    {
        EventType.RECEIVE_MESSAGE.value,
        EventType.GROUP_CREATED.value,
        EventType.GROUP_DELETED.value,
    }
)


async def event_stream(services: RealtimeServices, user_id: int, sink: StreamSink) -> AsyncIterator[str]:
    """Yield push channel frames for *user_id* until the sink closes."""

    await services.registry.register(user_id, sink)
    logger.info("Push channel opened", extra={"user_id": user_id})
    try:
        yield CONNECTED_FRAME
        async for frame in sink.frames():
            yield frame
    finally:
        with anyio.CancelScope(shield=True):
            await services.registry.unregister(user_id, sink)
        logger.info("Push channel closed", extra={"user_id": user_id})


async def drain_for(
    services: RealtimeServices,
    user_id: int,
    *,
    types: Collection[str] | None = None,
    include_read: bool = False,
) -> list[dict[str, Any]]:
    events = await services.queue.drain(user_id, types=types, include_read=include_read)
    signal_polls_total.labels("events" if events else "empty").inc()
    return [event_to_dict(event) for event in events]


def _parse_types(raw: str | None) -> set[str] | None:
    if not raw:
        return None
    requested = {item.strip() for item in raw.split(",") if item.strip()}
    unknown = requested - _KNOWN_TYPES
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown event types: {', '.join(sorted(unknown))}",
        )
    return requested or None


def _stamp_sender(event_type: str, payload: dict[str, Any] | None, user_id: int) -> dict[str, Any] | None:
    if payload is None:
        return None
    stamped = dict(payload)
    if event_type in (EventType.CALL_USER.value, EventType.END_CALL.value):
        stamped["from"] = user_id
    elif event_type == EventType.FRIEND_ACCEPTED.value:
        stamped["fromId"] = user_id
    elif event_type == EventType.FRIEND_REQUEST.value:
        sender = stamped.get("from")
        stamped["from"] = {**sender, "id": user_id} if isinstance(sender, dict) else user_id
    return stamped


@router.get("")
async def open_push_channel(
    principal: Principal = Depends(get_stream_principal),
    services: RealtimeServices = Depends(get_realtime),
):
    if not services.push_enabled:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Push channel is disabled; use polling", "usePolling": True},
        )
    sink = services.new_sink()
    return StreamingResponse(
        event_stream(services, principal.user_id, sink),
        media_type="text/event-stream; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@router.get("/poll")
async def poll_events(
    types: str | None = Query(default=None, description="Comma separated event types"),
    replay: bool = Query(default=False, description="Also return events read within the retention window"),
    principal: Principal = Depends(get_current_principal),
    services: RealtimeServices = Depends(get_realtime),
) -> list[dict[str, Any]]:
    return await drain_for(services, principal.user_id, types=_parse_types(types), include_read=replay)


@router.post("", response_model=SignalAck, response_model_exclude_none=True)
async def post_event(
    body: EventPostRequest,
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
    services: RealtimeServices = Depends(get_realtime),
) -> SignalAck:
    if body.type not in _KNOWN_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown event type: {body.type}")
    if body.type in SERVER_OWNED_TYPES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{body.type} events are only sent by the server",
        )
    require_known_user(directory, body.to)
    payload = _stamp_sender(body.type, body.payload, principal.user_id)
    try:
        delivered = await services.dispatcher.dispatch(body.to, body.type, payload)
    except EventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SignalAck(delivered=delivered)

"""Call signaling endpoints: offer, answer, ICE candidates and hang-up."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_principal, get_directory, get_realtime, require_known_user
from app.api.events import drain_for
from app.core.security import Principal
from app.schemas import CallAnswerRequest, CallEndRequest, CallInitiateRequest, IceCandidateRequest, SignalAck
from app.services.directory import ChatDirectory
from parley.realtime.events import CALL_EVENT_TYPES, EventError, EventType, ice_candidate_is_malformed
from parley.realtime.services import RealtimeServices

router = APIRouter(prefix="/calls", tags=["calls"])

logger = logging.getLogger(__name__)


async def _dispatch(
    services: RealtimeServices,
    target: int,
    event_type: EventType,
    payload: dict[str, Any],
) -> SignalAck:
    try:
        delivered = await services.dispatcher.dispatch(target, event_type, payload)
    except EventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SignalAck(delivered=delivered)


def _with_call_id(payload: dict[str, Any], call_id: str | None) -> dict[str, Any]:
    if call_id is not None:
        payload["callId"] = call_id
    return payload


@router.post("/initiate", response_model=SignalAck, response_model_exclude_none=True)
async def initiate_call(
    body: CallInitiateRequest,
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
    services: RealtimeServices = Depends(get_realtime),
) -> SignalAck:
    if body.user_to_call == principal.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot call yourself")
    require_known_user(directory, body.user_to_call)

    name = body.from_username
    if not name:
        caller = directory.get_user(principal.user_id)
        name = (caller.nickname or caller.username) if caller else None
    payload = {
        "from": principal.user_id,
        "signal": {**body.signal_data, "isVideo": body.is_video},
        "name": name or "Someone",
    }
    logger.info(
        "Call initiated",
        extra={"caller": principal.user_id, "callee": body.user_to_call, "video": body.is_video},
    )
    return await _dispatch(services, body.user_to_call, EventType.CALL_USER, _with_call_id(payload, body.call_id))


@router.post("/answer", response_model=SignalAck, response_model_exclude_none=True)
async def answer_call(
    body: CallAnswerRequest,
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
    services: RealtimeServices = Depends(get_realtime),
) -> SignalAck:
    require_known_user(directory, body.to)
    payload = _with_call_id(dict(body.signal), body.call_id)
    return await _dispatch(services, body.to, EventType.CALL_ACCEPTED, payload)


@router.post("/ice-candidate", response_model=SignalAck, response_model_exclude_none=True)
async def send_ice_candidate(
    body: IceCandidateRequest,
    principal: Principal = Depends(get_current_principal),
    directory: ChatDirectory = Depends(get_directory),
    services: RealtimeServices = Depends(get_realtime),
) -> SignalAck:
    if body.candidate is None:
        return SignalAck(delivered=False, skipped="end-of-candidates")
    if ice_candidate_is_malformed(body.candidate):
        logger.warning(
            "Skipping malformed ICE candidate",
            extra={"sender": principal.user_id, "target": body.to},
        )
        return SignalAck(delivered=False, skipped="malformed")
    require_known_user(directory, body.to)
    payload = {
        "candidate": body.candidate.get("candidate") or "",
        "sdpMid": body.candidate.get("sdpMid"),
        "sdpMLineIndex": body.candidate.get("sdpMLineIndex"),
    }
    return await _dispatch(services, body.to, EventType.ICE_CANDIDATE, _with_call_id(payload, body.call_id))


@router.post("/end", response_model=SignalAck, response_model_exclude_none=True)
async def end_call(
    body: CallEndRequest,
    principal: Principal = Depends(get_current_principal),
    services: RealtimeServices = Depends(get_realtime),
) -> SignalAck:
    if body.to is None:
        return SignalAck(delivered=False, skipped="no-target")
    payload = _with_call_id({"from": principal.user_id}, body.call_id)
    return await _dispatch(services, body.to, EventType.END_CALL, payload)


@router.get("/poll")
async def poll_call_signals(
    principal: Principal = Depends(get_current_principal),
    services: RealtimeServices = Depends(get_realtime),
) -> list[dict[str, Any]]:
    """Drain only call signaling events for the caller."""

    return await drain_for(services, principal.user_id, types=CALL_EVENT_TYPES)

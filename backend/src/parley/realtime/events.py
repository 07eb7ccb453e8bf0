"""Event envelopes exchanged over the push channel and the poll endpoint.

Both transports carry the exact same JSON envelope::

    {"id": "<hex>", "type": "<event type>", "data": {...}, "timestamp": <ms>}

Each event type owns a payload model and the envelopes form a tagged union
discriminated on ``type``, so the dispatch boundary can reject unknown types
instead of forwarding arbitrary blobs. The module is shared by the server
(dispatcher, queue, registry) and the client library (bus, call machine).
"""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class EventType(str, Enum):
    """Event types understood by the signaling core."""

    RECEIVE_MESSAGE = "receive_message"
    CALL_USER = "call_user"
    CALL_ACCEPTED = "call_accepted"
    ICE_CANDIDATE = "ice_candidate"
    END_CALL = "end_call"
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    GROUP_CREATED = "group_created"
    GROUP_DELETED = "group_deleted"


CALL_EVENT_TYPES = frozenset(
    {
        EventType.CALL_USER.value,
        EventType.CALL_ACCEPTED.value,
        EventType.ICE_CANDIDATE.value,
        EventType.END_CALL.value,
    }
)
MESSAGE_EVENT_TYPES = frozenset({EventType.RECEIVE_MESSAGE.value})

KEEPALIVE_FRAME = ": keepalive\n\n"
CONNECTED_FRAME = ": connected\n\n"


class EventError(ValueError):
    """Base error for events that cannot be built or parsed."""


class UnknownEventTypeError(EventError):
    """Raised when an event names a type outside :class:`EventType`."""

    def __init__(self, event_type: Any) -> None:
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class MalformedEventError(EventError):
    """Raised when an envelope or payload fails validation."""


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")


class MessageSender(_Payload):
    id: int | str
    username: str | None = None
    nickname: str | None = None
    avatar: str | None = None


class ReceiveMessagePayload(_Payload):
    """A chat message as rendered by the persistence collaborator."""

    id: int | str
    sender: MessageSender
    recipient: int | str | None = None
    group_id: int | str | None = Field(default=None, alias="groupId")
    content: str = ""
    type: Literal["text", "image", "audio", "video"] = "text"
    file_url: str | None = Field(default=None, alias="fileUrl")
    timestamp: str | int | None = None


class SessionDescription(_Payload):
    type: str | None = None
    sdp: str | None = None


class CallOffer(SessionDescription):
    is_video: bool = Field(default=False, alias="isVideo")


class CallUserPayload(_Payload):
    from_: int | str = Field(alias="from")
    signal: CallOffer
    name: str = "Someone"
    call_id: str | None = Field(default=None, alias="callId")


class CallAcceptedPayload(SessionDescription):
    call_id: str | None = Field(default=None, alias="callId")


class IceCandidatePayload(_Payload):
    candidate: str | None = None
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")
    call_id: str | None = Field(default=None, alias="callId")


class EndCallPayload(_Payload):
    from_: int | str | None = Field(default=None, alias="from")
    call_id: str | None = Field(default=None, alias="callId")


class FriendRequestPayload(_Payload):
    from_: dict[str, Any] | int | str = Field(alias="from")


class FriendAcceptedPayload(_Payload):
    from_id: int | str = Field(alias="fromId")


class GroupCreatedPayload(_Payload):
    id: int | str
    name: str | None = None
    members: list[Any] = Field(default_factory=list)


class GroupDeletedPayload(_Payload):
    group_id: int | str = Field(alias="groupId")


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: int


class ReceiveMessageEvent(_Envelope):
    type: Literal["receive_message"]
    data: ReceiveMessagePayload


class CallUserEvent(_Envelope):
    type: Literal["call_user"]
    data: CallUserPayload


class CallAcceptedEvent(_Envelope):
    type: Literal["call_accepted"]
    data: CallAcceptedPayload


class IceCandidateEvent(_Envelope):
    type: Literal["ice_candidate"]
    # ``None`` marks the end of candidate gathering.
    data: IceCandidatePayload | None = None


class EndCallEvent(_Envelope):
    type: Literal["end_call"]
    data: EndCallPayload


class FriendRequestEvent(_Envelope):
    type: Literal["friend_request"]
    data: FriendRequestPayload


class FriendAcceptedEvent(_Envelope):
    type: Literal["friend_accepted"]
    data: FriendAcceptedPayload


class GroupCreatedEvent(_Envelope):
    type: Literal["group_created"]
    data: GroupCreatedPayload


class GroupDeletedEvent(_Envelope):
    type: Literal["group_deleted"]
    data: GroupDeletedPayload


SignalEvent = Annotated[
    Union[
        ReceiveMessageEvent,
        CallUserEvent,
        CallAcceptedEvent,
        IceCandidateEvent,
        EndCallEvent,
        FriendRequestEvent,
        FriendAcceptedEvent,
        GroupCreatedEvent,
        GroupDeletedEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[SignalEvent] = TypeAdapter(SignalEvent)
_KNOWN_TYPES = frozenset(item.value for item in EventType)


def _coerce_type(event_type: Any) -> str:
    value = event_type.value if isinstance(event_type, EventType) else event_type
    if not isinstance(value, str) or value not in _KNOWN_TYPES:
        raise UnknownEventTypeError(event_type)
    return value


def new_event_id() -> str:
    return uuid.uuid4().hex


def build_event(event_type: EventType | str, payload: Mapping[str, Any] | None) -> SignalEvent:
    """Create a new immutable event with a fresh identity."""

    kind = _coerce_type(event_type)
    raw = {
        "id": new_event_id(),
        "type": kind,
        "data": dict(payload) if payload is not None else None,
        "timestamp": int(time.time() * 1000),
    }
    try:
        return _EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise MalformedEventError(f"Invalid {kind} payload: {exc.error_count()} error(s)") from exc


def parse_event(raw: Mapping[str, Any] | str | bytes) -> SignalEvent:
    """Validate an inbound envelope received from either transport."""

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedEventError("Event frame is not valid JSON") from exc
    if not isinstance(raw, Mapping):
        raise MalformedEventError("Event envelope must be an object")
    _coerce_type(raw.get("type"))
    try:
        return _EVENT_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        raise MalformedEventError(
            f"Invalid {raw.get('type')} envelope: {exc.error_count()} error(s)"
        ) from exc


def event_to_dict(event: SignalEvent) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True, exclude_none=False)


def encode_frame(event: SignalEvent) -> str:
    """Render a push channel frame for *event*."""

    return f"data: {json.dumps(event_to_dict(event), separators=(',', ':'))}\n\n"


def ice_candidate_is_malformed(payload: Mapping[str, Any] | IceCandidatePayload) -> bool:
    """Return ``True`` when the candidate carries no usable identifiers."""

    if isinstance(payload, IceCandidatePayload):
        candidate, mid, index = payload.candidate, payload.sdp_mid, payload.sdp_mline_index
    else:
        candidate = payload.get("candidate")
        mid = payload.get("sdpMid")
        index = payload.get("sdpMLineIndex")
    return not candidate and not mid and index is None


__all__ = [
    "CALL_EVENT_TYPES",
    "CONNECTED_FRAME",
    "KEEPALIVE_FRAME",
    "MESSAGE_EVENT_TYPES",
    "CallAcceptedEvent",
    "CallAcceptedPayload",
    "CallOffer",
    "CallUserEvent",
    "CallUserPayload",
    "EndCallEvent",
    "EndCallPayload",
    "EventError",
    "EventType",
    "FriendAcceptedEvent",
    "FriendRequestEvent",
    "GroupCreatedEvent",
    "GroupDeletedEvent",
    "IceCandidateEvent",
    "IceCandidatePayload",
    "MalformedEventError",
    "ReceiveMessageEvent",
    "ReceiveMessagePayload",
    "SessionDescription",
    "SignalEvent",
    "UnknownEventTypeError",
    "build_event",
    "encode_frame",
    "event_to_dict",
    "ice_candidate_is_malformed",
    "new_event_id",
    "parse_event",
]

"""Server-side event delivery: signal queue, push registry and dispatcher."""

from .dispatcher import EventDispatcher  # noqa: F401
from .events import (  # noqa: F401
    CALL_EVENT_TYPES,
    MESSAGE_EVENT_TYPES,
    EventError,
    EventType,
    MalformedEventError,
    SignalEvent,
    UnknownEventTypeError,
    build_event,
    parse_event,
)
from .queue import SignalQueue  # noqa: F401
from .registry import PushChannelRegistry, SinkClosedError, StreamSink  # noqa: F401
from .services import RealtimeServices  # noqa: F401

__all__ = [
    "CALL_EVENT_TYPES",
    "MESSAGE_EVENT_TYPES",
    "EventDispatcher",
    "EventError",
    "EventType",
    "MalformedEventError",
    "PushChannelRegistry",
    "RealtimeServices",
    "SignalEvent",
    "SignalQueue",
    "SinkClosedError",
    "StreamSink",
    "UnknownEventTypeError",
    "build_event",
    "parse_event",
]

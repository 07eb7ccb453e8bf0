"""Client library: event bus, transports and the call state machine."""

from .api import PushUnavailableError, SignalingAPI, SignalingAPIError  # noqa: F401
from .bus import DedupFilter, EventBus  # noqa: F401
from .calls import (  # noqa: F401
    CallError,
    CallRole,
    CallSignalingError,
    CallStateError,
    CallStateMachine,
    MediaAcquisitionError,
)
from .messages import MessageList  # noqa: F401
from .session import ChatClient  # noqa: F401
from .transport import PushState, SSEDecoder, TransportConfig, TransportSelector  # noqa: F401

__all__ = [
    "CallError",
    "CallRole",
    "CallSignalingError",
    "CallStateError",
    "CallStateMachine",
    "ChatClient",
    "DedupFilter",
    "EventBus",
    "MediaAcquisitionError",
    "MessageList",
    "PushState",
    "PushUnavailableError",
    "SSEDecoder",
    "SignalingAPI",
    "SignalingAPIError",
    "TransportConfig",
    "TransportSelector",
]

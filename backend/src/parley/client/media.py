"""Interfaces the call state machine needs from a WebRTC stack.

Any peer connection implementation can be plugged in as long as it exposes
these coroutine methods and an ``on`` / ``remove_all_listeners`` style
event registration. Tests use in-memory fakes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)

# Peer connection events the state machine listens to.
ICE_CANDIDATE = "icecandidate"
CONNECTION_STATE_CHANGE = "connectionstatechange"
ICE_CONNECTION_STATE_CHANGE = "iceconnectionstatechange"
TRACK = "track"


class MediaTrack(Protocol):
    kind: str

    def stop(self) -> None: ...


class MediaStream(Protocol):
    def get_tracks(self) -> Sequence[MediaTrack]: ...


class MediaDevices(Protocol):
    async def get_user_media(self, *, audio: bool, video: bool) -> MediaStream:
        """Acquire microphone (and camera when *video*) exclusively."""


class PeerConnection(Protocol):
    connection_state: str
    ice_connection_state: str
    remote_description: Mapping[str, Any] | None

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...

    def remove_all_listeners(self) -> None: ...

    def add_track(self, track: MediaTrack, stream: MediaStream) -> None: ...

    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def set_local_description(self, description: Mapping[str, Any]) -> None: ...

    async def set_remote_description(self, description: Mapping[str, Any]) -> None: ...

    async def add_ice_candidate(self, candidate: Mapping[str, Any]) -> None: ...

    def restart_ice(self) -> None: ...

    async def close(self) -> None: ...


PeerConnectionFactory = Callable[[], PeerConnection]


def release_media(stream: MediaStream | None) -> int:
    """Stop every track of *stream*; return how many were stopped. Never raises."""

    if stream is None:
        return 0
    stopped = 0
    try:
        tracks = list(stream.get_tracks())
    except Exception:
        logger.exception("Could not enumerate media tracks")
        return 0
    for track in tracks:
        try:
            track.stop()
        except Exception:
            logger.warning("Failed to stop %s track", getattr(track, "kind", "media"), exc_info=True)
            continue
        stopped += 1
    return stopped


__all__ = [
    "CONNECTION_STATE_CHANGE",
    "ICE_CANDIDATE",
    "ICE_CONNECTION_STATE_CHANGE",
    "TRACK",
    "MediaDevices",
    "MediaStream",
    "MediaTrack",
    "PeerConnection",
    "PeerConnectionFactory",
    "release_media",
]

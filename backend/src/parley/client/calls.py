"""Client-side call state machine for one-to-one audio/video calls.

Roles move ``idle -> calling -> active`` for the caller and
``idle -> ringing -> active`` for the callee; any termination passes through
``ending`` before returning to ``idle``.

Every call attempt gets a :class:`CallSession` with a fresh generation
``token``. Asynchronous steps (media acquisition, offer/answer creation,
signaling requests) cannot be interrupted, so each continuation compares its
session token with the current one before applying anything; effects of a
superseded session are discarded and any media it acquired late is released.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ..realtime.events import (
    CallAcceptedEvent,
    CallUserEvent,
    EndCallEvent,
    IceCandidateEvent,
    SignalEvent,
    ice_candidate_is_malformed,
)
from .media import (
    CONNECTION_STATE_CHANGE,
    ICE_CANDIDATE,
    ICE_CONNECTION_STATE_CHANGE,
    TRACK,
    MediaDevices,
    MediaStream,
    PeerConnection,
    PeerConnectionFactory,
    release_media,
)

logger = logging.getLogger(__name__)


class CallRole(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    ACTIVE = "active"
    ENDING = "ending"


BUSY_ROLES = frozenset({CallRole.CALLING, CallRole.RINGING, CallRole.ACTIVE})


class CallError(Exception):
    """Base class for call failures surfaced to the user."""


class CallStateError(CallError):
    """An action was requested in a role that does not allow it."""


class MediaAcquisitionError(CallError):
    """Camera or microphone could not be acquired."""


class CallSignalingError(CallError):
    """Offer/answer negotiation or its signaling request failed."""


class CallSignaling(Protocol):
    async def initiate_call(
        self,
        user_to_call: int,
        signal_data: Mapping[str, Any],
        *,
        is_video: bool,
        from_username: str | None = None,
        call_id: str | None = None,
    ) -> Any: ...

    async def answer_call(self, to: int, signal: Mapping[str, Any], *, call_id: str | None = None) -> Any: ...

    async def send_ice_candidate(
        self, to: int, candidate: Mapping[str, Any] | None, *, call_id: str | None = None
    ) -> Any: ...

    async def end_call(self, to: int | None = None, *, call_id: str | None = None) -> Any: ...


_tokens = itertools.count(1)


@dataclass
class CallSession:
    role: CallRole = CallRole.IDLE
    peer_user_id: int | None = None
    peer_name: str | None = None
    is_video: bool = False
    call_id: str | None = None
    token: int = field(default_factory=lambda: next(_tokens))
    local_media: MediaStream | None = None
    peer: PeerConnection | None = None
    remote_offer: dict[str, Any] | None = None
    remote_description_set: bool = False
    remote_candidates: list[dict[str, Any]] = field(default_factory=list)
    local_candidates: list[dict[str, Any]] = field(default_factory=list)
    signaling_ready: bool = False
    remote_tracks: list[Any] = field(default_factory=list)
    health: str = "new"
    restart_attempted: bool = False
    ended_intentionally: bool = False


def _candidate_dict(candidate: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "candidate": candidate.get("candidate") or "",
        "sdpMid": candidate.get("sdpMid"),
        "sdpMLineIndex": candidate.get("sdpMLineIndex"),
    }


def _same_user(left: Any, right: Any) -> bool:
    return left is not None and right is not None and str(left) == str(right)


class CallStateMachine:
    """Drives one peer connection from call events and user actions."""

    def __init__(
        self,
        signaling: CallSignaling,
        media: MediaDevices,
        peer_factory: PeerConnectionFactory,
        *,
        display_name: str | None = None,
        ending_grace_seconds: float = 3.0,
        ring_timeout_seconds: float | None = 45.0,
        hangup_on_repeated_failure: bool = False,
        on_status: Callable[[str], Awaitable[None] | None] | None = None,
    ) -> None:
        self._signaling = signaling
        self._media = media
        self._peer_factory = peer_factory
        self._display_name = display_name
        self._grace = ending_grace_seconds
        self._ring_timeout = ring_timeout_seconds
        self._hangup_on_repeated_failure = hangup_on_repeated_failure
        self._on_status = on_status
        self._session = CallSession()
        self._status = ""
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._ring_task: asyncio.Task[None] | None = None
        self._grace_task: asyncio.Task[None] | None = None
        self._finished_calls: deque[str] = deque(maxlen=32)
        self._orphan_candidates: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def role(self) -> CallRole:
        return self._session.role

    @property
    def status(self) -> str:
        return self._status

    def is_busy(self) -> bool:
        """True while calling, ringing or in a call; drives the fast poll rate."""

        return self._session.role in BUSY_ROLES

    def _is_current(self, session: CallSession) -> bool:
        return self._session.token == session.token and not session.ended_intentionally

    def _set_status(self, status: str) -> None:
        self._status = status
        if self._on_status is None:
            return
        try:
            result = self._on_status(status)
            if asyncio.iscoroutine(result):
                self._spawn(result)
        except Exception:
            logger.exception("Status callback failed")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for background signaling work spawned by callbacks."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def start_call(self, peer_user_id: int, *, is_video: bool = False, peer_name: str | None = None) -> None:
        if self.is_busy():
            raise CallStateError(f"Cannot start a call while {self.role.value}")
        session = CallSession(
            role=CallRole.CALLING,
            peer_user_id=peer_user_id,
            peer_name=peer_name,
            is_video=is_video,
            call_id=uuid.uuid4().hex,
        )
        self._replace_session(session)
        self._set_status(f"Calling {peer_name or peer_user_id}...")
        self._arm_ring_timer(session)

        stream = await self._acquire_media(session, video=is_video, notify=False)
        if stream is None:
            return
        try:
            peer = self._create_peer(session, stream)
            offer = await peer.create_offer()
            if not self._is_current(session):
                return
            await peer.set_local_description(offer)
            if not self._is_current(session):
                return
            await self._signaling.initiate_call(
                peer_user_id,
                offer,
                is_video=is_video,
                from_username=self._display_name,
                call_id=session.call_id,
            )
        except Exception as exc:
            if not self._is_current(session):
                return
            logger.warning("Call setup failed", exc_info=True)
            await self._terminate(session, status="Call failed", notify=False, grace=False)
            raise CallSignalingError("Could not start the call") from exc
        await self._mark_signaling_ready(session)

    async def answer(self) -> None:
        session = self._session
        if session.role is not CallRole.RINGING or session.ended_intentionally:
            raise CallStateError(f"No incoming call to answer while {session.role.value}")
        # Switch before negotiating so early health callbacks are not read as failures.
        session.role = CallRole.ACTIVE
        self._cancel_ring_timer()
        self._set_status("Connecting...")

        stream = await self._acquire_media(session, video=session.is_video, notify=True)
        if stream is None:
            return
        try:
            peer = self._create_peer(session, stream)
            await peer.set_remote_description(session.remote_offer or {})
            if not self._is_current(session):
                return
            session.remote_description_set = True
            await self._flush_remote_candidates(session)
            answer = await peer.create_answer()
            if not self._is_current(session):
                return
            await peer.set_local_description(answer)
            if not self._is_current(session):
                return
            await self._signaling.answer_call(session.peer_user_id, answer, call_id=session.call_id)
        except Exception as exc:
            if not self._is_current(session):
                return
            logger.warning("Answering call failed", exc_info=True)
            await self._terminate(session, status="Call failed", notify=True, grace=False)
            raise CallSignalingError("Could not answer the call") from exc
        await self._mark_signaling_ready(session)

    async def decline(self) -> None:
        session = self._session
        if session.role is not CallRole.RINGING:
            raise CallStateError(f"No incoming call to decline while {session.role.value}")
        await self._terminate(session, status="Call declined", notify=True)

    async def hang_up(self) -> None:
        session = self._session
        if session.role not in BUSY_ROLES:
            return
        await self._terminate(session, status="Call ended", notify=True)

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------

    async def handle_event(self, event: SignalEvent) -> None:
        """Bus subscriber; non-call events are ignored."""

        if isinstance(event, CallUserEvent):
            await self._on_call_user(event)
        elif isinstance(event, CallAcceptedEvent):
            await self._on_call_accepted(event)
        elif isinstance(event, IceCandidateEvent):
            await self._on_remote_candidate(event)
        elif isinstance(event, EndCallEvent):
            await self._on_end_call(event)

    def _foreign_call(self, session: CallSession, call_id: str | None) -> bool:
        return call_id is not None and session.call_id is not None and call_id != session.call_id

    async def _on_call_user(self, event: CallUserEvent) -> None:
        data = event.data
        if self.is_busy():
            logger.info(
                "Ignoring incoming call while busy",
                extra={"caller": data.from_, "role": self.role.value},
            )
            return
        if data.call_id is not None and data.call_id in self._finished_calls:
            logger.debug("Ignoring offer for finished call %s", data.call_id)
            return
        offer = data.signal.model_dump(by_alias=True, exclude={"is_video"}, exclude_none=True)
        session = CallSession(
            role=CallRole.RINGING,
            peer_user_id=data.from_,
            peer_name=data.name,
            is_video=data.signal.is_video,
            call_id=data.call_id,
            remote_offer=offer,
        )
        if data.call_id is not None:
            session.remote_candidates.extend(self._orphan_candidates.pop(data.call_id, []))
        self._replace_session(session)
        self._set_status(f"{data.name} is calling...")
        self._arm_ring_timer(session)

    async def _on_call_accepted(self, event: CallAcceptedEvent) -> None:
        session = self._session
        if session.role is not CallRole.CALLING or session.peer is None or session.ended_intentionally:
            logger.debug("Ignoring call_accepted while %s", session.role.value)
            return
        if self._foreign_call(session, event.data.call_id):
            logger.debug("Ignoring call_accepted for another call")
            return
        session.role = CallRole.ACTIVE
        self._cancel_ring_timer()
        self._set_status("Connecting...")
        answer = event.data.model_dump(by_alias=True, exclude={"call_id"}, exclude_none=True)
        try:
            await session.peer.set_remote_description(answer)
        except Exception:
            if not self._is_current(session):
                return
            logger.warning("Could not apply remote answer", exc_info=True)
            await self._terminate(session, status="Call failed", notify=True, grace=False)
            return
        if not self._is_current(session):
            return
        session.remote_description_set = True
        await self._flush_remote_candidates(session)

    async def _on_remote_candidate(self, event: IceCandidateEvent) -> None:
        data = event.data
        if data is None:
            return
        if ice_candidate_is_malformed(data):
            logger.warning("Dropping malformed ICE candidate", extra={"event_id": event.id})
            return
        candidate = {
            "candidate": data.candidate or "",
            "sdpMid": data.sdp_mid,
            "sdpMLineIndex": data.sdp_mline_index,
        }
        session = self._session
        if session.role not in BUSY_ROLES or session.ended_intentionally:
            if data.call_id is not None and data.call_id not in self._finished_calls:
                self._orphan_candidates.setdefault(data.call_id, []).append(candidate)
                while len(self._orphan_candidates) > 8:
                    self._orphan_candidates.popitem(last=False)
            return
        if self._foreign_call(session, data.call_id):
            logger.debug("Ignoring ICE candidate for another call")
            return
        if session.peer is None or not session.remote_description_set:
            session.remote_candidates.append(candidate)
            return
        await self._apply_candidate(session, candidate)

    async def _on_end_call(self, event: EndCallEvent) -> None:
        session = self._session
        if session.role not in BUSY_ROLES or session.ended_intentionally:
            return
        if event.data.from_ is not None and not _same_user(event.data.from_, session.peer_user_id):
            logger.debug("Ignoring end_call from a user outside this call")
            return
        if self._foreign_call(session, event.data.call_id):
            logger.debug("Ignoring end_call for another call")
            return
        if session.role is CallRole.RINGING:
            status = "Call ended by caller"
        elif session.role is CallRole.CALLING:
            status = "Call declined"
        else:
            status = "Call ended by other party"
        await self._terminate(session, status=status, notify=False)

    # ------------------------------------------------------------------
    # Peer connection plumbing
    # ------------------------------------------------------------------

    async def _acquire_media(self, session: CallSession, *, video: bool, notify: bool) -> MediaStream | None:
        try:
            stream = await self._media.get_user_media(audio=True, video=video)
        except Exception as exc:
            if not self._is_current(session):
                return None
            logger.warning("Media acquisition failed: %s", exc)
            await self._terminate(
                session, status="Could not access camera/microphone", notify=notify, grace=False
            )
            raise MediaAcquisitionError(str(exc) or "Media acquisition failed") from exc
        if not self._is_current(session):
            release_media(stream)
            return None
        session.local_media = stream
        return stream

    def _create_peer(self, session: CallSession, stream: MediaStream) -> PeerConnection:
        peer = self._peer_factory()
        session.peer = peer
        peer.on(ICE_CANDIDATE, lambda candidate=None: self._on_local_candidate(session, candidate))
        peer.on(
            CONNECTION_STATE_CHANGE,
            lambda *_: self._on_health_change(session, getattr(peer, "connection_state", "")),
        )
        peer.on(
            ICE_CONNECTION_STATE_CHANGE,
            lambda *_: self._on_health_change(session, getattr(peer, "ice_connection_state", "")),
        )
        peer.on(TRACK, lambda track, *_: self._on_remote_track(session, track))
        for track in stream.get_tracks():
            peer.add_track(track, stream)
        return peer

    def _on_remote_track(self, session: CallSession, track: Any) -> None:
        if self._is_current(session):
            session.remote_tracks.append(track)

    def _on_local_candidate(self, session: CallSession, candidate: Mapping[str, Any] | None) -> None:
        if candidate is None or not self._is_current(session):
            return
        payload = _candidate_dict(candidate)
        if not session.signaling_ready:
            session.local_candidates.append(payload)
            return
        self._spawn(self._send_candidate(session, payload))

    async def _mark_signaling_ready(self, session: CallSession) -> None:
        async with self._send_lock:
            if not self._is_current(session):
                return
            session.signaling_ready = True
            pending, session.local_candidates = session.local_candidates, []
            for payload in pending:
                await self._post_candidate(session, payload)

    async def _send_candidate(self, session: CallSession, payload: dict[str, Any]) -> None:
        async with self._send_lock:
            await self._post_candidate(session, payload)

    async def _post_candidate(self, session: CallSession, payload: dict[str, Any]) -> None:
        if not self._is_current(session) or session.peer_user_id is None:
            return
        try:
            await self._signaling.send_ice_candidate(session.peer_user_id, payload, call_id=session.call_id)
        except Exception as exc:
            logger.warning("Failed to send ICE candidate: %s", exc)

    async def _flush_remote_candidates(self, session: CallSession) -> None:
        while session.remote_candidates and self._is_current(session):
            await self._apply_candidate(session, session.remote_candidates.pop(0))

    async def _apply_candidate(self, session: CallSession, candidate: dict[str, Any]) -> None:
        peer = session.peer
        if peer is None:
            return
        try:
            await peer.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning("Failed to add ICE candidate: %s", exc)

    def _on_health_change(self, session: CallSession, state: str) -> None:
        if not self._is_current(session) or session.role is not CallRole.ACTIVE:
            return
        if state in ("connected", "completed"):
            session.health = "connected"
            session.restart_attempted = False
            self._set_status("Call in progress")
        elif state in ("checking", "connecting"):
            session.health = "connecting"
            self._set_status("Connecting...")
        elif state == "disconnected":
            session.health = "disconnected"
            self._set_status("Connection lost...")
        elif state == "failed":
            if session.health == "failed":
                return
            session.health = "failed"
            self._on_connection_failed(session)

    def _on_connection_failed(self, session: CallSession) -> None:
        if not session.restart_attempted:
            session.restart_attempted = True
            self._set_status("Connection failed - trying to reconnect...")
            try:
                if session.peer is not None:
                    session.peer.restart_ice()
            except Exception:
                logger.warning("ICE restart failed to start", exc_info=True)
            return
        logger.warning("Connection failed again after ICE restart", extra={"peer": session.peer_user_id})
        if self._hangup_on_repeated_failure:
            self._spawn(self._terminate(session, status="Call failed", notify=True))
        else:
            self._set_status("Connection failed - check network")

    # ------------------------------------------------------------------
    # Timers and teardown
    # ------------------------------------------------------------------

    def _replace_session(self, session: CallSession) -> None:
        if self._grace_task is not None and not self._grace_task.done():
            self._grace_task.cancel()
        self._grace_task = None
        self._session = session

    def _arm_ring_timer(self, session: CallSession) -> None:
        self._cancel_ring_timer()
        if self._ring_timeout is None or self._ring_timeout <= 0:
            return
        self._ring_task = asyncio.create_task(self._ring_expired(session), name="call-ring-timeout")

    def _cancel_ring_timer(self) -> None:
        task = self._ring_task
        self._ring_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _ring_expired(self, session: CallSession) -> None:
        await asyncio.sleep(self._ring_timeout or 0)
        if not self._is_current(session) or session.role not in (CallRole.CALLING, CallRole.RINGING):
            return
        status = "No answer" if session.role is CallRole.CALLING else "Missed call"
        logger.info("Ring timeout elapsed", extra={"peer": session.peer_user_id, "role": session.role.value})
        await self._terminate(session, status=status, notify=True)

    async def _terminate(self, session: CallSession, *, status: str, notify: bool, grace: bool = True) -> None:
        if session.ended_intentionally:
            return
        session.ended_intentionally = True
        session.role = CallRole.ENDING
        self._cancel_ring_timer()
        if session.call_id is not None:
            self._finished_calls.append(session.call_id)
            self._orphan_candidates.pop(session.call_id, None)

        peer, session.peer = session.peer, None
        if peer is not None:
            peer.remove_all_listeners()
        release_media(session.local_media)
        session.local_media = None
        if peer is not None:
            try:
                await peer.close()
            except Exception:
                logger.warning("Closing peer connection failed", exc_info=True)
        session.remote_candidates.clear()
        session.local_candidates.clear()

        if notify and session.peer_user_id is not None:
            try:
                await self._signaling.end_call(session.peer_user_id, call_id=session.call_id)
            except Exception as exc:
                logger.warning("Could not notify peer of call end: %s", exc)

        self._set_status(status)
        if grace and self._grace > 0:
            self._grace_task = asyncio.create_task(self._finish_after_grace(session), name="call-ending-grace")
        else:
            self._finish(session, clear_status=False)

    async def _finish_after_grace(self, session: CallSession) -> None:
        await asyncio.sleep(self._grace)
        self._finish(session, clear_status=True)

    def _finish(self, session: CallSession, *, clear_status: bool) -> None:
        if self._session.token != session.token:
            return
        self._session = CallSession()
        if clear_status:
            self._set_status("")

    async def close(self) -> None:
        """Hang up any call and cancel timers."""

        await self.hang_up()
        self._cancel_ring_timer()
        if self._grace_task is not None:
            self._grace_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._grace_task
            self._grace_task = None
        self._finish(self._session, clear_status=True)
        await self.settle()


__all__ = [
    "BUSY_ROLES",
    "CallError",
    "CallRole",
    "CallSession",
    "CallSignaling",
    "CallSignalingError",
    "CallStateError",
    "CallStateMachine",
    "MediaAcquisitionError",
]

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from parley.client.calls import (
    CallRole,
    CallSignalingError,
    CallStateError,
    CallStateMachine,
    MediaAcquisitionError,
)
from parley.client.media import CONNECTION_STATE_CHANGE, ICE_CANDIDATE, TRACK
from parley.realtime.events import EventType, build_event


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeStream:
    def __init__(self, video: bool) -> None:
        self.tracks = [FakeTrack("audio")] + ([FakeTrack("video")] if video else [])

    def get_tracks(self) -> list[FakeTrack]:
        return self.tracks

    @property
    def released(self) -> bool:
        return all(track.stopped for track in self.tracks)


class FakeMedia:
    def __init__(self) -> None:
        self.streams: list[FakeStream] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def get_user_media(self, *, audio: bool, video: bool) -> FakeStream:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        stream = FakeStream(video)
        self.streams.append(stream)
        return stream


class FakePeer:
    def __init__(self, *, gather_on_local: bool = True) -> None:
        self.handlers: dict[str, list[Any]] = {}
        self.log: list[tuple[str, Any]] = []
        self.tracks: list[FakeTrack] = []
        self.connection_state = "new"
        self.ice_connection_state = "new"
        self.remote_description = None
        self.restarts = 0
        self.closed = False
        self.fail_remote_description = False
        self.gather_on_local = gather_on_local

    def on(self, event: str, handler) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def remove_all_listeners(self) -> None:
        self.handlers.clear()

    def emit(self, event: str, *args) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(*args)

    def set_state(self, state: str) -> None:
        self.connection_state = state
        self.emit(CONNECTION_STATE_CHANGE)

    def add_track(self, track, stream) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> dict[str, Any]:
        return {"type": "offer", "sdp": "local-offer"}

    async def create_answer(self) -> dict[str, Any]:
        return {"type": "answer", "sdp": "local-answer"}

    async def set_local_description(self, description) -> None:
        self.log.append(("local", description["type"]))
        if self.gather_on_local:
            self.emit(ICE_CANDIDATE, {"candidate": "candidate:host", "sdpMid": "0", "sdpMLineIndex": 0})

    async def set_remote_description(self, description) -> None:
        if self.fail_remote_description:
            raise RuntimeError("bad sdp")
        self.remote_description = description
        self.log.append(("remote", description.get("sdp")))

    async def add_ice_candidate(self, candidate) -> None:
        self.log.append(("candidate", candidate["candidate"]))

    def restart_ice(self) -> None:
        self.restarts += 1

    async def close(self) -> None:
        self.closed = True


class FakeSignaling:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.fail_initiate = False

    async def initiate_call(self, user_to_call, signal_data, *, is_video, from_username=None, call_id=None):
        if self.fail_initiate:
            raise RuntimeError("network down")
        self.calls.append(("initiate", user_to_call, dict(signal_data), is_video, call_id))

    async def answer_call(self, to, signal, *, call_id=None):
        self.calls.append(("answer", to, dict(signal), call_id))

    async def send_ice_candidate(self, to, candidate, *, call_id=None):
        self.calls.append(("ice", to, candidate["candidate"], call_id))

    async def end_call(self, to=None, *, call_id=None):
        self.calls.append(("end", to, call_id))

    def kinds(self) -> list[str]:
        return [call[0] for call in self.calls]


class Harness:
    def __init__(self, **options) -> None:
        self.signaling = FakeSignaling()
        self.media = FakeMedia()
        self.peers: list[FakePeer] = []
        self.statuses: list[str] = []
        options.setdefault("ending_grace_seconds", 0)
        options.setdefault("ring_timeout_seconds", None)
        self.machine = CallStateMachine(
            self.signaling,
            self.media,
            self._new_peer,
            display_name="Alice",
            on_status=self.statuses.append,
            **options,
        )

    def _new_peer(self) -> FakePeer:
        peer = FakePeer()
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> FakePeer:
        return self.peers[-1]


def _incoming(caller: int = 2, *, call_id: str | None = "c-1", video: bool = False):
    return build_event(
        EventType.CALL_USER,
        {
            "from": caller,
            "signal": {"type": "offer", "sdp": "remote-offer", "isVideo": video},
            "name": "Bob",
            "callId": call_id,
        },
    )


def _accepted(call_id: str | None):
    return build_event(EventType.CALL_ACCEPTED, {"type": "answer", "sdp": "remote-answer", "callId": call_id})


def _candidate(value: str, call_id: str | None = "c-1"):
    return build_event(
        EventType.ICE_CANDIDATE, {"candidate": value, "sdpMid": "0", "sdpMLineIndex": 0, "callId": call_id}
    )


def _end(sender: int = 2, call_id: str | None = None):
    return build_event(EventType.END_CALL, {"from": sender, "callId": call_id})


@pytest.fixture()
def harness() -> Harness:
    return Harness()


@pytest.mark.anyio
async def test_caller_sends_offer_before_any_candidate(harness: Harness) -> None:
    await harness.machine.start_call(2, is_video=True, peer_name="Bob")

    assert harness.machine.role is CallRole.CALLING
    assert harness.statuses[0] == "Calling Bob..."
    assert harness.signaling.kinds() == ["initiate", "ice"]
    _, to, offer, is_video, call_id = harness.signaling.calls[0]
    assert (to, offer["sdp"], is_video) == (2, "local-offer", True)
    assert call_id == harness.machine.session.call_id
    assert len(harness.peer.tracks) == 2

    harness.peer.emit(ICE_CANDIDATE, {"candidate": "candidate:srflx", "sdpMid": "0", "sdpMLineIndex": 0})
    await harness.machine.settle()

    assert harness.signaling.calls[-1] == ("ice", 2, "candidate:srflx", call_id)


@pytest.mark.anyio
async def test_answer_then_candidates_complete_the_caller_side(harness: Harness) -> None:
    await harness.machine.start_call(2, peer_name="Bob")
    call_id = harness.machine.session.call_id

    await harness.machine.handle_event(_candidate("candidate:early", call_id))
    await harness.machine.handle_event(_accepted(call_id))
    await harness.machine.handle_event(_candidate("candidate:late", call_id))
    harness.peer.set_state("connected")

    assert harness.machine.role is CallRole.ACTIVE
    assert harness.peer.log[1:] == [
        ("remote", "remote-answer"),
        ("candidate", "candidate:early"),
        ("candidate", "candidate:late"),
    ]
    assert harness.machine.status == "Call in progress"


@pytest.mark.anyio
async def test_answer_for_another_call_is_ignored(harness: Harness) -> None:
    await harness.machine.start_call(2)

    await harness.machine.handle_event(_accepted("someone-else"))

    assert harness.machine.role is CallRole.CALLING
    assert harness.peer.remote_description is None


@pytest.mark.anyio
async def test_callee_applies_buffered_candidates_after_remote_offer(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming(video=True))
    assert harness.machine.role is CallRole.RINGING
    assert harness.machine.status == "Bob is calling..."
    assert harness.peers == []

    await harness.machine.handle_event(_candidate("candidate:a"))
    await harness.machine.handle_event(_candidate("candidate:b"))
    await harness.machine.answer()

    assert harness.machine.role is CallRole.ACTIVE
    assert harness.peer.log == [
        ("remote", "remote-offer"),
        ("candidate", "candidate:a"),
        ("candidate", "candidate:b"),
        ("local", "answer"),
    ]
    assert harness.signaling.calls[0] == ("answer", 2, {"type": "answer", "sdp": "local-answer"}, "c-1")
    assert harness.signaling.kinds() == ["answer", "ice"]
    assert harness.media.streams[0].tracks[1].kind == "video"


@pytest.mark.anyio
async def test_candidates_arriving_before_the_offer_are_kept(harness: Harness) -> None:
    await harness.machine.handle_event(_candidate("candidate:first", "c-9"))
    await harness.machine.handle_event(_incoming(call_id="c-9"))
    await harness.machine.answer()

    assert ("candidate", "candidate:first") in harness.peer.log


@pytest.mark.anyio
async def test_incoming_call_while_busy_is_ignored(harness: Harness) -> None:
    await harness.machine.start_call(3, peer_name="Carol")

    await harness.machine.handle_event(_incoming(caller=2))

    assert harness.machine.role is CallRole.CALLING
    assert harness.machine.session.peer_user_id == 3


@pytest.mark.anyio
async def test_start_call_while_busy_raises(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())

    with pytest.raises(CallStateError):
        await harness.machine.start_call(3)


@pytest.mark.anyio
async def test_decline_notifies_caller(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())

    await harness.machine.decline()

    assert harness.signaling.calls == [("end", 2, "c-1")]
    assert harness.machine.status == "Call declined"
    assert harness.machine.role is CallRole.IDLE


@pytest.mark.anyio
async def test_caller_hanging_up_before_answer_stops_the_ringing(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())

    await harness.machine.handle_event(_end(2, "c-1"))

    assert harness.machine.status == "Call ended by caller"
    assert harness.machine.role is CallRole.IDLE
    assert harness.signaling.calls == []


@pytest.mark.anyio
async def test_callee_declining_is_reported_to_caller(harness: Harness) -> None:
    await harness.machine.start_call(2)
    stream = harness.media.streams[0]

    await harness.machine.handle_event(_end(2))

    assert harness.machine.status == "Call declined"
    assert stream.released
    assert harness.peer.closed


@pytest.mark.anyio
async def test_remote_hang_up_during_call_releases_everything(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()
    peer, stream = harness.peer, harness.media.streams[0]

    await harness.machine.handle_event(_end(2))

    assert harness.machine.status == "Call ended by other party"
    assert stream.released
    assert peer.closed
    assert peer.handlers == {}
    assert harness.signaling.kinds().count("end") == 0


@pytest.mark.anyio
async def test_end_call_from_stranger_is_ignored(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()

    await harness.machine.handle_event(_end(sender=99))

    assert harness.machine.role is CallRole.ACTIVE


@pytest.mark.anyio
async def test_local_hang_up_notifies_peer(harness: Harness) -> None:
    await harness.machine.start_call(2)
    call_id = harness.machine.session.call_id

    await harness.machine.hang_up()

    assert harness.signaling.calls[-1] == ("end", 2, call_id)
    assert harness.machine.status == "Call ended"
    assert harness.machine.is_busy() is False


@pytest.mark.anyio
async def test_late_offer_for_finished_call_is_ignored(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())
    await harness.machine.decline()

    await harness.machine.handle_event(_incoming())

    assert harness.machine.role is CallRole.IDLE


@pytest.mark.anyio
async def test_media_failure_on_start_aborts_without_notifying(harness: Harness) -> None:
    harness.media.error = PermissionError("denied")

    with pytest.raises(MediaAcquisitionError):
        await harness.machine.start_call(2)

    assert harness.machine.status == "Could not access camera/microphone"
    assert harness.machine.role is CallRole.IDLE
    assert harness.signaling.calls == []
    assert harness.peers == []


@pytest.mark.anyio
async def test_media_failure_on_answer_tells_the_caller(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())
    harness.media.error = PermissionError("denied")

    with pytest.raises(MediaAcquisitionError):
        await harness.machine.answer()

    assert harness.signaling.calls == [("end", 2, "c-1")]
    assert harness.machine.status == "Could not access camera/microphone"


@pytest.mark.anyio
async def test_signaling_failure_releases_media(harness: Harness) -> None:
    harness.signaling.fail_initiate = True

    with pytest.raises(CallSignalingError):
        await harness.machine.start_call(2)

    assert harness.machine.status == "Call failed"
    assert harness.media.streams[0].released
    assert harness.peer.closed


@pytest.mark.anyio
async def test_hang_up_during_media_acquisition_discards_late_stream(harness: Harness) -> None:
    harness.media.gate = asyncio.Event()
    starting = asyncio.create_task(harness.machine.start_call(2))
    await asyncio.sleep(0)

    await harness.machine.hang_up()
    harness.media.gate.set()
    await starting

    assert harness.media.streams[0].released
    assert harness.peers == []
    assert harness.signaling.kinds() == ["end"]


@pytest.mark.anyio
async def test_ice_failure_triggers_one_restart() -> None:
    harness = Harness()
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()
    peer = harness.peer

    peer.set_state("failed")
    peer.set_state("failed")
    assert peer.restarts == 1
    assert harness.machine.status == "Connection failed - trying to reconnect..."

    peer.set_state("connecting")
    peer.set_state("failed")
    assert peer.restarts == 1
    assert harness.machine.status == "Connection failed - check network"
    assert harness.machine.role is CallRole.ACTIVE


@pytest.mark.anyio
async def test_recovered_connection_allows_another_restart() -> None:
    harness = Harness()
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()
    peer = harness.peer

    peer.set_state("failed")
    peer.set_state("connected")
    peer.set_state("disconnected")
    assert harness.machine.status == "Connection lost..."
    peer.set_state("failed")

    assert peer.restarts == 2


@pytest.mark.anyio
async def test_repeated_failure_can_hang_up() -> None:
    harness = Harness(hangup_on_repeated_failure=True)
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()
    peer = harness.peer

    peer.set_state("failed")
    peer.set_state("checking")
    peer.set_state("failed")
    await harness.machine.settle()

    assert harness.machine.status == "Call failed"
    assert harness.signaling.calls[-1] == ("end", 2, "c-1")
    assert harness.machine.role is CallRole.IDLE


@pytest.mark.anyio
async def test_unanswered_outgoing_call_times_out() -> None:
    harness = Harness(ring_timeout_seconds=0.01)
    await harness.machine.start_call(2)

    await asyncio.sleep(0.05)

    assert harness.machine.status == "No answer"
    assert harness.signaling.kinds()[-1] == "end"
    assert harness.machine.role is CallRole.IDLE


@pytest.mark.anyio
async def test_unanswered_incoming_call_becomes_missed() -> None:
    harness = Harness(ring_timeout_seconds=0.01)
    await harness.machine.handle_event(_incoming())

    await asyncio.sleep(0.05)

    assert harness.machine.status == "Missed call"
    assert harness.signaling.calls == [("end", 2, "c-1")]


@pytest.mark.anyio
async def test_answered_call_does_not_time_out() -> None:
    harness = Harness(ring_timeout_seconds=0.02)
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()

    await asyncio.sleep(0.05)

    assert harness.machine.role is CallRole.ACTIVE
    await harness.machine.close()


@pytest.mark.anyio
async def test_ending_grace_shows_status_then_clears() -> None:
    harness = Harness(ending_grace_seconds=0.01)
    await harness.machine.handle_event(_incoming())
    await harness.machine.decline()

    assert harness.machine.role is CallRole.ENDING
    assert harness.machine.status == "Call declined"
    await asyncio.sleep(0.05)

    assert harness.machine.role is CallRole.IDLE
    assert harness.machine.status == ""


@pytest.mark.anyio
async def test_new_call_during_grace_replaces_ending_session() -> None:
    harness = Harness(ending_grace_seconds=0.05)
    await harness.machine.handle_event(_incoming(call_id="c-1"))
    await harness.machine.decline()

    await harness.machine.handle_event(_incoming(call_id="c-2"))
    await asyncio.sleep(0.08)

    assert harness.machine.role is CallRole.RINGING
    assert harness.machine.session.call_id == "c-2"


@pytest.mark.anyio
async def test_every_call_attempt_gets_a_newer_generation(harness: Harness) -> None:
    tokens = [harness.machine.session.token]

    await harness.machine.handle_event(_incoming(call_id="c-1"))
    tokens.append(harness.machine.session.token)
    await harness.machine.decline()
    tokens.append(harness.machine.session.token)
    await harness.machine.start_call(2)
    tokens.append(harness.machine.session.token)

    assert tokens == sorted(set(tokens))


@pytest.mark.anyio
async def test_remote_tracks_are_collected(harness: Harness) -> None:
    await harness.machine.handle_event(_incoming())
    await harness.machine.answer()

    harness.peer.emit(TRACK, FakeTrack("video"))

    assert len(harness.machine.session.remote_tracks) == 1


@pytest.mark.anyio
async def test_bad_remote_answer_ends_the_call(harness: Harness) -> None:
    await harness.machine.start_call(2)
    call_id = harness.machine.session.call_id
    harness.peer.fail_remote_description = True

    await harness.machine.handle_event(_accepted(call_id))

    assert harness.machine.status == "Call failed"
    assert harness.signaling.calls[-1] == ("end", 2, call_id)

from __future__ import annotations

import asyncio
import json

import anyio
import httpx
import pytest

from parley.client.calls import CallRole
from parley.client.session import ChatClient
from parley.client.transport import PushState, TransportConfig
from parley.realtime.events import EventType, build_event, event_to_dict


class StubServer:
    """Answers the client's REST calls from canned data."""

    def __init__(self, events: list[dict]) -> None:
        self.pending = list(events)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/events/poll":
            batch, self.pending = self.pending, []
            return httpx.Response(200, json=batch)
        if request.url.path == "/api/messages":
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={"id": 100, "sender": {"id": 1}, "recipient": body["recipientId"], "content": body["content"]},
            )
        return httpx.Response(200, json={"success": True, "delivered": False})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


def _client(server: StubServer) -> ChatClient:
    return ChatClient(
        "http://parley.test",
        "token",
        media=None,
        peer_factory=lambda: None,
        display_name="Alice",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
        transport_config=TransportConfig(push_enabled=False, idle_poll_interval=0.01, active_poll_interval=0.01),
        ring_timeout_seconds=None,
        ending_grace_seconds=0,
    )


@pytest.mark.anyio
async def test_polled_events_reach_messages_and_calls() -> None:
    message = build_event(
        EventType.RECEIVE_MESSAGE, {"id": 5, "sender": {"id": 2}, "recipient": 1, "content": "hey"}
    )
    offer = build_event(
        EventType.CALL_USER,
        {"from": 2, "signal": {"type": "offer", "sdp": "v=0"}, "name": "Bob", "callId": "c-1"},
    )
    server = StubServer([event_to_dict(message), event_to_dict(offer), event_to_dict(message)])

    async with _client(server) as client:
        await asyncio.sleep(0.05)
        await client.bus.join()

        assert [item.content for item in client.messages] == ["hey"]
        assert client.calls.role is CallRole.RINGING
        assert client.transport.poll_interval() == 0.01
        assert client.bus.duplicates == 1

    assert "/api/calls/end" in server.paths()


@pytest.mark.anyio
async def test_sent_message_is_recorded_once() -> None:
    server = StubServer([])
    client = _client(server)

    sent = await client.send_message("hi", recipient_id=2)
    client.bus.publish(
        build_event(EventType.RECEIVE_MESSAGE, {"id": 100, "sender": {"id": 1}, "recipient": 2, "content": "hi"})
    )
    client.bus.start()
    await client.bus.join()
    await client.close()

    assert sent["id"] == 100
    assert len(client.messages) == 1


class Track:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class Stream:
    def __init__(self) -> None:
        self.tracks = [Track("audio")]

    def get_tracks(self) -> list[Track]:
        return self.tracks


class Media:
    def __init__(self) -> None:
        self.streams: list[Stream] = []

    async def get_user_media(self, *, audio: bool, video: bool) -> Stream:
        self.streams.append(Stream())
        return self.streams[-1]


class Peer:
    def __init__(self) -> None:
        self.applied: list[str] = []
        self.closed = False

    def on(self, event: str, handler) -> None:
        pass

    def remove_all_listeners(self) -> None:
        pass

    def add_track(self, track, stream) -> None:
        pass

    async def create_answer(self) -> dict:
        return {"type": "answer", "sdp": "local-answer"}

    async def set_local_description(self, description) -> None:
        pass

    async def set_remote_description(self, description) -> None:
        pass

    async def add_ice_candidate(self, candidate) -> None:
        self.applied.append(candidate["candidate"])

    def restart_ice(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True


class DroppingStreamServer(StubServer):
    """Serves one push stream that fails on demand; polling keeps working."""

    def __init__(self, push_events: list[dict]) -> None:
        super().__init__([])
        self.push_events = push_events
        self.drop = asyncio.Event()

    async def _frames(self):
        yield b": connected\n\n"
        for event in self.push_events:
            yield f"data: {json.dumps(event)}\n\n".encode()
        await self.drop.wait()
        raise httpx.ReadError("connection reset by peer")

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/events":
            self.requests.append(request)
            return httpx.Response(200, headers={"Content-Type": "text/event-stream"}, content=self._frames())
        return self(request)


async def _wait_for(condition, timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while not condition():
            await asyncio.sleep(0.01)


@pytest.mark.anyio
async def test_call_survives_push_drop_on_polling_fallback() -> None:
    offer = build_event(
        EventType.CALL_USER,
        {"from": 2, "signal": {"type": "offer", "sdp": "v=0"}, "name": "Bob", "callId": "c-1"},
    )
    server = DroppingStreamServer([event_to_dict(offer)])
    media = Media()
    peers: list[Peer] = []

    def new_peer() -> Peer:
        peers.append(Peer())
        return peers[-1]

    config = TransportConfig(
        active_poll_interval=0.02,
        idle_poll_interval=5.0,
        reevaluate_interval=0.01,
        backoff_initial=5.0,
    )
    client = ChatClient(
        "http://parley.test",
        "token",
        media=media,
        peer_factory=new_peer,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server.handle)),
        transport_config=config,
        ring_timeout_seconds=None,
        ending_grace_seconds=0,
    )

    async with client:
        await _wait_for(lambda: client.calls.role is CallRole.RINGING)
        await client.calls.answer()
        assert client.calls.role is CallRole.ACTIVE
        assert client.transport.state is PushState.OPEN

        server.drop.set()
        await _wait_for(lambda: client.transport.state is PushState.CLOSED)

        assert client.transport.poll_interval() == config.active_poll_interval
        assert client.transport.poll_types() is None

        candidate = build_event(
            EventType.ICE_CANDIDATE,
            {"candidate": "candidate:relay", "sdpMid": "0", "sdpMLineIndex": 0, "callId": "c-1"},
        )
        hangup = build_event(EventType.END_CALL, {"from": 2, "callId": "c-1"})
        server.pending.extend([event_to_dict(candidate), event_to_dict(hangup)])
        await _wait_for(lambda: client.calls.role is CallRole.IDLE)

        assert peers[0].applied == ["candidate:relay"]
        assert peers[0].closed
        assert all(track.stopped for track in media.streams[0].tracks)
        assert "/api/calls/answer" in server.paths()

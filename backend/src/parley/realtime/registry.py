"""Registry of live push channels keyed by user."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Protocol

from app.monitoring.metrics import signal_push_connections, signal_push_failures_total

from .events import KEEPALIVE_FRAME, SignalEvent, encode_frame
from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class SinkClosedError(RuntimeError):
    """Raised when writing to a push sink whose consumer is gone."""


class PushSink(Protocol):
    """Write side of a live push connection."""

    @property
    def closed(self) -> bool: ...

    def send(self, frame: str) -> None:
        """Write *frame* without blocking; raise :class:`SinkClosedError` on failure."""

    def close(self) -> None: ...


class StreamSink:
    """Bounded frame buffer drained by one streaming HTTP response.

    A full buffer means the consumer stopped reading, so writes past
    ``max_frames`` fail the same way a closed socket would.
    """

    def __init__(self, max_frames: int = 256) -> None:
        self._frames: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_frames + 1)
        self._max_frames = max_frames
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._closed:
            raise SinkClosedError("Push sink is closed")
        if self._frames.qsize() >= self._max_frames:
            self.close()
            raise SinkClosedError("Push sink buffer overflow")
        self._frames.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # the extra slot reserved in maxsize guarantees room for the sentinel
        with contextlib.suppress(asyncio.QueueFull):
            self._frames.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame


@dataclass(slots=True)
class Registration:
    user_id: int
    sink: PushSink
    last_seen_at: float
    heartbeat: asyncio.Task[None] | None = None


class PushChannelRegistry:
    """Tracks at most one live push sink per user."""

    def __init__(self, *, heartbeat_interval_seconds: float = 15.0) -> None:
        self._heartbeat_interval = heartbeat_interval_seconds
        self._registrations: Dict[int, Registration] = {}
        self._locks = KeyedLocks()

    def is_connected(self, user_id: int) -> bool:
        return user_id in self._registrations

    def connected_users(self) -> list[int]:
        return list(self._registrations)

    def registration(self, user_id: int) -> Registration | None:
        return self._registrations.get(user_id)

    async def register(self, user_id: int, sink: PushSink) -> None:
        """Make *sink* the user's push channel, replacing any earlier one."""

        async with self._locks.hold(user_id):
            previous = self._registrations.pop(user_id, None)
            if previous is not None:
                self._retire(previous)
                logger.info("Replacing push channel registration", extra={"user_id": user_id})
            else:
                signal_push_connections.labels().inc()
            registration = Registration(user_id=user_id, sink=sink, last_seen_at=time.monotonic())
            if self._heartbeat_interval > 0:
                registration.heartbeat = asyncio.create_task(
                    self._heartbeat(registration), name=f"push-heartbeat-{user_id}"
                )
            self._registrations[user_id] = registration

    async def unregister(self, user_id: int, sink: PushSink | None = None) -> None:
        """Drop the user's registration; a no-op when absent or superseded."""

        async with self._locks.hold(user_id):
            self._drop_locked(user_id, sink)

    def _drop_locked(self, user_id: int, sink: PushSink | None) -> bool:
        registration = self._registrations.get(user_id)
        if registration is None:
            return False
        if sink is not None and registration.sink is not sink:
            return False
        self._registrations.pop(user_id, None)
        signal_push_connections.labels().dec()
        self._retire(registration)
        return True

    @staticmethod
    def _retire(registration: Registration) -> None:
        task = registration.heartbeat
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        registration.sink.close()

    async def deliver(self, user_id: int, event: SignalEvent) -> bool:
        """Write *event* to the user's sink; a failed write drops the registration."""

        async with self._locks.hold(user_id):
            registration = self._registrations.get(user_id)
            if registration is None:
                return False
            try:
                registration.sink.send(encode_frame(event))
            except SinkClosedError:
                signal_push_failures_total.labels("deliver").inc()
                logger.info(
                    "Push delivery failed; dropping registration",
                    extra={"user_id": user_id, "event_type": event.type},
                )
                self._drop_locked(user_id, registration.sink)
                return False
            registration.last_seen_at = time.monotonic()
            return True

    async def _heartbeat(self, registration: Registration) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            async with self._locks.hold(registration.user_id):
                if self._registrations.get(registration.user_id) is not registration:
                    return
                try:
                    registration.sink.send(KEEPALIVE_FRAME)
                except SinkClosedError:
                    signal_push_failures_total.labels("heartbeat").inc()
                    logger.info(
                        "Push heartbeat failed; dropping registration",
                        extra={"user_id": registration.user_id},
                    )
                    self._drop_locked(registration.user_id, registration.sink)
                    return
                registration.last_seen_at = time.monotonic()

    async def shutdown(self) -> None:
        registrations = list(self._registrations.values())
        tasks = [reg.heartbeat for reg in registrations if reg.heartbeat is not None]
        for registration in registrations:
            async with self._locks.hold(registration.user_id):
                self._drop_locked(registration.user_id, registration.sink)
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._locks.clear()


__all__ = [
    "PushChannelRegistry",
    "PushSink",
    "Registration",
    "SinkClosedError",
    "StreamSink",
]

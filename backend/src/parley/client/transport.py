"""Client transport selection: push subscription with a polling safety net.

The push loop keeps one streaming subscription open and reconnects with
exponential backoff; once it gives up (or the server answers ``usePolling``)
the client runs on polling alone. The poll loop never stops: while push is
open it only asks for call signaling, otherwise for everything. Both loops
publish to the same :class:`~parley.client.bus.EventBus`, which drops the
copies that arrive twice.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Collection

from ..realtime.events import CALL_EVENT_TYPES
from .api import PushUnavailableError, SignalingAPI
from .bus import EventBus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PushState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class TransportConfig:
    active_poll_interval: float = 0.5
    idle_poll_interval: float = 2.0
    reevaluate_interval: float = 1.0
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    max_reconnect_attempts: int = 5
    push_enabled: bool = True

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect number ``attempt + 1``."""

        return min(self.backoff_initial * (2**attempt), self.backoff_max)


class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` bodies.

    Only ``data`` fields are kept; comment lines (heartbeats) and other
    fields are skipped. Multi-line data is joined with ``\\n``.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._partial = ""

    def feed_line(self, line: str) -> str | None:
        """Consume one line (without terminator); return a completed payload."""

        line = line.rstrip("\r")
        if not line:
            if not self._data:
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if field == "data":
            self._data.append(value[1:] if value.startswith(" ") else value)
        return None

    def feed(self, chunk: str) -> list[str]:
        """Consume raw text that may split lines at arbitrary points."""

        text = self._partial + chunk
        lines = text.split("\n")
        self._partial = lines.pop()
        payloads = []
        for line in lines:
            payload = self.feed_line(line)
            if payload is not None:
                payloads.append(payload)
        return payloads


def _never_active() -> bool:
    return False


class TransportSelector:
    """Runs the push and poll loops for one client session."""

    def __init__(
        self,
        api: SignalingAPI,
        bus: EventBus,
        *,
        call_activity: Callable[[], bool] = _never_active,
        config: TransportConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api = api
        self._bus = bus
        self._call_activity = call_activity
        self._config = config or TransportConfig()
        self._sleep = sleep
        self._state = PushState.CLOSED
        self._push_abandoned = not self._config.push_enabled
        self._replay_next = False
        self._push_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self.reconnect_attempts = 0
        self.poll_failures = 0

    @property
    def state(self) -> PushState:
        return self._state

    @property
    def push_abandoned(self) -> bool:
        return self._push_abandoned

    @property
    def config(self) -> TransportConfig:
        return self._config

    def poll_interval(self) -> float:
        if self._call_activity():
            return self._config.active_poll_interval
        return self._config.idle_poll_interval

    def poll_types(self) -> Collection[str] | None:
        """Event types to request; ``None`` means all of them."""

        if self._state is PushState.OPEN:
            return CALL_EVENT_TYPES
        return None

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one poll; return how many events the bus accepted."""

        replay = self._replay_next
        try:
            events = await self._api.poll(self.poll_types(), replay=replay)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.poll_failures += 1
            self._replay_next = True
            logger.warning("Poll failed: %s", exc)
            return 0
        self._replay_next = False
        accepted = 0
        for raw in events:
            if self._bus.publish(raw, source="poll"):
                accepted += 1
        return accepted

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_poll: float | None = None
        while True:
            interval = self.poll_interval()
            now = loop.time()
            if last_poll is None or now - last_poll >= interval:
                last_poll = now
                await self.poll_once()
                continue
            remaining = interval - (now - last_poll)
            await self._sleep(min(remaining, self._config.reevaluate_interval))

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _consume_stream(self) -> None:
        async with self._api.open_stream() as response:
            self._state = PushState.OPEN
            self.reconnect_attempts = 0
            logger.info("Push channel open")
            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                payload = decoder.feed_line(line)
                if payload is not None:
                    self._bus.publish(payload, source="push")

    async def _push_loop(self) -> None:
        while True:
            self._state = PushState.CONNECTING
            try:
                await self._consume_stream()
            except PushUnavailableError:
                self._state = PushState.CLOSED
                self._push_abandoned = True
                logger.info("Server disabled push; relying on polling")
                return
            except asyncio.CancelledError:
                self._state = PushState.CLOSED
                raise
            except Exception as exc:
                logger.warning("Push channel error: %s", exc)
            else:
                logger.info("Push channel closed by server")
            self._state = PushState.CLOSED
            if self.reconnect_attempts >= self._config.max_reconnect_attempts:
                self._push_abandoned = True
                logger.warning(
                    "Push channel abandoned after %d reconnect attempts; relying on polling",
                    self.reconnect_attempts,
                )
                return
            delay = self._config.backoff_delay(self.reconnect_attempts)
            self.reconnect_attempts += 1
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self._push_abandoned and (self._push_task is None or self._push_task.done()):
            self._push_task = asyncio.create_task(self._push_loop(), name="transport-push")
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="transport-poll")

    async def stop(self) -> None:
        for task in (self._push_task, self._poll_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._push_task = None
        self._poll_task = None
        self._state = PushState.CLOSED


__all__ = ["PushState", "SSEDecoder", "TransportConfig", "TransportSelector"]

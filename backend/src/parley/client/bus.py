"""Client-side event bus shared by the push and poll transports."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Mapping, Union

from ..realtime.events import EventError, SignalEvent, parse_event

logger = logging.getLogger(__name__)

Subscriber = Callable[[SignalEvent], Union[Awaitable[None], None]]


class DedupFilter:
    """Remembers recently seen event ids in insertion order."""

    def __init__(self, max_entries: int = 1024) -> None:
        self._max_entries = max_entries
        self._seen: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def admit(self, event_id: str) -> bool:
        """Record *event_id*; return ``False`` when it was already seen."""

        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return False
        self._seen[event_id] = None
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)
        return True


class EventBus:
    """Serialises events from every transport onto one handling path.

    ``publish`` may be called concurrently by the push and poll loops. A
    single consumer task hands each accepted event to the subscribers in
    registration order and waits for all of them before taking the next, so
    handlers never observe each other's partial state.
    """

    def __init__(self, *, dedup_size: int = 1024) -> None:
        self._dedup = DedupFilter(dedup_size)
        self._subscribers: list[Subscriber] = []
        self._queue: asyncio.Queue[SignalEvent] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self.duplicates = 0
        self.rejected = 0

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(handler)

        return _unsubscribe

    def publish(self, raw: SignalEvent | Mapping[str, Any] | str | bytes, *, source: str = "local") -> bool:
        """Accept an envelope from *source*; return whether it was queued."""

        if isinstance(raw, (Mapping, str, bytes)):
            try:
                event = parse_event(raw)
            except EventError as exc:
                self.rejected += 1
                logger.warning("Rejected event from %s: %s", source, exc)
                return False
        else:
            event = raw
        if not self._dedup.admit(event.id):
            self.duplicates += 1
            logger.debug("Dropped duplicate event %s from %s", event.id, source)
            return False
        self._queue.put_nowait(event)
        return True

    async def _dispatch(self, event: SignalEvent) -> None:
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Event subscriber failed for %s", event.type)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="event-bus-consumer")

    async def join(self) -> None:
        """Wait until every queued event has been handled."""

        await self._queue.join()

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._consumer
        self._consumer = None


__all__ = ["DedupFilter", "EventBus", "Subscriber"]

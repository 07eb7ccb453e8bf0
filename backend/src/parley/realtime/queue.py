"""Per-recipient signal queue backing the polling transport.

Every dispatched event is mirrored here so a client that never holds a push
channel still sees it. Entries are visible while unread and younger than the
TTL; the first drain by the recipient marks them read, after which they are
kept for a short retention window (so a client retrying a lost poll response
can replay them) and then purged.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Collection, Deque, Dict

from app.monitoring.metrics import signal_queue_evictions_total

from .events import SignalEvent
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class QueueEntry:
    """Internal bookkeeping wrapped around a queued event."""

    event: SignalEvent
    enqueued_at: float
    read: bool = False
    read_at: float | None = None


class SignalQueue:
    """Time-bounded, per-user buffer of pending events."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        read_retention_seconds: float = 10.0,
        capacity: int = 50,
        sweep_interval_seconds: float = 5.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("Queue capacity must be positive")
        self._ttl = ttl_seconds
        self._read_retention = read_retention_seconds
        self._capacity = capacity
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[int, Deque[QueueEntry]] = {}
        self._locks = KeyedLocks()
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def read_retention(self) -> float:
        return self._read_retention

    def _is_live(self, entry: QueueEntry, now: float) -> bool:
        if entry.read:
            read_at = entry.read_at if entry.read_at is not None else entry.enqueued_at
            return now - read_at < self._read_retention
        return now - entry.enqueued_at < self._ttl

    def _expire_locked(self, user_id: int, now: float) -> None:
        bucket = self._entries.get(user_id)
        if bucket is None:
            return
        kept: list[QueueEntry] = []
        for entry in bucket:
            if self._is_live(entry, now):
                kept.append(entry)
            else:
                # read entries past retention are "purged"; unread past TTL "expired"
                signal_queue_evictions_total.labels("purged" if entry.read else "expired").inc()
        if len(kept) != len(bucket):
            bucket.clear()
            bucket.extend(kept)
        if not bucket:
            self._entries.pop(user_id, None)

    async def enqueue(self, user_id: int, event: SignalEvent) -> None:
        """Append *event* to the recipient's queue, dropping the oldest beyond capacity."""

        async with self._locks.hold(user_id):
            now = self._clock()
            self._expire_locked(user_id, now)
            bucket = self._entries.setdefault(user_id, deque())
            if len(bucket) >= self._capacity:
                dropped = bucket.popleft()
                signal_queue_evictions_total.labels("capacity").inc()
                logger.info(
                    "Signal queue full; dropped oldest entry",
                    extra={"user_id": user_id, "event_type": dropped.event.type},
                )
            bucket.append(QueueEntry(event=event, enqueued_at=now))

    async def drain(
        self,
        user_id: int,
        *,
        types: Collection[str] | None = None,
        include_read: bool = False,
    ) -> list[SignalEvent]:
        """Return unread events for *user_id* in insertion order and mark them read.

        ``types`` restricts both what is returned and what is marked read.
        ``include_read`` also returns entries already read but still retained.
        """

        async with self._locks.hold(user_id):
            now = self._clock()
            self._expire_locked(user_id, now)
            bucket = self._entries.get(user_id)
            if not bucket:
                return []
            events: list[SignalEvent] = []
            for entry in bucket:
                if types is not None and entry.event.type not in types:
                    continue
                if entry.read:
                    if include_read:
                        events.append(entry.event)
                    continue
                entry.read = True
                entry.read_at = now
                events.append(entry.event)
            return events

    async def pending(self, user_id: int) -> int:
        """Number of unread, unexpired entries waiting for *user_id*."""

        async with self._locks.hold(user_id):
            self._expire_locked(user_id, self._clock())
            bucket = self._entries.get(user_id, ())
            return sum(1 for entry in bucket if not entry.read)

    async def sweep(self) -> None:
        """Expire entries for every user, including ones that never poll."""

        for user_id in list(self._entries):
            async with self._locks.hold(user_id):
                self._expire_locked(user_id, self._clock())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Signal queue sweep failed")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(), name="signal-queue-sweeper")

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self._entries.clear()
        self._locks.clear()

    def users(self) -> list[int]:
        return list(self._entries)


__all__ = ["QueueEntry", "SignalQueue"]

"""Single entry point used by request handlers to reach a user."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from app.monitoring.metrics import signal_events_dispatched_total, signal_push_failures_total

from .events import EventType, SignalEvent, build_event
from .queue import SignalQueue
from .registry import PushChannelRegistry

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Fans an event out to the push channel and the poll queue.

    The queue copy is written first and unconditionally, so the boolean
    returned by :meth:`dispatch` only says whether the push write went
    through. Push failures never propagate to the caller.
    """

    def __init__(self, queue: SignalQueue, registry: PushChannelRegistry) -> None:
        self._queue = queue
        self._registry = registry
        # users whose current streak of push errors has already been logged
        self._failing_users: set[int] = set()

    @property
    def queue(self) -> SignalQueue:
        return self._queue

    @property
    def registry(self) -> PushChannelRegistry:
        return self._registry

    async def dispatch(
        self,
        target_user_id: int,
        event_type: EventType | str,
        payload: Mapping[str, Any] | None,
    ) -> bool:
        event = build_event(event_type, payload)
        return await self.dispatch_event(target_user_id, event)

    async def dispatch_event(self, target_user_id: int, event: SignalEvent) -> bool:
        await self._queue.enqueue(target_user_id, event)
        delivered = False
        try:
            delivered = await self._registry.deliver(target_user_id, event)
        except Exception:
            signal_push_failures_total.labels("unexpected").inc()
            if target_user_id not in self._failing_users:
                logger.exception(
                    "Unexpected push delivery error",
                    extra={"user_id": target_user_id, "event_type": event.type},
                )
                self._failing_users.add(target_user_id)
        else:
            self._failing_users.discard(target_user_id)
        signal_events_dispatched_total.labels(event.type, "delivered" if delivered else "queued").inc()
        logger.debug(
            "Dispatched event",
            extra={
                "user_id": target_user_id,
                "event_type": event.type,
                "event_id": event.id,
                "pushed": delivered,
            },
        )
        return delivered

    async def dispatch_many(
        self,
        targets: Iterable[int],
        event_type: EventType | str,
        payload: Mapping[str, Any] | None,
    ) -> dict[int, bool]:
        """Dispatch to every distinct target in order of first appearance.

        Each recipient gets its own event identity so that per-user dedup on
        the client never collapses two different deliveries.
        """

        results: dict[int, bool] = {}
        for user_id in targets:
            if user_id in results:
                continue
            results[user_id] = await self.dispatch(user_id, event_type, payload)
        return results


__all__ = ["EventDispatcher"]

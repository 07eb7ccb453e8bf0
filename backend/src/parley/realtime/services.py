"""Process-scoped lifecycle for the realtime signaling services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .dispatcher import EventDispatcher
from .queue import SignalQueue
from .registry import PushChannelRegistry, StreamSink

if TYPE_CHECKING:  # pragma: no cover
    from app.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class RealtimeServices:
    """Queue, push registry and dispatcher owned by one application."""

    queue: SignalQueue
    registry: PushChannelRegistry
    dispatcher: EventDispatcher
    push_enabled: bool = True
    sink_buffer_size: int = 256

    @classmethod
    def create(
        cls,
        *,
        queue: SignalQueue | None = None,
        registry: PushChannelRegistry | None = None,
        push_enabled: bool = True,
        sink_buffer_size: int = 256,
    ) -> "RealtimeServices":
        queue = queue or SignalQueue()
        registry = registry or PushChannelRegistry()
        return cls(
            queue=queue,
            registry=registry,
            dispatcher=EventDispatcher(queue, registry),
            push_enabled=push_enabled,
            sink_buffer_size=sink_buffer_size,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RealtimeServices":
        queue = SignalQueue(
            ttl_seconds=settings.signal_queue_ttl_seconds,
            read_retention_seconds=settings.signal_queue_read_retention_seconds,
            capacity=settings.signal_queue_capacity,
            sweep_interval_seconds=settings.signal_queue_sweep_interval_seconds,
        )
        registry = PushChannelRegistry(
            heartbeat_interval_seconds=settings.push_heartbeat_interval_seconds,
        )
        return cls.create(
            queue=queue,
            registry=registry,
            push_enabled=settings.push_enabled,
            sink_buffer_size=settings.push_sink_buffer_size,
        )

    def new_sink(self) -> StreamSink:
        return StreamSink(max_frames=self.sink_buffer_size)

    async def start(self) -> None:
        self.queue.start()
        logger.info(
            "Realtime services started",
            extra={"push_enabled": self.push_enabled},
        )

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        await self.queue.shutdown()
        logger.info("Realtime services stopped")


__all__ = ["RealtimeServices"]

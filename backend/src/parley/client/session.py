"""Composition root for a chat client session."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..realtime.events import ReceiveMessageEvent, SignalEvent
from .api import SignalingAPI
from .bus import EventBus
from .calls import CallStateMachine
from .media import MediaDevices, PeerConnectionFactory
from .messages import MessageList
from .transport import TransportConfig, TransportSelector

logger = logging.getLogger(__name__)


class ChatClient:
    """Wires the REST client, event bus, message list, calls and transports.

    Use as an async context manager::

        async with ChatClient(url, token, media, peer_factory, display_name="ann") as client:
            await client.calls.start_call(42, is_video=True)
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        media: MediaDevices,
        peer_factory: PeerConnectionFactory,
        *,
        display_name: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        transport_config: TransportConfig | None = None,
        **call_options: Any,
    ) -> None:
        self.api = SignalingAPI(base_url, token, client=http_client)
        self.bus = EventBus()
        self.messages = MessageList()
        self.calls = CallStateMachine(
            self.api,
            media,
            peer_factory,
            display_name=display_name,
            **call_options,
        )
        self.transport = TransportSelector(
            self.api,
            self.bus,
            call_activity=self.calls.is_busy,
            config=transport_config,
        )
        self.bus.subscribe(self._on_message_event)
        self.bus.subscribe(self.calls.handle_event)

    def _on_message_event(self, event: SignalEvent) -> None:
        if isinstance(event, ReceiveMessageEvent) and self.messages.add(event.data):
            logger.debug("New message %s", event.data.id)

    async def send_message(self, content: str = "", **kwargs: Any) -> dict[str, Any]:
        message = await self.api.send_message(content, **kwargs)
        self.messages.upsert(message)
        return message

    async def start(self) -> None:
        self.bus.start()
        self.transport.start()

    async def close(self) -> None:
        await self.transport.stop()
        await self.calls.close()
        await self.bus.stop()
        await self.api.aclose()

    async def __aenter__(self) -> "ChatClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


__all__ = ["ChatClient"]

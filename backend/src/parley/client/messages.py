"""Conversation message list with identity-based de-duplication."""

from __future__ import annotations

from typing import Any, Iterator, Mapping

from ..realtime.events import ReceiveMessagePayload


def _payload(message: ReceiveMessagePayload | Mapping[str, Any]) -> ReceiveMessagePayload:
    if isinstance(message, ReceiveMessagePayload):
        return message
    return ReceiveMessagePayload.model_validate(dict(message))


class MessageList:
    """Ordered store of chat messages keyed by message id.

    The same message can reach the client through the push channel, a poll
    response and the echo of the sender's own POST; ids are compared as
    strings because numeric ids come back as ints from one path and strings
    from another.
    """

    def __init__(self) -> None:
        self._order: list[str] = []
        self._messages: dict[str, ReceiveMessagePayload] = {}

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[ReceiveMessagePayload]:
        return (self._messages[key] for key in self._order)

    def __contains__(self, message_id: object) -> bool:
        return str(message_id) in self._messages

    def add(self, message: ReceiveMessagePayload | Mapping[str, Any]) -> bool:
        payload = _payload(message)
        key = str(payload.id)
        if key in self._messages:
            return False
        self._order.append(key)
        self._messages[key] = payload
        return True

    def upsert(self, message: ReceiveMessagePayload | Mapping[str, Any]) -> None:
        payload = _payload(message)
        key = str(payload.id)
        if key not in self._messages:
            self._order.append(key)
        self._messages[key] = payload

    def get(self, message_id: object) -> ReceiveMessagePayload | None:
        return self._messages.get(str(message_id))

    def conversation(
        self,
        *,
        user_id: int | str,
        peer_id: int | str | None = None,
        group_id: int | str | None = None,
    ) -> list[ReceiveMessagePayload]:
        """Messages of one direct conversation or one group, oldest first."""

        if (peer_id is None) == (group_id is None):
            raise ValueError("Pass exactly one of peer_id or group_id")
        result: list[ReceiveMessagePayload] = []
        for message in self:
            if group_id is not None:
                if message.group_id is not None and str(message.group_id) == str(group_id):
                    result.append(message)
                continue
            if message.group_id is not None:
                continue
            pair = {str(message.sender.id), str(message.recipient)}
            if pair == {str(user_id), str(peer_id)}:
                result.append(message)
        return result


__all__ = ["MessageList"]

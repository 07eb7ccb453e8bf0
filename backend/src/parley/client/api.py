"""Async REST client for the signaling endpoints."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Collection, Mapping

import httpx

logger = logging.getLogger(__name__)


class SignalingAPIError(RuntimeError):
    """Raised when the server rejects a signaling request."""

    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"Signaling request failed with {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class PushUnavailableError(SignalingAPIError):
    """The server told the client to rely on polling instead of push."""


def _detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, Mapping) and "detail" in body:
        return body["detail"]
    return body


class SignalingAPI:
    """Thin wrapper over :class:`httpx.AsyncClient` with bearer auth."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, self._url(path), headers=self._headers, **kwargs)
        if response.status_code >= 400:
            raise SignalingAPIError(response.status_code, _detail(response))
        if not response.content:
            return None
        return response.json()

    async def initiate_call(
        self,
        user_to_call: int,
        signal_data: Mapping[str, Any],
        *,
        is_video: bool,
        from_username: str | None = None,
        call_id: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "userToCall": user_to_call,
            "signalData": dict(signal_data),
            "isVideo": is_video,
            "fromUsername": from_username,
            "callId": call_id,
        }
        return await self._request("POST", "/api/calls/initiate", json=body)

    async def answer_call(
        self, to: int, signal: Mapping[str, Any], *, call_id: str | None = None
    ) -> dict[str, Any]:
        body = {"to": to, "signal": dict(signal), "callId": call_id}
        return await self._request("POST", "/api/calls/answer", json=body)

    async def send_ice_candidate(
        self, to: int, candidate: Mapping[str, Any] | None, *, call_id: str | None = None
    ) -> dict[str, Any]:
        body = {"to": to, "candidate": dict(candidate) if candidate is not None else None, "callId": call_id}
        return await self._request("POST", "/api/calls/ice-candidate", json=body)

    async def end_call(self, to: int | None = None, *, call_id: str | None = None) -> dict[str, Any]:
        return await self._request("POST", "/api/calls/end", json={"to": to, "callId": call_id})

    async def post_event(self, to: int, event_type: str, payload: Mapping[str, Any] | None) -> dict[str, Any]:
        body = {"to": to, "type": event_type, "payload": dict(payload) if payload is not None else None}
        return await self._request("POST", "/api/events", json=body)

    async def send_message(
        self,
        content: str = "",
        *,
        recipient_id: int | None = None,
        group_id: int | None = None,
        message_type: str = "text",
        file_url: str | None = None,
    ) -> dict[str, Any]:
        body = {
            "recipientId": recipient_id,
            "groupId": group_id,
            "content": content,
            "type": message_type,
            "fileUrl": file_url,
        }
        return await self._request("POST", "/api/messages", json=body)

    async def poll(self, types: Collection[str] | None = None, *, replay: bool = False) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if types:
            params["types"] = ",".join(sorted(types))
        if replay:
            params["replay"] = "true"
        result = await self._request("GET", "/api/events/poll", params=params)
        return list(result or [])

    async def webrtc_config(self) -> dict[str, Any]:
        return await self._request("GET", "/api/config/webrtc")

    @asynccontextmanager
    async def open_stream(self) -> AsyncIterator[httpx.Response]:
        """Open the push channel and yield the streaming response."""

        request = self._client.build_request(
            "GET",
            self._url("/api/events"),
            headers={**self._headers, "Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        )
        response = await self._client.send(request, stream=True)
        try:
            if response.status_code >= 400:
                await response.aread()
                body: Any
                try:
                    body = response.json()
                except ValueError:
                    body = {}
                if response.status_code == 503 and isinstance(body, Mapping) and body.get("usePolling"):
                    raise PushUnavailableError(response.status_code, body.get("detail"))
                raise SignalingAPIError(response.status_code, _detail(response))
            yield response
        finally:
            await response.aclose()


__all__ = ["PushUnavailableError", "SignalingAPI", "SignalingAPIError"]

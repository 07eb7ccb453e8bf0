"""Configuration endpoints for exposing runtime options to the frontend."""

from __future__ import annotations

from fastapi import APIRouter

from app.config import get_settings

router = APIRouter(prefix="/config", tags=["config"])


@router.get("/webrtc")
def read_webrtc_config() -> dict[str, object]:
    """Expose ICE servers and transport timing hints."""

    settings = get_settings()
    return {
        "iceServers": settings.webrtc_ice_servers_payload,
        "stun": [str(url) for url in settings.webrtc_stun_servers],
        "turn": {
            "urls": [str(url) for url in settings.webrtc_turn_servers],
            "username": settings.webrtc_turn_username,
        },
        "transport": {
            "pushEnabled": settings.push_enabled,
            "activePollIntervalMs": settings.client_active_poll_interval_ms,
            "idlePollIntervalMs": settings.client_idle_poll_interval_ms,
            "heartbeatIntervalMs": int(settings.push_heartbeat_interval_seconds * 1000),
        },
        "calls": {
            "ringTimeoutSeconds": settings.client_ring_timeout_seconds,
        },
    }

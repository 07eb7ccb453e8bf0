import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_STUN_URLS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


def _env_list(value: Any) -> list[Any]:
    """Accept a JSON array, a comma separated string or an iterable."""

    if value is None or value == "":
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("[") or text.startswith("{"):
            decoded = json.loads(text)
            return decoded if isinstance(decoded, list) else [decoded]
        return [part.strip() for part in text.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class IceServer(BaseModel):
    """One entry of ``RTCConfiguration.iceServers``."""

    urls: list[str] = Field(default_factory=list)
    username: str | None = None
    credential: str | None = None

    @field_validator("urls", mode="before")
    @classmethod
    def _urls_as_list(cls, value: Any) -> list[str]:
        return [str(url) for url in _env_list(value)]


class Settings(BaseSettings):
    """Runtime configuration read from the environment and ``.env``."""

    app_name: str = Field(default="Parley API", env="APP_NAME")
    environment: str = Field(default="development", env="ENVIRONMENT")
    debug: bool = Field(default=False, env="DEBUG")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root logging level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        env="CORS_ORIGINS",
        description="Browser origins allowed to call the API",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        env="CORS_ALLOW_ORIGIN_REGEX",
    )

    database_url: str = Field(default="sqlite+pysqlite:///./parley.db", env="DATABASE_URL")
    database_auto_create: bool = Field(
        default=True,
        env="DATABASE_AUTO_CREATE",
        description="Create missing tables on startup.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 24, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=200, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=4000, env="CHAT_MESSAGE_MAX_LENGTH")

    signal_queue_ttl_seconds: float = Field(
        default=60.0,
        env="SIGNAL_QUEUE_TTL_SECONDS",
        description="How long an unread event stays visible to polling.",
    )
    signal_queue_read_retention_seconds: float = Field(
        default=10.0,
        env="SIGNAL_QUEUE_READ_RETENTION_SECONDS",
        description="How long a read event is kept for replaying polls.",
    )
    signal_queue_capacity: int = Field(
        default=50,
        env="SIGNAL_QUEUE_CAPACITY",
        description="Maximum queued events per recipient; oldest are dropped first.",
    )
    signal_queue_sweep_interval_seconds: float = Field(
        default=5.0,
        env="SIGNAL_QUEUE_SWEEP_INTERVAL_SECONDS",
    )

    push_enabled: bool = Field(
        default=True,
        env="PUSH_ENABLED",
        description="Serve the streaming push channel; disable on hosts without long-lived responses.",
    )
    push_heartbeat_interval_seconds: float = Field(default=15.0, env="PUSH_HEARTBEAT_INTERVAL_SECONDS")
    push_sink_buffer_size: int = Field(
        default=256,
        env="PUSH_SINK_BUFFER_SIZE",
        description="Frames buffered per push connection before it is considered dead.",
    )

    client_active_poll_interval_ms: int = Field(default=500, env="CLIENT_ACTIVE_POLL_INTERVAL_MS")
    client_idle_poll_interval_ms: int = Field(default=2000, env="CLIENT_IDLE_POLL_INTERVAL_MS")
    client_ring_timeout_seconds: float | None = Field(default=45.0, env="CLIENT_RING_TIMEOUT_SECONDS")

    webrtc_ice_servers: Annotated[list[IceServer], NoDecode] = Field(default_factory=list, env="WEBRTC_ICE_SERVERS")
    webrtc_stun_servers: Annotated[list[str], NoDecode] = Field(default_factory=list, env="WEBRTC_STUN_SERVERS")
    webrtc_turn_servers: Annotated[list[str], NoDecode] = Field(default_factory=list, env="WEBRTC_TURN_SERVERS")
    webrtc_turn_username: str | None = Field(default=None, env="WEBRTC_TURN_USERNAME")
    webrtc_turn_credential: str | None = Field(default=None, env="WEBRTC_TURN_CREDENTIAL")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator(
        "cors_origins",
        "webrtc_ice_servers",
        "webrtc_stun_servers",
        "webrtc_turn_servers",
        mode="before",
    )
    @classmethod
    def _split_lists(cls, value: Any) -> list[Any]:
        return _env_list(value)

    @field_validator("client_ring_timeout_seconds", mode="before")
    @classmethod
    def _ring_timeout_off(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none", "off", "0"):
            return None
        return value

    def ice_servers(self) -> list[IceServer]:
        """Configured ICE servers, falling back to public STUN when none are set."""

        servers = [
            entry if isinstance(entry, IceServer) else IceServer.model_validate(
                entry if isinstance(entry, dict) else {"urls": entry}
            )
            for entry in self.webrtc_ice_servers
        ]
        if self.webrtc_stun_servers:
            servers.append(IceServer(urls=self.webrtc_stun_servers))
        if self.webrtc_turn_servers:
            servers.append(
                IceServer(
                    urls=self.webrtc_turn_servers,
                    username=self.webrtc_turn_username,
                    credential=self.webrtc_turn_credential,
                )
            )
        return servers or [IceServer(urls=DEFAULT_STUN_URLS)]

    @property
    def webrtc_ice_servers_payload(self) -> list[dict[str, Any]]:
        return [server.model_dump(mode="json") for server in self.ice_servers()]


@lru_cache
def get_settings() -> Settings:
    return Settings()

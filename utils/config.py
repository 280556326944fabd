import os
from dataclasses import dataclass
from typing import Tuple
from urllib.parse import urlsplit, urlunsplit

from utils.error_codes import SignalingUnavailable

DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)
DEFAULT_RELAY_PORT = 8765


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_number(name: str, default, cast=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ClientConfig:
    """Client configuration from environment."""

    backend_url: str
    ice_servers: Tuple[str, ...] = DEFAULT_ICE_SERVERS
    video_device: str = "/dev/video0"
    video_format: str = "v4l2"
    audio_device: str = "default"
    audio_format: str = "pulse"
    call_setup_timeout: float = 30.0
    candidate_buffer_limit: int = 64
    connect_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            backend_url=os.getenv("BACKEND_URL", ""),
            ice_servers=_split_list(os.getenv("ICE_SERVERS", ",".join(DEFAULT_ICE_SERVERS))),
            video_device=os.getenv("VIDEO_DEVICE", "/dev/video0"),
            video_format=os.getenv("VIDEO_FORMAT", "v4l2"),
            audio_device=os.getenv("AUDIO_DEVICE", "default"),
            audio_format=os.getenv("AUDIO_FORMAT", "pulse"),
            call_setup_timeout=_env_number("CALL_SETUP_TIMEOUT", 30.0),
            candidate_buffer_limit=_env_number("CANDIDATE_BUFFER_LIMIT", 64, int),
        )

    def validate(self) -> None:
        if not self.backend_url:
            raise SignalingUnavailable(
                "Backend URL is not set. Please set BACKEND_URL in your environment variables."
            )
        scheme = urlsplit(self.backend_url).scheme
        if scheme not in ("http", "https", "ws", "wss"):
            raise SignalingUnavailable(f"Unsupported backend URL scheme: {scheme or '(none)'}")
        if self.candidate_buffer_limit < 1:
            raise ValueError("CANDIDATE_BUFFER_LIMIT must be at least 1")

    @property
    def signaling_url(self) -> str:
        """Websocket endpoint on the backend (http -> ws, https -> wss)."""
        parts = urlsplit(self.backend_url)
        scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, parts.path, "", ""))

    @property
    def http_url(self) -> str:
        parts = urlsplit(self.backend_url)
        scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


@dataclass
class RelayConfig:
    """Relay configuration from environment."""

    host: str = "0.0.0.0"
    port: int = DEFAULT_RELAY_PORT
    room_capacity: int = 2
    room_idle_timeout: float = 300.0
    sweep_interval: float = 60.0
    rate_limit_calls: int = 50
    rate_limit_period: float = 1.0

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls(
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=_env_number("RELAY_PORT", DEFAULT_RELAY_PORT, int),
            room_idle_timeout=_env_number("ROOM_IDLE_TIMEOUT", 300.0),
            rate_limit_calls=_env_number("RELAY_RATE_LIMIT", 50, int),
            rate_limit_period=_env_number("RELAY_RATE_PERIOD", 1.0),
        )

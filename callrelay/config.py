import datetime
import os
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# public STUN servers used by the browser client
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    value = os.getenv(name)
    if not value:
        return default
    return [v.strip() for v in value.split(",") if v.strip()]


class Config:
    """Flask config for the relay server, read from the environment."""

    def __init__(self, env_file=None):
        if env_file is not None:
            load_dotenv(env_file)
        self.SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
        self.HOST = os.getenv("CALLRELAY_HOST", "0.0.0.0")
        self.PORT = int(os.getenv("CALLRELAY_PORT", "3001"))
        self.ASYNC_MODE = os.getenv("CALLRELAY_ASYNC_MODE", "eventlet")
        origins = os.getenv("CALLRELAY_CORS_ORIGINS", "*").strip()
        self.CORS_ORIGINS = origins if origins == "*" else _env_list("CALLRELAY_CORS_ORIGINS", [])
        self.PERMANENT_SESSION_LIFETIME = datetime.timedelta(
            days=float(os.getenv("CALLRELAY_SESSION_DAYS", "1")))
        self.ANNOUNCE_PRESENCE = _env_bool("CALLRELAY_ANNOUNCE_PRESENCE", True)
        self.MAX_NAME_LENGTH = int(os.getenv("CALLRELAY_MAX_NAME_LENGTH", "64"))
        self.LOG_LEVEL = os.getenv("CALLRELAY_LOG_LEVEL", "INFO").upper()


class TestingConfig(Config):
    __test__ = False

    def __init__(self, **overrides):
        super().__init__()
        self.SECRET_KEY = "test-secret"
        self.ASYNC_MODE = "threading"
        self.TESTING = True
        for key, value in overrides.items():
            setattr(self, key, value)


@dataclass
class ClientConfig:
    server_url: str = "http://127.0.0.1:3001"
    display_name: str = "guest"
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    # seconds to wait for an answer before giving up; None waits forever
    answer_timeout: Optional[float] = None
    synthetic_media: bool = False
    video_device: Optional[str] = None
    audio_device: Optional[str] = None
    media_format: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides):
        load_dotenv()
        timeout = os.getenv("CALLRELAY_ANSWER_TIMEOUT")
        values = dict(
            server_url=os.getenv("CALLRELAY_SERVER", cls.server_url),
            display_name=os.getenv("CALLRELAY_NAME", cls.display_name),
            ice_servers=_env_list("CALLRELAY_ICE_SERVERS", list(DEFAULT_ICE_SERVERS)),
            answer_timeout=float(timeout) if timeout else None,
            synthetic_media=_env_bool("CALLRELAY_SYNTHETIC_MEDIA", False),
            video_device=os.getenv("CALLRELAY_VIDEO_DEVICE"),
            audio_device=os.getenv("CALLRELAY_AUDIO_DEVICE"),
            media_format=os.getenv("CALLRELAY_MEDIA_FORMAT"),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

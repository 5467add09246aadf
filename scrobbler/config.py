"""
Configuration via ENV VARS.

All settings are read once at start-up into a frozen Settings object.
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_API_URL = "https://ws.audioscrobbler.com/2.0/"


def _get(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    lastfm_api_key: str | None = None
    lastfm_api_secret: str | None = None
    lastfm_session_key: str | None = None
    lastfm_username: str | None = None
    lastfm_password_md5: str | None = None
    lastfm_api_url: str = DEFAULT_API_URL

    bluos_host: str = "127.0.0.1"
    bluos_port: int = 11000
    poll_interval: float = 0.5
    log_level: str = "INFO"

    data_dir: str = "/data"
    batch_size: int = 50
    flush_interval: float = 30.0
    scrobble_percent: float = 0.5
    scrobble_max_seconds: float = 240.0

    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        batch_size = _int(env, "SCROBBLE_BATCH_SIZE", 50)
        if not 1 <= batch_size <= 50:
            raise ValueError("SCROBBLE_BATCH_SIZE must be between 1 and 50")
        percent = _float(env, "SCROBBLE_PERCENT", 0.5)
        if not 0 < percent <= 1:
            raise ValueError("SCROBBLE_PERCENT must be in (0, 1]")
        return cls(
            lastfm_api_key=_get(env, "LASTFM_API_KEY"),
            lastfm_api_secret=_get(env, "LASTFM_API_SECRET"),
            lastfm_session_key=_get(env, "LASTFM_SESSION_KEY"),
            lastfm_username=_get(env, "LASTFM_USERNAME"),
            lastfm_password_md5=_get(env, "LASTFM_PASSWORD_MD5"),
            lastfm_api_url=_get(env, "LASTFM_API_URL", DEFAULT_API_URL),
            bluos_host=_get(env, "BLUOS_HOST", "127.0.0.1"),
            bluos_port=_int(env, "BLUOS_PORT", 11000),
            poll_interval=max(0.1, _float(env, "POLL_INTERVAL", 0.5)),
            log_level=_get(env, "LOG_LEVEL", "INFO").upper(),
            data_dir=_get(env, "SCROBBLE_DATA_DIR", "/data"),
            batch_size=batch_size,
            flush_interval=max(1.0, _float(env, "SCROBBLE_FLUSH_INTERVAL", 30.0)),
            scrobble_percent=percent,
            scrobble_max_seconds=_float(env, "SCROBBLE_MAX_SECONDS", 240.0),
            retry_max_attempts=max(1, _int(env, "RETRY_MAX_ATTEMPTS", 3)),
            retry_base_delay=_float(env, "RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_float(env, "RETRY_MAX_DELAY", 8.0),
        )

    @property
    def queue_dir(self) -> str:
        return os.path.join(self.data_dir, "queue")

    @property
    def credentials_path(self) -> str:
        return os.path.join(self.data_dir, "lastfm-credentials.json")

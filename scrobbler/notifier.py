"""
Alert delivery for conditions the user has to act on (bad credentials, expired session).

- WebhookNotifier: POST JSON to NOTIFY_WEBHOOK_URL (Slack/Discord-compatible).
- GotifyNotifier: POST /message to GOTIFY_URL with GOTIFY_TOKEN.
- Each is silently disabled when unconfigured and filters by its own minimum level.
- Delivery is best-effort: failures are logged at DEBUG and never raised.
"""

from __future__ import annotations
import logging
import os
from typing import Mapping, Sequence

import requests

log = logging.getLogger("notifier")

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}
DEFAULT_TAG = "Last.fm scrobbler"


def _level(name: str | None, default: int = 30) -> int:
    return _LEVELS.get((name or "").upper(), default)


class WebhookNotifier:
    def __init__(self, webhook_url: str | None, min_level: str = "WARNING", app_tag: str = DEFAULT_TAG,
                 http: requests.Session | None = None):
        self.webhook_url = webhook_url.strip() if webhook_url else None
        self.min_level = _level(min_level)
        self.app_tag = app_tag
        self.http = http or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, level: str, title: str, message: str, extra: dict | None = None) -> None:
        if not self.enabled or _level(level) < self.min_level:
            return
        payload = {
            "level": level.upper(),
            "title": f"{self.app_tag}: {title}",
            "message": message,
            "extra": extra or {},
        }
        try:
            self.http.post(self.webhook_url, json=payload, timeout=5)
        except requests.RequestException as e:
            log.debug("Webhook send failed: %s", e)


class GotifyNotifier:
    def __init__(self, url: str | None, token: str | None, min_level: str = "WARNING",
                 default_priority: int = 5, app_tag: str = DEFAULT_TAG, http: requests.Session | None = None):
        self.url = url.rstrip("/") if url else None
        self.token = token.strip() if token else None
        self.min_level = _level(min_level)
        self.default_priority = default_priority
        self.app_tag = app_tag
        self.http = http or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.token)

    def send(self, level: str, title: str, message: str, extra: dict | None = None,
             priority: int | None = None) -> None:
        if not self.enabled or _level(level) < self.min_level:
            return
        body = {
            "title": f"{self.app_tag}: {title}",
            "message": message if not extra else f"{message}\n\n{extra}",
            "priority": priority if priority is not None else self.default_priority,
        }
        try:
            self.http.post(f"{self.url}/message", json=body, headers={"X-Gotify-Key": self.token}, timeout=5)
        except requests.RequestException as e:
            log.debug("Gotify send failed: %s", e)


class FanoutNotifier:
    """Callable alert sink handed to the coordinator; fans out to every configured notifier."""

    def __init__(self, notifiers: Sequence):
        self.notifiers = list(notifiers)

    def __call__(self, level: str, title: str, message: str, extra: dict | None = None) -> None:
        for notifier in self.notifiers:
            try:
                notifier.send(level, title, message, extra)
            except Exception as e:
                log.debug("%s failed: %s", type(notifier).__name__, e)


def from_env(env: Mapping[str, str] | None = None) -> FanoutNotifier:
    env = os.environ if env is None else env
    tag = env.get("APP_TAG", DEFAULT_TAG)
    webhook = WebhookNotifier(
        webhook_url=env.get("NOTIFY_WEBHOOK_URL"),
        min_level=env.get("NOTIFY_MIN_LEVEL", "WARNING"),
        app_tag=tag,
    )
    gotify = GotifyNotifier(
        url=env.get("GOTIFY_URL"),
        token=env.get("GOTIFY_TOKEN"),
        min_level=env.get("GOTIFY_MIN_LEVEL", "WARNING"),
        default_priority=int(env.get("GOTIFY_PRIORITY", "5")),
        app_tag=tag,
    )
    return FanoutNotifier([webhook, gotify])

"""
Secret store for the Last.fm session.

The session only talks to the SecretStore protocol. FileSecretStore keeps the
session key and username in one JSON file (mode 0600) so they are written and
removed together.
"""

from __future__ import annotations
import json
import logging
import os
import threading
from typing import Dict, Protocol

log = logging.getLogger("scrobbler.credentials")

_SESSION_KEY = "session_key"
_USERNAME = "username"


class SecretStore(Protocol):
    def save_session_key(self, session_key: str) -> None: ...
    def get_session_key(self) -> str | None: ...
    def save_username(self, username: str) -> None: ...
    def get_username(self) -> str | None: ...
    def remove_credentials(self) -> None: ...


class MemorySecretStore:
    def __init__(self, session_key: str | None = None, username: str | None = None):
        self._values: Dict[str, str] = {}
        if session_key:
            self._values[_SESSION_KEY] = session_key
        if username:
            self._values[_USERNAME] = username

    def save_session_key(self, session_key: str) -> None:
        self._values[_SESSION_KEY] = session_key

    def get_session_key(self) -> str | None:
        return self._values.get(_SESSION_KEY)

    def save_username(self, username: str) -> None:
        self._values[_USERNAME] = username

    def get_username(self) -> str | None:
        return self._values.get(_USERNAME)

    def remove_credentials(self) -> None:
        self._values.clear()


class FileSecretStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            log.error("Credential file %s unreadable: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str) and v}

    def _write(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def _set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def save_session_key(self, session_key: str) -> None:
        self._set(_SESSION_KEY, session_key)

    def get_session_key(self) -> str | None:
        with self._lock:
            return self._read().get(_SESSION_KEY)

    def save_username(self, username: str) -> None:
        self._set(_USERNAME, username)

    def get_username(self) -> str | None:
        with self._lock:
            return self._read().get(_USERNAME)

    def remove_credentials(self) -> None:
        # Single unlink drops both entries at once
        with self._lock:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass

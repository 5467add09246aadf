import asyncio
import logging
from typing import Any, Dict, List, Sequence

import pylast
import requests

from .errors import (
    InvalidResponse, NetworkError, RateLimited, ScrobbleError, ServiceUnavailable, error_for_code
)
from .models import ScrobbleResult, ScrobbleTrack
from .retry import RetryPolicy

log = logging.getLogger("lastfm")

DEFAULT_API_URL = "https://ws.audioscrobbler.com/2.0/"
# track.scrobble accepts at most 50 entries per request
MAX_BATCH = 50


def sign(params: Dict[str, str], api_secret: str) -> str:
    """api_sig: md5 over the sorted name+value pairs followed by the secret."""
    text = "".join(f"{k}{params[k]}" for k in sorted(params) if k not in ("format", "callback"))
    return pylast.md5(text + api_secret)


def _retry_after(resp: requests.Response) -> float | None:
    value = resp.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def check_for_errors(body: Dict[str, Any]) -> None:
    error = body.get("error")
    if error is None:
        return
    if isinstance(error, str) and error.isdigit():
        error = int(error)
    if isinstance(error, int):
        raise error_for_code(error, body.get("message") or "")
    raise InvalidResponse(f"Service error: {error}")


def parse_response(resp: requests.Response) -> Dict[str, Any]:
    if resp.status_code == 429:
        raise RateLimited(retry_after=_retry_after(resp))
    try:
        body = resp.json()
    except ValueError:
        if resp.status_code >= 500:
            raise ServiceUnavailable()
        raise InvalidResponse(f"Invalid JSON response (status {resp.status_code})")
    if not isinstance(body, dict):
        raise InvalidResponse(f"Unexpected JSON payload (status {resp.status_code})")
    check_for_errors(body)
    if resp.status_code >= 500:
        raise ServiceUnavailable()
    if resp.status_code >= 400:
        raise InvalidResponse(f"HTTP {resp.status_code}")
    return body


def _corrected(entry: Dict[str, Any], key: str) -> str | None:
    field = entry.get(key)
    if isinstance(field, dict) and str(field.get("corrected")) == "1":
        return field.get("#text") or None
    return None


def parse_scrobble_response(response: Dict[str, Any], tracks: Sequence[ScrobbleTrack]) -> List[ScrobbleResult]:
    """One result per submitted track, in submission order."""
    wrapper = response.get("scrobbles")
    if not isinstance(wrapper, dict):
        # Nothing we can trust; keep everything for the next attempt
        return [ScrobbleResult(track=t, accepted=False, error_message="Malformed response: missing scrobbles key")
                for t in tracks]

    raw = wrapper.get("scrobble")
    if isinstance(raw, dict):
        entries = [raw]
    elif isinstance(raw, list):
        entries = raw
    else:
        return [ScrobbleResult(track=t, accepted=True) for t in tracks]

    results = []
    for index, track in enumerate(tracks):
        if index >= len(entries) or not isinstance(entries[index], dict):
            results.append(ScrobbleResult(track=track, accepted=True))
            continue
        entry = entries[index]
        ignored = entry.get("ignoredMessage") if isinstance(entry.get("ignoredMessage"), dict) else {}
        code = ignored.get("code")
        code = None if code is None else str(code)
        accepted = code is None or code == "0"
        message = None
        if not accepted:
            message = ignored.get("#text") or f"Ignored (code {code})"
        results.append(ScrobbleResult(
            track=track,
            accepted=accepted,
            corrected_artist=_corrected(entry, "artist"),
            corrected_title=_corrected(entry, "track"),
            error_message=message,
        ))
    return results


class LastFMClient:
    """Thin Last.fm 2.0 client for now-playing, batch scrobbling and session checks."""

    def __init__(self, session, api_url: str = DEFAULT_API_URL, retry: RetryPolicy | None = None,
                 http: requests.Session | None = None, timeout: float = 10.0):
        self.session = session
        self.api_url = api_url
        self.retry = retry or RetryPolicy()
        self.http = http or requests.Session()
        self.timeout = timeout

    # -------- transport --------
    def _post(self, method: str, params: Dict[str, Any], session_key: str) -> Dict[str, Any]:
        payload = {k: str(v) for k, v in params.items() if v is not None}
        payload.update(method=method, api_key=self.session.api_key, sk=session_key)
        payload["api_sig"] = sign(payload, self.session.api_secret)
        payload["format"] = "json"
        try:
            resp = self.http.post(self.api_url, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(str(e)) from e
        return parse_response(resp)

    async def _call(self, method: str, params: Dict[str, Any], session_key: str) -> Dict[str, Any]:
        return await self.retry.execute(lambda: asyncio.to_thread(self._post, method, params, session_key))

    # -------- API --------
    async def update_now_playing(self, track: ScrobbleTrack) -> None:
        """Best-effort Now Playing signal; callers decide whether failures matter."""
        session_key = self.session.require_session_key()
        params = {
            "artist": track.artist,
            "track": track.title,
            "album": track.album,
            "duration": int(track.duration) if track.duration else None,
        }
        await self._call("track.updateNowPlaying", params, session_key)
        log.debug("Now playing: %s — %s", track.artist, track.title)

    async def scrobble(self, tracks: Sequence[ScrobbleTrack]) -> List[ScrobbleResult]:
        """Submit scrobbles with their start timestamps (unix seconds)."""
        session_key = self.session.require_session_key()
        if not tracks:
            return []

        results: List[ScrobbleResult] = []
        for start in range(0, len(tracks), MAX_BATCH):
            chunk = tracks[start:start + MAX_BATCH]
            params: Dict[str, Any] = {}
            for i, track in enumerate(chunk):
                params[f"artist[{i}]"] = track.artist
                params[f"track[{i}]"] = track.title
                params[f"timestamp[{i}]"] = track.timestamp
                params[f"album[{i}]"] = track.album
                params[f"duration[{i}]"] = int(track.duration) if track.duration else None
            response = await self._call("track.scrobble", params, session_key)
            results.extend(parse_scrobble_response(response, chunk))

        log.info("Scrobbled %s track(s)", len(tracks))
        return results

    async def validate_session(self) -> bool:
        session_key = self.session.session_key
        if not session_key:
            return False
        try:
            await self._call("user.getInfo", {}, session_key)
        except ScrobbleError as e:
            log.warning("Session validation failed: %s", e)
            return False
        return True

    async def love(self, track: ScrobbleTrack, loved: bool = True) -> None:
        session_key = self.session.require_session_key()
        method = "track.love" if loved else "track.unlove"
        await self._call(method, {"artist": track.artist, "track": track.title}, session_key)
        log.debug("%s: %s — %s", method, track.artist, track.title)

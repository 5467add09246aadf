import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass

import requests

from .models import NowPlaying, PlaybackSample

log = logging.getLogger("scrobbler.bluos")


@dataclass
class BluOSStatus:
    title: str | None
    artist: str | None
    album: str | None
    duration: float | None  # seconds
    secs: float | None      # elapsed seconds
    state: str | None       # 'play', 'stream', 'pause', 'stop'
    song_id: str | None = None


class BluOSClient:
    """
    Minimal BluOS client that fetches and parses /Status (XML) into playback samples.
    Uses recursive lookup + tag fallbacks (name/title1, artist/title2, album/title3, secs, totlen, state).
    """
    PLAYING_STATES = ("play", "stream")

    def __init__(self, host: str, port: int = 11000, timeout: int = 5, http: requests.Session | None = None):
        self.base = f"http://{host}:{port}"
        self.timeout = timeout
        self.http = http or requests.Session()

    def _findtext_any(self, root: ET.Element, *tags: str):
        for t in tags:
            el = root.find(f".//{t}")
            if el is not None and el.text:
                return el.text.strip()
        return None

    def _to_float(self, s):
        if s is None:
            return None
        try:
            return float(s)
        except ValueError:
            return None

    def parse_status(self, text: str) -> BluOSStatus | None:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            log.debug("BluOS status XML parse failed: %s", e)
            return None

        state = self._findtext_any(root, "state", "status", "mode")
        return BluOSStatus(
            title=self._findtext_any(root, "name", "title1", "title", "song"),
            artist=self._findtext_any(root, "artist", "title2"),
            album=self._findtext_any(root, "album", "title3"),
            duration=self._to_float(self._findtext_any(root, "totlen", "duration", "total", "trackLength", "length")),
            secs=self._to_float(self._findtext_any(root, "secs", "elapsed", "position", "time")),
            state=state.lower() if state else None,
            song_id=self._findtext_any(root, "songid"),
        )

    def get_status(self) -> BluOSStatus | None:
        try:
            resp = self.http.get(f"{self.base}/Status", timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            log.debug("BluOS status request failed: %s", e)
            return None
        return self.parse_status(resp.text)

    @staticmethod
    def to_sample(status: BluOSStatus) -> PlaybackSample:
        if not status.artist or not status.title:
            return PlaybackSample(now_playing=None, progress=0.0, playing=False)
        # No stable id from the device for streams: fall back to the metadata itself
        track_id = status.song_id or "|".join(x or "" for x in (status.artist, status.title, status.album))
        now_playing = NowPlaying(
            track_id=track_id,
            title=status.title,
            artist=status.artist,
            album=status.album,
            duration=status.duration or None,
        )
        return PlaybackSample(
            now_playing=now_playing,
            progress=status.secs or 0.0,
            playing=status.state in BluOSClient.PLAYING_STATES,
        )

    def get_sample(self) -> PlaybackSample | None:
        status = self.get_status()
        if status is None:
            return None
        return self.to_sample(status)

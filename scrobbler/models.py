from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Union


# -------------------------
# Playback engine interface
# -------------------------
@dataclass(frozen=True)
class NowPlaying:
    track_id: str | None
    title: str
    artist: str
    album: str | None = None
    duration: float | None = None  # seconds


@dataclass(frozen=True)
class PlaybackSample:
    now_playing: NowPlaying | None
    progress: float  # seconds since track start
    playing: bool


# -------------------------
# Scrobble records
# -------------------------
@dataclass(frozen=True, eq=False)
class ScrobbleTrack:
    """A play that crossed the scrobble threshold.

    Identity is the opaque `id` alone: two plays of the same song are two
    distinct scrobbles.
    """

    title: str
    artist: str
    timestamp: int  # unix seconds, when playback started
    album: str | None = None
    duration: float | None = None
    track_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScrobbleTrack):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def from_now_playing(cls, now_playing: NowPlaying, timestamp: int) -> "ScrobbleTrack":
        return cls(
            title=now_playing.title,
            artist=now_playing.artist,
            album=now_playing.album,
            duration=now_playing.duration,
            timestamp=int(timestamp),
            track_id=now_playing.track_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "track_id": self.track_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrobbleTrack":
        return cls(
            id=str(data["id"]),
            title=data["title"],
            artist=data["artist"],
            album=data.get("album"),
            duration=data.get("duration"),
            timestamp=int(data["timestamp"]),
            track_id=data.get("track_id"),
        )


@dataclass(frozen=True)
class ScrobbleResult:
    track: ScrobbleTrack
    accepted: bool
    corrected_artist: str | None = None
    corrected_title: str | None = None
    error_message: str | None = None


# -------------------------
# Authentication state
# -------------------------
@dataclass(frozen=True)
class Disconnected:
    is_connected = False
    username = None


@dataclass(frozen=True)
class Authenticating:
    is_connected = False
    username = None


@dataclass(frozen=True)
class Connected:
    username: str
    is_connected = True


@dataclass(frozen=True)
class Error:
    message: str
    is_connected = False
    username = None


ScrobbleAuthState = Union[Disconnected, Authenticating, Connected, Error]

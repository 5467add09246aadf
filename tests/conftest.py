"""Shared test fixtures."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from scrobbler.credentials import MemorySecretStore
from scrobbler.models import NowPlaying, ScrobbleTrack
from scrobbler.retry import RetryPolicy
from scrobbler.scrobble_queue import ScrobbleQueue
from scrobbler.session import LastFMSession


@pytest.fixture
def make_track():
    """Factory for ScrobbleTrack with sensible defaults."""

    def _make(title="Test Song", artist="Test Artist", album="Test Album", duration=200.0,
              timestamp=None, track_id="test-video-id"):
        return ScrobbleTrack(
            title=title,
            artist=artist,
            album=album,
            duration=duration,
            timestamp=int(time.time()) if timestamp is None else timestamp,
            track_id=track_id,
        )

    return _make


@pytest.fixture
def now_playing() -> NowPlaying:
    return NowPlaying(track_id="video123", title="Blinding Lights", artist="The Weeknd",
                      album="After Hours", duration=180.0)


@pytest.fixture
def queue(tmp_path) -> ScrobbleQueue:
    return ScrobbleQueue(str(tmp_path / "queue"))


def make_session(session_key="sk-123", username="alice") -> LastFMSession:
    session = LastFMSession(
        MemorySecretStore(session_key=session_key, username=username),
        api_key="api-key",
        api_secret="api-secret",
        network_factory=MagicMock(),
        generator_factory=MagicMock(),
        sleep=AsyncMock(),
    )
    session.restore_session()
    return session


@pytest.fixture
def session() -> LastFMSession:
    """A connected session for user 'alice'."""
    return make_session()


@pytest.fixture
def disconnected_session() -> LastFMSession:
    return make_session(session_key=None, username=None)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Default policy with sleeps recorded instead of performed."""
    return RetryPolicy(sleep=AsyncMock())

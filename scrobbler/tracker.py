from .models import NowPlaying

# Only progress steps inside (0, 2) seconds count as listening; anything else is a seek
MAX_PROGRESS_STEP = 2.0
# Last.fm won't take tracks shorter than 30s
MIN_TRACK_DURATION = 30.0
# Jumping back this far on an already-scrobbled track starts a new play
REPLAY_REWIND = 5.0


class PlaybackTracker:
    """Accumulates genuinely listened time for the current track and decides when to scrobble.

    Last.fm guideline: scrobble at halfway or 240s (4min), whichever comes first.
    Eligibility fires once per play; seeks in either direction add nothing.
    """

    def __init__(self, percent: float = 0.5, max_seconds: float = 240.0):
        self.percent = percent
        self.max_seconds = max_seconds
        self.current: NowPlaying | None = None
        self.accumulated: float = 0.0
        self.last_progress: float = 0.0
        self.scrobbled: bool = False

    def start(self, now_playing: NowPlaying | None) -> None:
        self.current = now_playing
        self.accumulated = 0.0
        self.last_progress = 0.0
        self.scrobbled = False

    def reset(self) -> None:
        self.start(None)

    def is_new_play(self, now_playing: NowPlaying, progress: float) -> bool:
        cur = self.current
        if cur is None:
            return True
        if now_playing.track_id != cur.track_id:
            return True
        # Sources sometimes keep a stale id across tracks
        if now_playing.title != cur.title or now_playing.artist != cur.artist:
            return True
        return self.scrobbled and progress < self.last_progress - REPLAY_REWIND

    def rebase(self, progress: float) -> None:
        """Move the delta baseline without counting anything (e.g. after a pause)."""
        self.last_progress = progress

    def threshold(self, duration: float | None = None) -> float:
        if duration is None and self.current is not None:
            duration = self.current.duration
        # Unknown duration: only the fixed cap applies
        if not duration or duration <= 0:
            return self.max_seconds
        return min(self.max_seconds, duration * self.percent)

    def observe(self, progress: float) -> bool:
        """Feed one progress sample; True the first time this play becomes scrobble-eligible."""
        delta = progress - self.last_progress
        self.last_progress = progress
        if not 0 < delta < MAX_PROGRESS_STEP:
            return False
        self.accumulated += delta
        return self._check_threshold()

    def _check_threshold(self) -> bool:
        if self.current is None or self.scrobbled:
            return False
        duration = self.current.duration
        if duration and 0 < duration < MIN_TRACK_DURATION:
            return False
        if self.accumulated >= self.threshold():
            self.scrobbled = True
            return True
        return False

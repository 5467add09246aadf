"""
Scrobbling coordinator.

Bridges the playback feed, the play-time tracker, the durable queue and the
Last.fm client:

- handle_sample() runs synchronously, in arrival order, and enqueues a
  scrobble the moment a play becomes eligible.
- flush() drains one bounded batch at a time. Only one flush runs per queue;
  a flush requested meanwhile is folded into the running one.
- Acknowledged submissions are always marked completed, even when the
  flushing task is cancelled; anything not acknowledged stays queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import AUTH_ERRORS, InvalidResponse, ScrobbleError
from .models import NowPlaying, PlaybackSample, ScrobbleResult, ScrobbleTrack
from .optimistic import OptimisticChange, apply_optimistic
from .scrobble_queue import ScrobbleQueue
from .tracker import PlaybackTracker

log = logging.getLogger("scrobbler.coordinator")

Alert = Callable[..., None]


def _no_alert(level: str, title: str, message: str, extra: dict | None = None) -> None:
    return None


@dataclass
class FlushReport:
    submitted: int = 0
    accepted: List[str] = field(default_factory=list)
    rejected: List[ScrobbleResult] = field(default_factory=list)
    error: Optional[ScrobbleError] = None
    coalesced: bool = False

    def merge(self, other: "FlushReport") -> None:
        self.submitted += other.submitted
        self.accepted.extend(other.accepted)
        self.rejected.extend(other.rejected)
        if other.error is not None:
            self.error = other.error


class ScrobblingCoordinator:
    def __init__(self, client, session, queue: ScrobbleQueue, tracker: PlaybackTracker | None = None,
                 batch_size: int = 50, flush_interval: float = 30.0, alert: Alert | None = None,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.session = session
        self.queue = queue
        self.tracker = tracker or PlaybackTracker()
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.alert = alert or _no_alert
        self._clock = clock

        self._play_started_at: int = 0
        self._now_playing_sent = False
        self._now_playing_task: asyncio.Task | None = None

        self._flush_lock = asyncio.Lock()
        self._flush_again = False
        self._inflight: asyncio.Future | None = None
        self._flush_loop_task: asyncio.Task | None = None
        self._background: set = set()

        self._unsaved: List[ScrobbleTrack] = []
        self._alerted_batch: Tuple[str, ...] | None = None

        self._loved: Dict[Tuple[str, str], bool] = {}

    # -------- task helpers --------
    def _spawn(self, factory: Callable[[], Awaitable]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous caller): background work is skipped
            return None
        task = loop.create_task(factory())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------- progress samples --------
    def handle_sample(self, sample: PlaybackSample) -> ScrobbleTrack | None:
        """Process one playback sample. Returns the scrobble enqueued by this sample, if any."""
        now_playing = sample.now_playing
        if now_playing is None:
            if self.tracker.current is not None:
                log.debug("Playback cleared (accumulated: %.1fs, scrobbled: %s)",
                          self.tracker.accumulated, self.tracker.scrobbled)
                self.tracker.reset()
                self._cancel_now_playing()
            return None

        if self.tracker.is_new_play(now_playing, sample.progress):
            self._start_play(now_playing, sample.progress)

        if not sample.playing:
            self.tracker.rebase(sample.progress)
            return None

        if not self._now_playing_sent:
            self._send_now_playing(now_playing)

        if not self.tracker.observe(sample.progress):
            return None

        track = ScrobbleTrack.from_now_playing(now_playing, self._play_started_at)
        if not self._persist(track):
            return track
        log.info("Scrobble threshold met for: %s — %s (accumulated: %.1fs)",
                 track.artist, track.title, self.tracker.accumulated)
        self.request_flush()
        return track

    def _persist(self, track: ScrobbleTrack) -> bool:
        try:
            self.queue.enqueue(track)
        except OSError as e:
            # Held in memory and written again before the next flush
            self._unsaved.append(track)
            log.error("Could not write scrobble to queue: %s — %s: %s", track.artist, track.title, e)
            self.alert("ERROR", "Scrobble queue write failed", str(e), {"unsaved": len(self._unsaved)})
            return False
        return True

    def _persist_unsaved(self) -> None:
        while self._unsaved:
            try:
                self.queue.enqueue(self._unsaved[0])
            except OSError as e:
                log.warning("Scrobble queue still not writable (%s unsaved): %s", len(self._unsaved), e)
                return
            self._unsaved.pop(0)

    def _start_play(self, now_playing: NowPlaying, progress: float) -> None:
        if self.tracker.current is not None:
            log.debug("Finalized track (accumulated: %.1fs, scrobbled: %s)",
                      self.tracker.accumulated, self.tracker.scrobbled)
        self.tracker.start(now_playing)
        self._play_started_at = int(self._clock() - max(progress, 0.0))
        self._now_playing_sent = False
        log.debug("Started tracking: %s — %s", now_playing.artist, now_playing.title)

    # -------- now playing --------
    def _cancel_now_playing(self) -> None:
        if self._now_playing_task is not None and not self._now_playing_task.done():
            self._now_playing_task.cancel()
        self._now_playing_task = None

    def _send_now_playing(self, now_playing: NowPlaying) -> None:
        self._now_playing_sent = True
        if not self.session.is_connected:
            return
        track = ScrobbleTrack.from_now_playing(now_playing, self._play_started_at)
        self._cancel_now_playing()
        self._now_playing_task = self._spawn(lambda: self._update_now_playing(track))

    async def _update_now_playing(self, track: ScrobbleTrack) -> None:
        try:
            await self.client.update_now_playing(track)
        except ScrobbleError as e:
            # Now Playing failures aren't critical; log at DEBUG
            log.debug("Now playing update failed (non-critical): %s", e)

    # -------- flushing --------
    def request_flush(self) -> asyncio.Task | None:
        """Eager flush. Folded into the running flush when one is in flight."""
        if self._flush_lock.locked():
            self._flush_again = True
            return None
        return self._spawn(self._flush_logged)

    async def flush(self) -> FlushReport:
        if self._flush_lock.locked():
            self._flush_again = True
            return FlushReport(coalesced=True)

        async with self._flush_lock:
            report = FlushReport()
            while True:
                self._flush_again = False
                cycle = await self._flush_once()
                report.merge(cycle)
                more = self._flush_again or cycle.submitted == self.batch_size
                # Only go round again when the last batch made progress
                if not (more and cycle.accepted and cycle.error is None):
                    break
            return report

    async def _flush_once(self) -> FlushReport:
        # A submission orphaned by a cancelled flush must settle before the next dequeue
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})

        self._persist_unsaved()
        if not self.session.is_connected or self.queue.is_empty:
            return FlushReport()

        self.queue.prune_expired(self._clock())
        batch = self.queue.dequeue(self.batch_size)
        if not batch:
            return FlushReport()

        log.debug("Flushing %s scrobbles from queue", len(batch))
        report = FlushReport(submitted=len(batch))
        submit = asyncio.ensure_future(self._submit(batch))
        submit.add_done_callback(self._settled)
        self._inflight = submit
        try:
            results = await asyncio.shield(submit)
        except AUTH_ERRORS as e:
            # Auth issue: stop using the key and tell the user; queued plays stay put
            self.session.invalidate(str(e))
            log.error("Scrobble flush failed (auth): %s", e)
            self.alert("ERROR", "Last.fm authentication failed", str(e),
                       {"pending_queue_size": self.queue.size()})
            report.error = e
            return report
        except InvalidResponse as e:
            log.warning("Unexpected Last.fm response; keeping %s scrobbles queued. err=%s", len(batch), e)
            # One alert per stuck batch; later attempts are only logged
            head = tuple(t.id for t in batch)
            if head != self._alerted_batch:
                self._alerted_batch = head
                self.alert("WARNING", "Last.fm scrobble error", str(e), {"pending_queue_size": self.queue.size()})
            report.error = e
            return report
        except ScrobbleError as e:
            log.info("Flush paused due to error: %s; queue size=%s", e, self.queue.size())
            report.error = e
            return report

        self._alerted_batch = None
        report.accepted = [r.track.id for r in results if r.accepted]
        report.rejected = [r for r in results if not r.accepted]
        return report

    async def _submit(self, batch: Sequence[ScrobbleTrack]) -> List[ScrobbleResult]:
        results = await self.client.scrobble(batch)
        self._reconcile(results)
        return results

    @staticmethod
    def _settled(future: asyncio.Future) -> None:
        # Retrieve the outcome so an orphaned submission never goes unobserved
        if not future.cancelled() and future.exception() is not None:
            log.debug("Scrobble submission ended with: %s", future.exception())

    def _reconcile(self, results: Sequence[ScrobbleResult]) -> None:
        accepted = [r.track.id for r in results if r.accepted]
        if accepted:
            self.queue.mark_completed(accepted)
            log.info("Flushed %s/%s scrobbles. Queue size now %s", len(accepted), len(results), self.queue.size())
        for r in results:
            if not r.accepted:
                log.warning("Scrobble rejected: %s — %s: %s", r.track.artist, r.track.title,
                            r.error_message or "unknown reason")
            elif r.corrected_artist or r.corrected_title:
                log.info("Last.fm corrected %s — %s to %s — %s", r.track.artist, r.track.title,
                         r.corrected_artist or r.track.artist, r.corrected_title or r.track.title)

    # -------- loved tracks --------
    @staticmethod
    def _love_key(track) -> Tuple[str, str]:
        return (track.artist.casefold(), track.title.casefold())

    def is_loved(self, track) -> bool:
        return self._loved.get(self._love_key(track), False)

    async def set_loved(self, track: ScrobbleTrack, loved: bool) -> bool:
        key = self._love_key(track)
        change = OptimisticChange(key=key, old=self._loved.get(key, False), new=loved)
        return await apply_optimistic(self._loved, change, lambda: self.client.love(track, loved))

    # -------- lifecycle --------
    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except Exception:
            log.exception("Scrobble flush failed")

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self._flush_logged()

    async def run(self, source: Callable[[], Awaitable[PlaybackSample | None]], poll_interval: float) -> None:
        """Sample the playback source forever, flushing in the background."""
        self._flush_loop_task = asyncio.ensure_future(self._flush_periodically())
        # Deliver whatever survived the last run
        self.request_flush()
        try:
            while True:
                try:
                    sample = await source()
                except Exception as e:
                    log.warning("Playback status fetch failed: %s", e)
                    sample = None
                if sample is not None:
                    self.handle_sample(sample)
                await asyncio.sleep(poll_interval)
        finally:
            await self.stop()

    async def stop(self, timeout: float = 10.0) -> None:
        if self._flush_loop_task is not None:
            self._flush_loop_task.cancel()
            self._flush_loop_task = None
        self._cancel_now_playing()
        for task in list(self._background):
            task.cancel()
        # Give an already-sent batch the chance to be acknowledged
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight}, timeout=timeout)

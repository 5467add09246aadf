"""
Persistent scrobble queue.

- Stores pending scrobbles on disk (JSON file), so plays survive restarts and network outages.
- dequeue() only peeks: a batch stays on disk until mark_completed() removes it,
  so a crash mid-submission means redelivery, never loss.
- One queue per directory: <directory>/scrobble-queue.json.
"""

from __future__ import annotations
import json
import logging
import os
import threading
import time
from typing import Iterable, List

from .models import ScrobbleTrack

log = logging.getLogger("scrobbler.queue")

QUEUE_FILENAME = "scrobble-queue.json"
# Last.fm rejects scrobbles older than 14 days
MAX_AGE_SECONDS = 14 * 24 * 60 * 60


class ScrobbleQueue:
    def __init__(self, directory: str):
        self.directory = directory
        self.path = os.path.join(directory, QUEUE_FILENAME)
        self._lock = threading.Lock()
        self._items: List[ScrobbleTrack] = []
        self._load()

    # -------- persistence --------
    def _load(self) -> None:
        os.makedirs(self.directory, exist_ok=True)
        if not os.path.isfile(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("queue file is not a JSON list")
            items = [ScrobbleTrack.from_dict(item) for item in data]
        except (ValueError, KeyError, TypeError) as e:
            # Keep the unreadable file around instead of overwriting it on the next save
            aside = f"{self.path}.corrupt"
            os.replace(self.path, aside)
            log.error("Scrobble queue unreadable (%s); moved to %s and starting empty", e, aside)
            return

        seen = set()
        for track in items:
            if track.id not in seen:
                seen.add(track.id)
                self._items.append(track)
        log.info("Loaded %s pending scrobbles from disk", len(self._items))

    def _commit(self, items: List[ScrobbleTrack]) -> None:
        # Memory only follows the file: a failed write leaves both on the old list
        self._save(items)
        self._items = items

    def _save(self, items: List[ScrobbleTrack]) -> None:
        # Write atomically and force to disk before returning
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([t.to_dict() for t in items], f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    # -------- public API --------
    def enqueue(self, track: ScrobbleTrack) -> None:
        with self._lock:
            if any(t.id == track.id for t in self._items):
                return
            self._commit(self._items + [track])
            log.debug("Enqueued scrobble: %s — %s (queue size: %s)", track.artist, track.title, len(self._items))

    def dequeue(self, limit: int) -> List[ScrobbleTrack]:
        """Oldest-first batch of up to `limit` pending scrobbles. Nothing is removed."""
        with self._lock:
            return list(self._items[:max(0, limit)])

    def mark_completed(self, track_ids: Iterable[str]) -> int:
        ids = set(track_ids)
        with self._lock:
            remaining = [t for t in self._items if t.id not in ids]
            removed = len(self._items) - len(remaining)
            if removed:
                self._commit(remaining)
                log.debug("Marked %s scrobbles as completed (queue size: %s)", removed, len(self._items))
            return removed

    def prune_expired(self, now: float | None = None) -> int:
        cutoff = (time.time() if now is None else now) - MAX_AGE_SECONDS
        with self._lock:
            remaining = [t for t in self._items if t.timestamp >= cutoff]
            pruned = len(self._items) - len(remaining)
            if pruned:
                self._commit(remaining)
                log.info("Pruned %s expired scrobbles (queue size: %s)", pruned, len(self._items))
            return pruned

    def clear(self) -> None:
        with self._lock:
            self._commit([])
        log.info("Scrobble queue cleared")

    @property
    def pending_tracks(self) -> List[ScrobbleTrack]:
        with self._lock:
            return list(self._items)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._items

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.size()

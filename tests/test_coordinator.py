"""Tests for the ScrobblingCoordinator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from scrobbler.coordinator import ScrobblingCoordinator
from scrobbler.errors import InvalidCredentials, InvalidResponse, NetworkError, SessionExpired
from scrobbler.models import Error, NowPlaying, PlaybackSample, ScrobbleResult
from scrobbler.optimistic import OptimisticChange, apply_optimistic

NOW = 1_700_000_000.0


def accept_all(batch):
    return [ScrobbleResult(track=t, accepted=True) for t in batch]


def make_client() -> MagicMock:
    client = MagicMock()
    client.scrobble = AsyncMock(side_effect=accept_all)
    client.update_now_playing = AsyncMock()
    client.love = AsyncMock()
    return client


@pytest.fixture
def client() -> MagicMock:
    return make_client()


@pytest.fixture
def alert() -> MagicMock:
    return MagicMock()


@pytest.fixture
def coordinator(client, session, queue, alert) -> ScrobblingCoordinator:
    return ScrobblingCoordinator(client, session, queue, alert=alert, clock=lambda: NOW)


async def settle(coordinator: ScrobblingCoordinator) -> None:
    """Let background tasks (eager flushes, now-playing) finish."""
    for _ in range(5):
        await asyncio.sleep(0)
    while coordinator._background:
        await asyncio.gather(*list(coordinator._background), return_exceptions=True)


def disk_full(src, dst):
    raise OSError(28, "No space left on device")


def samples(now_playing, until, step=0.5, playing=True, start=0.0):
    progress = start
    while progress < until:
        progress += step
        yield PlaybackSample(now_playing=now_playing, progress=progress, playing=playing)


class TestFlush:
    """Draining the queue through the client."""

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, coordinator, client) -> None:
        report = await coordinator.flush()
        assert report.submitted == 0
        client.scrobble.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnected_is_noop(self, client, disconnected_session, queue, make_track) -> None:
        queue.enqueue(make_track())
        coordinator = ScrobblingCoordinator(client, disconnected_session, queue)
        await coordinator.flush()
        client.scrobble.assert_not_awaited()
        assert queue.size() == 1

    @pytest.mark.asyncio
    async def test_accepted_are_completed(self, coordinator, client, queue, make_track) -> None:
        tracks = [make_track(title="Song 1"), make_track(title="Song 2")]
        for t in tracks:
            queue.enqueue(t)

        report = await coordinator.flush()

        client.scrobble.assert_awaited_once_with(tracks)
        assert report.accepted == [t.id for t in tracks]
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_rejected_stay_queued(self, coordinator, client, queue, make_track) -> None:
        good, bad = make_track(title="Good"), make_track(title="Bad")
        queue.enqueue(good)
        queue.enqueue(bad)
        client.scrobble.side_effect = lambda batch: [
            ScrobbleResult(track=batch[0], accepted=True),
            ScrobbleResult(track=batch[1], accepted=False, error_message="Artist was ignored"),
        ]

        report = await coordinator.flush()

        assert queue.pending_tracks == [bad]
        assert [r.track for r in report.rejected] == [bad]

    @pytest.mark.asyncio
    async def test_batches_are_bounded(self, client, session, queue, make_track) -> None:
        for i in range(5):
            queue.enqueue(make_track(title=f"Song {i}"))
        coordinator = ScrobblingCoordinator(client, session, queue, batch_size=2, clock=lambda: NOW)

        await coordinator.flush()

        assert [len(c.args[0]) for c in client.scrobble.await_args_list] == [2, 2, 1]
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_expired_scrobbles_are_pruned(self, coordinator, client, queue, make_track) -> None:
        queue.enqueue(make_track(timestamp=int(NOW - 15 * 24 * 3600)))
        await coordinator.flush()
        client.scrobble.assert_not_awaited()
        assert queue.is_empty


class TestFlushErrors:
    """Failure reconciliation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [InvalidCredentials(), SessionExpired()])
    async def test_auth_failure_invalidates_session(self, coordinator, client, session, queue, alert,
                                                    make_track, error) -> None:
        queue.enqueue(make_track())
        client.scrobble.side_effect = error

        report = await coordinator.flush()

        assert report.error is error
        assert isinstance(session.auth_state, Error)
        assert queue.size() == 1
        assert alert.call_args.args[0] == "ERROR"
        # Nothing more goes out until the user re-authenticates
        await coordinator.flush()
        assert client.scrobble.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_batch(self, coordinator, client, session, queue, alert,
                                                 make_track) -> None:
        queue.enqueue(make_track())
        client.scrobble.side_effect = NetworkError("unreachable")

        report = await coordinator.flush()

        assert isinstance(report.error, NetworkError)
        assert session.is_connected
        assert queue.size() == 1
        alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_response_alerts(self, coordinator, client, queue, alert, make_track) -> None:
        queue.enqueue(make_track())
        client.scrobble.side_effect = InvalidResponse("Last.fm error 6: nope")

        await coordinator.flush()

        assert queue.size() == 1
        assert alert.call_args.args[0] == "WARNING"

    @pytest.mark.asyncio
    async def test_stuck_batch_alerts_once(self, coordinator, client, queue, alert, make_track) -> None:
        queue.enqueue(make_track())
        client.scrobble.side_effect = InvalidResponse("Last.fm error 6: bad")

        for _ in range(5):
            await coordinator.flush()

        assert client.scrobble.await_count == 5
        assert alert.call_count == 1

    @pytest.mark.asyncio
    async def test_alert_rearms_after_successful_flush(self, coordinator, client, queue, alert,
                                                       make_track) -> None:
        queue.enqueue(make_track(title="One"))
        client.scrobble.side_effect = InvalidResponse("Last.fm error 6: bad")
        await coordinator.flush()
        client.scrobble.side_effect = accept_all
        await coordinator.flush()
        assert queue.is_empty

        queue.enqueue(make_track(title="Two"))
        client.scrobble.side_effect = InvalidResponse("Last.fm error 6: bad")
        await coordinator.flush()

        assert alert.call_count == 2


class TestFlushConcurrency:
    """Single-flight flushing and cancellation."""

    @pytest.mark.asyncio
    async def test_concurrent_flush_coalesces(self, coordinator, client, queue, make_track) -> None:
        release = asyncio.Event()

        async def slow_scrobble(batch):
            await release.wait()
            return accept_all(batch)

        client.scrobble.side_effect = slow_scrobble
        queue.enqueue(make_track(title="Song 1"))

        first = asyncio.ensure_future(coordinator.flush())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        queue.enqueue(make_track(title="Song 2"))
        second = await coordinator.flush()
        assert second.coalesced
        assert client.scrobble.await_count == 1

        release.set()
        report = await first

        # The running flush picked up the item enqueued meanwhile
        assert len(report.accepted) == 2
        assert client.scrobble.await_count == 2
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_acknowledged_batch_completes_after_cancel(self, coordinator, client, queue,
                                                             make_track) -> None:
        release = asyncio.Event()

        async def slow_scrobble(batch):
            await release.wait()
            return accept_all(batch)

        client.scrobble.side_effect = slow_scrobble
        queue.enqueue(make_track())

        flush = asyncio.ensure_future(coordinator.flush())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        flush.cancel()
        with pytest.raises(asyncio.CancelledError):
            await flush

        release.set()
        await asyncio.wait({coordinator._inflight})
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_unacknowledged_batch_stays_after_teardown(self, coordinator, client, queue,
                                                             make_track) -> None:
        async def never(batch):
            await asyncio.Event().wait()

        client.scrobble.side_effect = never
        queue.enqueue(make_track())

        flush = asyncio.ensure_future(coordinator.flush())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        flush.cancel()
        coordinator._inflight.cancel()
        await asyncio.wait({flush, coordinator._inflight})

        assert queue.size() == 1


class TestSamples:
    """Progress sample handling."""

    def test_enqueues_at_threshold(self, coordinator, queue, now_playing) -> None:
        enqueued = [t for t in map(coordinator.handle_sample, samples(now_playing, until=120.0)) if t]

        assert len(enqueued) == 1
        track = enqueued[0]
        assert queue.pending_tracks == [track]
        assert track.title == "Blinding Lights"
        assert track.artist == "The Weeknd"
        assert track.album == "After Hours"
        assert track.track_id == "video123"
        assert track.timestamp == int(NOW - 0.5)

    def test_paused_samples_do_not_count(self, coordinator, queue, now_playing) -> None:
        for sample in samples(now_playing, until=120.0, playing=False):
            coordinator.handle_sample(sample)
        assert queue.is_empty
        assert coordinator.tracker.accumulated == 0.0

    def test_seek_does_not_count(self, coordinator, queue, now_playing) -> None:
        for sample in samples(now_playing, until=10.0):
            coordinator.handle_sample(sample)
        coordinator.handle_sample(PlaybackSample(now_playing, progress=170.0, playing=True))
        assert queue.is_empty
        assert coordinator.tracker.accumulated == pytest.approx(10.0)

    def test_track_change_resets(self, coordinator, queue, now_playing) -> None:
        for sample in samples(now_playing, until=80.0):
            coordinator.handle_sample(sample)
        other = NowPlaying(track_id="video456", title="Save Your Tears", artist="The Weeknd", duration=200.0)
        for sample in samples(other, until=60.0):
            coordinator.handle_sample(sample)
        assert queue.is_empty
        assert coordinator.tracker.current == other

    def test_cleared_playback_resets(self, coordinator, now_playing) -> None:
        for sample in samples(now_playing, until=10.0):
            coordinator.handle_sample(sample)
        coordinator.handle_sample(PlaybackSample(None, progress=0.0, playing=False))
        assert coordinator.tracker.current is None

    def test_replay_scrobbles_again(self, coordinator, queue, now_playing) -> None:
        for sample in samples(now_playing, until=100.0):
            coordinator.handle_sample(sample)
        for sample in samples(now_playing, until=100.0):
            coordinator.handle_sample(sample)
        assert queue.size() == 2

    def test_enqueues_while_disconnected(self, client, disconnected_session, queue, now_playing) -> None:
        coordinator = ScrobblingCoordinator(client, disconnected_session, queue, clock=lambda: NOW)
        for sample in samples(now_playing, until=100.0):
            coordinator.handle_sample(sample)
        assert queue.size() == 1

    @pytest.mark.asyncio
    async def test_eligible_play_is_flushed_eagerly(self, coordinator, client, queue, now_playing) -> None:
        for sample in samples(now_playing, until=100.0):
            coordinator.handle_sample(sample)
        await settle(coordinator)
        client.scrobble.assert_awaited_once()
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_now_playing_sent_once_per_play(self, coordinator, client, now_playing) -> None:
        for sample in samples(now_playing, until=5.0):
            coordinator.handle_sample(sample)
        await settle(coordinator)
        client.update_now_playing.assert_awaited_once()
        assert client.update_now_playing.await_args.args[0].title == "Blinding Lights"

    @pytest.mark.asyncio
    async def test_now_playing_failure_is_ignored(self, coordinator, client, now_playing) -> None:
        client.update_now_playing.side_effect = NetworkError("down")
        for sample in samples(now_playing, until=5.0):
            coordinator.handle_sample(sample)
        await settle(coordinator)
        client.update_now_playing.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_now_playing_when_disconnected(self, client, disconnected_session, queue,
                                                    now_playing) -> None:
        coordinator = ScrobblingCoordinator(client, disconnected_session, queue)
        for sample in samples(now_playing, until=5.0):
            coordinator.handle_sample(sample)
        await settle(coordinator)
        client.update_now_playing.assert_not_awaited()


class TestQueueWriteFailure:
    """Sampling keeps going when the queue file can't be written."""

    def test_unwritable_queue_holds_play_in_memory(self, coordinator, queue, alert, now_playing,
                                                   monkeypatch) -> None:
        monkeypatch.setattr("scrobbler.scrobble_queue.os.replace", disk_full)

        enqueued = [t for t in map(coordinator.handle_sample, samples(now_playing, until=120.0)) if t]

        assert len(enqueued) == 1
        assert queue.is_empty
        assert coordinator._unsaved == enqueued
        assert alert.call_args.args[0] == "ERROR"

    @pytest.mark.asyncio
    async def test_held_play_is_written_and_flushed_later(self, coordinator, client, queue, now_playing,
                                                          monkeypatch) -> None:
        monkeypatch.setattr("scrobbler.scrobble_queue.os.replace", disk_full)
        for sample in samples(now_playing, until=120.0):
            coordinator.handle_sample(sample)
        await settle(coordinator)
        client.scrobble.assert_not_awaited()

        monkeypatch.undo()
        report = await coordinator.flush()

        assert len(report.accepted) == 1
        assert coordinator._unsaved == []
        assert queue.is_empty

    @pytest.mark.asyncio
    async def test_run_survives_unwritable_queue(self, coordinator, now_playing, monkeypatch) -> None:
        monkeypatch.setattr("scrobbler.scrobble_queue.os.replace", disk_full)
        feed = list(samples(now_playing, until=180.0))
        source = AsyncMock(side_effect=feed + [None] * 1000)

        task = asyncio.ensure_future(coordinator.run(source, poll_interval=0))
        while source.await_count < len(feed) + 1:
            await asyncio.sleep(0)

        assert not task.done()
        assert len(coordinator._unsaved) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestRun:
    """The sampling loop."""

    @pytest.mark.asyncio
    async def test_run_feeds_samples_and_stops_cleanly(self, coordinator, now_playing) -> None:
        feed = list(samples(now_playing, until=2.0))
        source = AsyncMock(side_effect=feed + [RuntimeError("device gone")] + [None] * 1000)

        task = asyncio.ensure_future(coordinator.run(source, poll_interval=0))
        while source.await_count < len(feed) + 2:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert coordinator.tracker.accumulated == pytest.approx(2.0)
        assert coordinator._flush_loop_task is None


class TestLoved:
    """Optimistic love/unlove."""

    @pytest.mark.asyncio
    async def test_love_applies_before_confirmation(self, coordinator, client, make_track) -> None:
        track = make_track()
        seen = []
        client.love.side_effect = lambda t, loved: seen.append(coordinator.is_loved(t))

        assert await coordinator.set_loved(track, True) is True

        assert seen == [True]
        assert coordinator.is_loved(track)
        client.love.assert_awaited_once_with(track, True)

    @pytest.mark.asyncio
    async def test_love_reverts_on_failure(self, coordinator, client, make_track) -> None:
        track = make_track()
        client.love.side_effect = NetworkError("down")

        with pytest.raises(NetworkError):
            await coordinator.set_loved(track, True)

        assert not coordinator.is_loved(track)

    @pytest.mark.asyncio
    async def test_apply_optimistic_restores_previous_value(self) -> None:
        state = {"k": "old"}
        confirm = AsyncMock(side_effect=SessionExpired())
        with pytest.raises(SessionExpired):
            await apply_optimistic(state, OptimisticChange(key="k", old="old", new="new"), confirm)
        assert state == {"k": "old"}

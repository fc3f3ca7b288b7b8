import asyncio

from moodify.error_surface import ErrorSurface
from moodify.errors import NoActiveDeviceError, Subsystem
from moodify.models import TrackOrigin
from moodify.player import QueueReconciler
from moodify.player.queue_manager import wait_for_track_to_play

from conftest import FakeClock, FakePlayerAdapter, make_track, no_sleep


def _reconciler(adapter=None, clock=None, surface=None):
    adapter = adapter or FakePlayerAdapter()
    reconciler = QueueReconciler(
        adapter,
        error_surface=surface,
        clock=clock or FakeClock(),
        sleep=no_sleep,
    )
    return reconciler, adapter


def _uris(tracks):
    return [t.uri for t in tracks]


def test_play_list_plays_first_and_queues_rest():
    reconciler, adapter = _reconciler()
    notified = []
    reconciler.add_listener(lambda r: notified.append((r.is_loading, r.current_track.uri)))
    tracks = [make_track(n) for n in range(1, 4)]

    result = asyncio.run(reconciler.play_list(tracks))

    assert result.success
    assert result.playing_track.uri == "spotify:track:t1"
    assert adapter.played == [["spotify:track:t1"]]
    assert adapter.queued == ["spotify:track:t2", "spotify:track:t3"]
    assert reconciler.current_track.origin == TrackOrigin.OPTIMISTIC
    assert _uris(reconciler.queue) == ["spotify:track:t2", "spotify:track:t3"]
    assert reconciler.context_version == 1
    assert not reconciler.is_loading
    assert not reconciler.is_queue_modifying
    assert notified[0] == (True, "spotify:track:t1")
    assert notified[-1] == (False, "spotify:track:t1")


def test_play_list_start_index():
    reconciler, adapter = _reconciler()
    tracks = [make_track(n) for n in range(1, 4)]
    asyncio.run(reconciler.play_list(tracks, start_index=1))
    assert adapter.played == [["spotify:track:t2"]]
    assert _uris(reconciler.queue) == ["spotify:track:t3"]


def test_play_list_empty():
    reconciler, adapter = _reconciler()
    result = asyncio.run(reconciler.play_list([]))
    assert not result.success
    assert result.error.code == "NO_RESULTS"
    assert reconciler.context_version == 0


def test_play_list_failure_is_published():
    surface = ErrorSurface()
    adapter = FakePlayerAdapter()
    adapter.play_error = NoActiveDeviceError("no device")
    reconciler, _ = _reconciler(adapter, surface=surface)

    result = asyncio.run(reconciler.play_list([make_track(1), make_track(2)]))

    assert not result.success
    assert isinstance(result.error, NoActiveDeviceError)
    assert adapter.queued == []
    assert not reconciler.is_loading
    assert surface.latest(Subsystem.PLAYER).code == "NO_DEVICE"


def test_failed_enqueue_is_dropped_from_local_queue():
    surface = ErrorSurface()
    adapter = FakePlayerAdapter()
    adapter.fail_uris = {"spotify:track:t2"}
    reconciler, _ = _reconciler(adapter, surface=surface)

    result = asyncio.run(reconciler.play_list([make_track(n) for n in range(1, 4)]))

    assert result.success
    assert _uris(result.failed) == ["spotify:track:t2"]
    assert _uris(reconciler.queue) == ["spotify:track:t3"]
    assert surface.latest(Subsystem.PLAYER) is not None


def test_append_skips_duplicates():
    reconciler, adapter = _reconciler()
    asyncio.run(reconciler.play_list([make_track(1), make_track(2)]))
    adapter.queued.clear()

    result = asyncio.run(reconciler.append_queue(
        [make_track(2), make_track(3), make_track(3), make_track(1), make_track(4)]
    ))

    assert _uris(result.added) == ["spotify:track:t3", "spotify:track:t4"]
    assert _uris(result.duplicates) == ["spotify:track:t2", "spotify:track:t3", "spotify:track:t1"]
    assert adapter.queued == ["spotify:track:t3", "spotify:track:t4"]
    assert _uris(reconciler.queue) == ["spotify:track:t2", "spotify:track:t3", "spotify:track:t4"]
    assert reconciler.context_version == 1


def test_append_nothing_new_makes_no_calls():
    reconciler, adapter = _reconciler()
    asyncio.run(reconciler.play_list([make_track(1), make_track(2)]))
    before = reconciler.last_action_time
    adapter.queued.clear()
    result = asyncio.run(reconciler.append_queue([make_track(2)]))
    assert result.added == []
    assert adapter.queued == []
    assert reconciler.last_action_time == before


def test_sync_is_suppressed_right_after_a_local_action():
    clock = FakeClock()
    reconciler, adapter = _reconciler(clock=clock)
    asyncio.run(reconciler.play_list([make_track(1), make_track(2)]))
    adapter.queue = [make_track(9)]

    clock.advance(1.0)
    assert not asyncio.run(reconciler.sync_from_remote())
    assert _uris(reconciler.queue) == ["spotify:track:t2"]

    clock.advance(1.0)
    assert asyncio.run(reconciler.sync_from_remote())
    assert _uris(reconciler.queue) == ["spotify:track:t9"]
    assert reconciler.queue[0].origin == TrackOrigin.SYNC
    assert reconciler.current_track.origin == TrackOrigin.SYNC


class InterruptingAdapter(FakePlayerAdapter):
    """Lets the test run a local action while a sync fetch is in flight"""

    def __init__(self):
        super().__init__()
        self.during_fetch = None

    async def get_user_queue(self):
        if self.during_fetch is not None:
            action, self.during_fetch = self.during_fetch, None
            await action()
        return await super().get_user_queue()


def test_sync_fetched_during_a_local_action_is_discarded():
    clock = FakeClock()
    adapter = InterruptingAdapter()
    reconciler, _ = _reconciler(adapter, clock=clock)

    async def scenario():
        await reconciler.play_list([make_track(1), make_track(2), make_track(3)])
        clock.advance(10)
        adapter.queue = [make_track(9)]
        adapter.during_fetch = reconciler.next
        return await reconciler.sync_from_remote()

    assert not asyncio.run(scenario())
    assert reconciler.current_track.uri == "spotify:track:t2"
    assert _uris(reconciler.queue) == ["spotify:track:t3"]


def test_sync_with_nothing_playing():
    clock = FakeClock()
    reconciler, adapter = _reconciler(clock=clock)
    reconciler.is_playing = True
    clock.advance(5)
    assert asyncio.run(reconciler.sync_from_remote())
    assert not reconciler.is_playing
    assert reconciler.queue == []


def test_transport_failure_is_reported():
    surface = ErrorSurface()
    adapter = FakePlayerAdapter()
    reconciler, _ = _reconciler(adapter, surface=surface)

    async def failing_pause():
        raise NoActiveDeviceError("gone")

    adapter.pause = failing_pause
    assert not asyncio.run(reconciler.pause())
    assert not reconciler.is_playing
    assert surface.latest(Subsystem.PLAYER).code == "NO_DEVICE"


def test_next_advances_optimistically():
    reconciler, adapter = _reconciler()
    asyncio.run(reconciler.play_list([make_track(1), make_track(2)]))
    assert asyncio.run(reconciler.next())
    assert reconciler.current_track.uri == "spotify:track:t2"
    assert reconciler.remaining == 0


def test_poll_interval_follows_visibility():
    reconciler, _ = _reconciler()
    assert reconciler.poll_interval == 1.0
    reconciler.set_home_active(False)
    assert reconciler.poll_interval == 5.0


def test_auto_sync_starts_boundary_polling():
    reconciler, adapter = _reconciler()
    boundaries = []
    reconciler.add_boundary_listener(boundaries.append)

    async def scenario():
        reconciler.start_auto_sync()
        callback, interval = adapter.polling
        callback("report")
        reconciler.stop_auto_sync()
        return interval

    assert asyncio.run(scenario()) == 1.0
    assert boundaries == ["report"]
    assert adapter.polling is None


def test_wait_for_track_gives_up():
    adapter = FakePlayerAdapter()
    attempts = []

    async def counting_sleep(seconds):
        attempts.append(seconds)

    confirmed = asyncio.run(wait_for_track_to_play(adapter, "spotify:track:t1", sleep=counting_sleep))
    assert not confirmed
    assert len(attempts) == 17
    assert adapter.state_calls == 17

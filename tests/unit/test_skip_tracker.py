"""Tests for skip/listen classification."""

from moodify.dj.skip_tracker import SkipTracker, Strategy

from conftest import FakeClock, make_track


def _tracker(clock):
    return SkipTracker(clock=clock, wall_clock=lambda: 1_700_000_000.0)


def _play(tracker, clock, n, seconds):
    event = tracker.on_track_change(make_track(n))
    clock.advance(seconds)
    return event


def test_first_track_is_not_classified():
    clock = FakeClock()
    tracker = _tracker(clock)
    assert tracker.on_track_change(make_track(1)) is None
    assert tracker.current_track.uri == "spotify:track:t1"
    assert tracker.recent_events == []


def test_threshold_boundary_is_a_listen():
    clock = FakeClock()
    tracker = _tracker(clock)
    _play(tracker, clock, 1, 29.9)
    skipped = tracker.on_track_change(make_track(2))
    assert skipped.was_skipped
    assert skipped.track_id == "t1"

    clock.advance(30.0)
    listened = tracker.on_track_change(make_track(3))
    assert not listened.was_skipped
    assert listened.listen_duration_seconds == 30.0
    assert tracker.consecutive_listens == 1
    assert tracker.consecutive_skips == 0


def test_same_track_reported_twice_is_ignored():
    clock = FakeClock()
    tracker = _tracker(clock)
    _play(tracker, clock, 1, 5)
    assert tracker.on_track_change(make_track(1)) is None
    assert tracker.consecutive_skips == 0


def test_three_quick_changes_trigger_rescue():
    clock = FakeClock()
    tracker = _tracker(clock)
    for n in range(1, 4):
        _play(tracker, clock, n, 5)
    assert not tracker.should_trigger_rescue()
    tracker.on_track_change(make_track(4))
    assert tracker.consecutive_skips == 3
    assert tracker.should_trigger_rescue()


def test_listen_resets_skip_streak():
    clock = FakeClock()
    tracker = _tracker(clock)
    _play(tracker, clock, 1, 5)
    _play(tracker, clock, 2, 5)
    _play(tracker, clock, 3, 45)
    tracker.on_track_change(make_track(4))
    assert tracker.consecutive_skips == 0
    assert tracker.consecutive_listens == 1


def test_rescue_mode_suppresses_classification():
    clock = FakeClock()
    tracker = _tracker(clock)
    _play(tracker, clock, 1, 2)
    tracker.set_rescue_mode(True)
    assert tracker.on_track_change(make_track(2)) is None
    assert tracker.current_track.uri == "spotify:track:t2"
    assert tracker.recent_events == []

    tracker.set_rescue_mode(False)
    clock.advance(60)
    event = tracker.on_track_change(make_track(3))
    assert not event.was_skipped


def test_expansion_after_five_listens():
    clock = FakeClock()
    tracker = _tracker(clock)
    for n in range(1, 6):
        _play(tracker, clock, n, 120)
    tracker.on_track_change(make_track(6))
    assert tracker.should_expand()
    tracker.record_expansion_trigger()
    assert tracker.consecutive_listens == 0


def test_recent_events_are_bounded():
    clock = FakeClock()
    tracker = _tracker(clock)
    for n in range(15):
        _play(tracker, clock, n, 1)
    assert len(tracker.recent_events) == 10
    assert tracker.recent_events[-1].track_id == "t13"


def test_strategy_progression():
    tracker = _tracker(FakeClock())
    assert tracker.strategy == Strategy.CONSERVATIVE
    tracker.record_ai_trigger("Night Drive")
    assert tracker.strategy == Strategy.EXPLORATORY
    assert tracker.ai_history.last_picked_track == "Night Drive"
    tracker.record_ai_trigger(None)
    assert tracker.strategy == Strategy.REFINED
    tracker.record_ai_trigger(None)
    assert tracker.strategy == Strategy.REFINED


def test_reset_clears_everything():
    clock = FakeClock()
    tracker = _tracker(clock)
    _play(tracker, clock, 1, 1)
    _play(tracker, clock, 2, 1)
    tracker.record_ai_trigger("x")
    tracker.set_rescue_mode(True)
    tracker.reset()
    assert tracker.current_track is None
    assert tracker.recent_events == []
    assert tracker.ai_history.trigger_count == 0
    assert not tracker.rescue_mode

import sqlite3
from datetime import datetime, timedelta

import pytest

from moodify.app_db import AppDatabase, ensure_history_schema


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_preferences_round_trip(app_db):
    assert app_db.get_preference("theme") is None
    app_db.set_preference("theme", "dark")
    app_db.set_preference("theme", "light")
    assert app_db.get_preference("theme") == "light"
    app_db.delete_preference("theme")
    assert app_db.get_preference("theme") is None


def test_secrets_and_service_tokens(app_db):
    app_db.set_secret("openai_key", "sk-123")
    assert app_db.get_secret("openai_key") == "sk-123"
    app_db.delete_secret("openai_key")
    assert app_db.get_secret("openai_key") is None

    assert app_db.get_service_token("spotify") is None
    app_db.set_service_token("spotify", "tok", refresh_token="ref")
    assert app_db.get_service_token("spotify") == "tok"
    app_db.remove_service_token("spotify")
    assert app_db.get_service_token("spotify") is None


def test_record_play_listened_updates_counters(app_db):
    app_db.record_play("t1", "Song 1", "Artist 1", skipped=False, context={"vibe": "x"}, listen_ms=90_000)
    app_db.record_play("t1", "Song 1", "Artist 1", skipped=False)
    history = app_db.get_recent_history()
    assert len(history) == 2
    assert history[0]["play_count"] == 2
    assert history[1]["listen_ms"] == 90_000
    assert app_db.get_daily_history() == ["Song 1 - Artist 1"]
    assert app_db.get_daily_history_uris() == ["t1"]


def test_skipped_play_only_logs_history(app_db):
    app_db.record_play("t2", "Song 2", "Artist 2", skipped=True)
    assert app_db.get_daily_history() == []
    assert app_db.get_skip_rate(5) == 1
    row = app_db.get_recent_history(1)[0]
    assert row["skipped"] == 1
    assert row["play_count"] is None


def test_add_history_item_does_not_touch_counters(app_db):
    app_db.add_history_item("t3", "Song 3", "Artist 3", listen_ms=70_000)
    assert app_db.get_recent_history()[0]["track_name"] == "Song 3"
    assert app_db.get_daily_history_uris() == []


def test_daily_log_rolls_over_at_midnight():
    clock = MutableClock(datetime(2026, 3, 14, 23, 50))
    db = AppDatabase(":memory:", clock=clock)
    db.record_play("t1", "Song 1", "Artist 1", skipped=False)
    assert db.get_daily_history_uris() == ["t1"]

    clock.now += timedelta(minutes=20)
    assert db.get_daily_history_uris() == []
    assert db.get_preference("last_daily_clear") == "2026-03-15"
    db.close()


def test_skip_rate_validates_window(app_db):
    with pytest.raises(ValueError):
        app_db.get_skip_rate(-1)
    with pytest.raises(ValueError):
        app_db.get_skip_rate(2000)


def test_history_schema_adds_listen_ms(tmp_path):
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE listening_history (id INTEGER PRIMARY KEY AUTOINCREMENT, spotify_track_id TEXT NOT NULL, "
        "track_name TEXT, artist_name TEXT, played_at INTEGER, skipped INTEGER DEFAULT 0, context TEXT)"
    )
    conn.execute("INSERT INTO listening_history (spotify_track_id, track_name) VALUES ('t1', 'Old')")
    conn.commit()

    ensure_history_schema(conn)
    ensure_history_schema(conn)
    cols = {row[1] for row in conn.execute("PRAGMA table_info(listening_history)").fetchall()}
    assert "listen_ms" in cols
    assert conn.execute("SELECT listen_ms FROM listening_history").fetchone()[0] == 0
    conn.close()

    db = AppDatabase(str(path))
    assert db.get_recent_history()[0]["track_name"] == "Old"
    db.close()

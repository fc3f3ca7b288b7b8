"""
App Database - preferences, secrets and listening history

Manages the non-graph tables of the Moodify SQLite database. The graph
tables live in the same file and are owned by moodify.graph.store.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

LAST_DAILY_CLEAR_KEY = "last_daily_clear"


def _table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    ).fetchone()
    return row is not None


def _column_exists(conn: sqlite3.Connection, table_name: str, column_name: str) -> bool:
    try:
        rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    except sqlite3.OperationalError:
        return False
    return any(row[1] == column_name for row in rows)


def ensure_history_schema(conn: sqlite3.Connection) -> None:
    """Add listen_ms to listening_history tables created before it existed."""
    if not _table_exists(conn, "listening_history"):
        return
    if _column_exists(conn, "listening_history", "listen_ms"):
        return
    try:
        conn.execute("ALTER TABLE listening_history ADD COLUMN listen_ms INTEGER NOT NULL DEFAULT 0")
        conn.commit()
        logger.info("Added listening_history.listen_ms column")
    except sqlite3.OperationalError:
        conn.rollback()
        if not _column_exists(conn, "listening_history", "listen_ms"):
            raise


class AppDatabase:
    """Key/value and listening-history storage"""

    def __init__(self, db_path: str = "moodify.db", clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the app database

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            clock: Returns the current local datetime
        """
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.RLock()
        self.conn: Optional[sqlite3.Connection] = None
        self._init_database()

    def _init_database(self):
        """Create tables if they don't exist"""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_services (
                    service_name TEXT PRIMARY KEY,
                    access_token TEXT,
                    refresh_token TEXT,
                    expires_at INTEGER
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS app_secrets (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_preferences (
                    key TEXT PRIMARY KEY NOT NULL,
                    value TEXT
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS listening_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    spotify_track_id TEXT NOT NULL,
                    track_name TEXT,
                    artist_name TEXT,
                    played_at INTEGER,
                    skipped INTEGER DEFAULT 0,
                    context TEXT,
                    listen_ms INTEGER NOT NULL DEFAULT 0
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tracks (
                    spotify_track_id TEXT PRIMARY KEY,
                    track_name TEXT,
                    artist_name TEXT,
                    play_count INTEGER DEFAULT 1,
                    last_played_at INTEGER
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS daily_play_log (
                    spotify_track_id TEXT PRIMARY KEY,
                    played_at INTEGER
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_played_at ON listening_history(played_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_track_id ON listening_history(spotify_track_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_tracks_play_count ON tracks(play_count)")
            self.conn.commit()
            ensure_history_schema(self.conn)

        logger.info(f"Initialized app database: {self.db_path}")

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    # Preferences
    def get_preference(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM user_preferences WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_preference(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO user_preferences (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self.conn.commit()

    def delete_preference(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM user_preferences WHERE key = ?", (key,))
            self.conn.commit()

    # Secrets
    def get_secret(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM app_secrets WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_secret(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO app_secrets (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self.conn.commit()

    def delete_secret(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM app_secrets WHERE key = ?", (key,))
            self.conn.commit()

    # Service tokens
    def set_service_token(self, service: str, token: str, refresh_token: Optional[str] = None,
                          expires_in_s: int = 3600) -> None:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO user_services (service_name, access_token, refresh_token, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(service_name) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at
                """,
                (service, token, refresh_token or None, self._now_ms() + expires_in_s * 1000),
            )
            self.conn.commit()

    def get_service_token(self, service: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                "SELECT access_token FROM user_services WHERE service_name = ?", (service,)
            ).fetchone()
        return row["access_token"] if row and row["access_token"] else None

    def remove_service_token(self, service: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM user_services WHERE service_name = ?", (service,))
            self.conn.commit()
        logger.info(f"Removed token for {service}")

    # Listening history
    def record_play(
        self,
        track_id: str,
        track_name: str,
        artist_name: str,
        skipped: bool,
        context: Optional[Dict[str, Any]] = None,
        listen_ms: int = 0,
    ) -> None:
        """
        Log a play; non-skipped plays also bump the track counter and the daily log

        Args:
            track_id: Spotify track id or URI
            track_name: Track title
            artist_name: Primary artist
            skipped: Whether the listener skipped it
            context: Free-form context (vibe, trigger) stored as JSON
            listen_ms: How long the track was heard
        """
        now = self._now_ms()
        with self._lock:
            self._roll_daily_log()
            try:
                self.conn.execute(
                    """
                    INSERT INTO listening_history
                        (spotify_track_id, track_name, artist_name, played_at, skipped, context, listen_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (track_id, track_name, artist_name, now, int(skipped), json.dumps(context or {}), listen_ms),
                )
                if not skipped:
                    self.conn.execute(
                        """
                        INSERT INTO tracks (spotify_track_id, track_name, artist_name, play_count, last_played_at)
                        VALUES (?, ?, ?, 1, ?)
                        ON CONFLICT(spotify_track_id) DO UPDATE SET
                            play_count = play_count + 1,
                            last_played_at = excluded.last_played_at
                        """,
                        (track_id, track_name, artist_name, now),
                    )
                    self.conn.execute(
                        "INSERT OR REPLACE INTO daily_play_log (spotify_track_id, played_at) VALUES (?, ?)",
                        (track_id, now),
                    )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def add_history_item(
        self,
        track_id: str,
        track_name: str,
        artist_name: str,
        skipped: bool = False,
        listen_ms: int = 0,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append a listening_history row without touching play counters"""
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO listening_history
                    (spotify_track_id, track_name, artist_name, played_at, skipped, context, listen_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (track_id, track_name, artist_name, self._now_ms(), int(skipped), json.dumps(context or {}), listen_ms),
            )
            self.conn.commit()

    def get_recent_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT h.*, t.play_count
                FROM listening_history h
                LEFT JOIN tracks t ON h.spotify_track_id = t.spotify_track_id
                ORDER BY h.played_at DESC, h.id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_skip_rate(self, minutes: int = 5) -> int:
        """Number of skips logged in the last `minutes` minutes"""
        if not isinstance(minutes, int) or minutes < 0 or minutes > 1440:
            raise ValueError(f"minutes must be an int in [0, 1440], got {minutes!r}")
        since = self._now_ms() - minutes * 60_000
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS count FROM listening_history WHERE skipped = 1 AND played_at > ?",
                (since,),
            ).fetchone()
        return int(row["count"])

    def _roll_daily_log(self) -> None:
        """Clear the daily play log once per calendar day"""
        today = self._clock().date().isoformat()
        with self._lock:
            if self.get_preference(LAST_DAILY_CLEAR_KEY) == today:
                return
            self.conn.execute("DELETE FROM daily_play_log")
            self.conn.commit()
            self.set_preference(LAST_DAILY_CLEAR_KEY, today)
        logger.info("New day, cleared daily play log")

    def get_daily_history(self) -> List[str]:
        """Tracks heard today as 'Title - Artist' strings for oracle prompts"""
        self._roll_daily_log()
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT t.track_name, t.artist_name
                FROM daily_play_log d
                JOIN tracks t ON d.spotify_track_id = t.spotify_track_id
                """
            ).fetchall()
        return [f"{row['track_name']} - {row['artist_name']}" for row in rows]

    def get_daily_history_uris(self) -> List[str]:
        self._roll_daily_log()
        with self._lock:
            rows = self.conn.execute("SELECT spotify_track_id FROM daily_play_log").fetchall()
        return [row["spotify_track_id"] for row in rows]

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

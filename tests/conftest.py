"""Test configuration, fakes and fixtures."""

import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from moodify.app_db import AppDatabase
from moodify.errors import MoodifyError, TransientError
from moodify.graph import GraphStore, TasteGraphService
from moodify.models import ExpansionResult, PlaybackState, RescueResult, Track, VibeOption
from moodify.player.adapter import RemotePlayerAdapter


def make_track(n, duration_ms: int = 200_000, **kwargs) -> Track:
    return Track(
        title=f"Song {n}",
        artist=f"Artist {n}",
        uri=f"spotify:track:t{n}",
        duration_ms=duration_ms,
        **kwargs,
    )


class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


class FakePlayerAdapter(RemotePlayerAdapter):
    """In-memory remote player."""

    def __init__(self):
        self.current: Optional[Track] = None
        self.queue: List[Track] = []
        self.is_playing = False
        self.progress_ms = 0
        self.known: Dict[str, Track] = {}
        self.search_results: Dict[str, List[Track]] = {}
        self.searches: List[str] = []
        self.played: List[List[str]] = []
        self.queued: List[str] = []
        self.play_error: Optional[MoodifyError] = None
        self.fail_uris = set()
        self.polling = None
        self.state_calls = 0

    def register(self, *tracks: Track) -> None:
        for track in tracks:
            self.known[track.uri] = track

    def _track(self, uri: str) -> Track:
        return self.known.get(uri) or Track(title=uri, artist="", uri=uri)

    async def get_current_state(self) -> Optional[PlaybackState]:
        self.state_calls += 1
        if self.current is None:
            return None
        return PlaybackState(track=self.current, is_playing=self.is_playing, progress_ms=self.progress_ms)

    async def play(self, uris=None) -> None:
        if self.play_error is not None:
            raise self.play_error
        if uris:
            self.played.append(list(uris))
            self.current = self._track(uris[0])
            self.queue = []
        self.is_playing = True

    async def pause(self) -> None:
        self.is_playing = False

    async def next(self) -> None:
        if self.queue:
            self.current = self.queue.pop(0)

    async def previous(self) -> None:
        return None

    async def add_to_queue(self, uri: str) -> None:
        if uri in self.fail_uris:
            raise TransientError(f"could not queue {uri}")
        self.queued.append(uri)
        self.queue.append(self._track(uri))

    async def get_user_queue(self) -> List[Track]:
        return list(self.queue)

    async def search_tracks(self, query: str, limit: int = 5) -> List[Track]:
        self.searches.append(query)
        return list(self.search_results.get(query, []))[:limit]

    def start_polling(self, on_boundary, interval: float = 1.0) -> None:
        self.polling = (on_boundary, interval)

    def stop_polling(self) -> None:
        self.polling = None


class FakeOracle:
    """Scripted recommendation oracle that records how it was called."""

    def __init__(self, lock=None, tracker=None):
        self.lock = lock
        self.tracker = tracker
        self.rescue_result = RescueResult()
        self.expansion_result = ExpansionResult()
        self.options: List[VibeOption] = []
        self.rescue_error: Optional[Exception] = None
        self.expansion_error: Optional[Exception] = None
        self.rescue_calls = []
        self.expansion_calls = []
        self.cleared = 0

    def clear_session(self) -> None:
        self.cleared += 1

    async def get_vibe_options(self, instruction: str = ""):
        return list(self.options)

    async def get_rescue_vibe(self, recent_skips, strategy):
        self.rescue_calls.append({
            "skips": list(recent_skips),
            "strategy": strategy,
            "lock_holder": self.lock.holder if self.lock else None,
            "rescue_mode": self.tracker.rescue_mode if self.tracker else None,
        })
        if self.rescue_error is not None:
            raise self.rescue_error
        return self.rescue_result

    async def expand_vibe(self, seed, mood_hint=None, exclude_uris=()):
        self.expansion_calls.append({"seed": seed, "mood": mood_hint})
        if self.expansion_error is not None:
            raise self.expansion_error
        return self.expansion_result


class FakeLibrary:
    """Saved-tracks library with artists and audio features."""

    def __init__(self, songs, artists=None, features=None, audio_error=None):
        self.songs = songs
        self.artists = artists or {}
        self.features = features or {}
        self.audio_error = audio_error
        self.first_page_empty = False

    def get_saved_tracks(self, limit=50, offset=0):
        if self.first_page_empty and offset == 0:
            return {"items": [], "total": len(self.songs)}
        page = self.songs[offset:offset + limit]
        return {"items": [{"track": s} for s in page], "total": len(self.songs)}

    def get_artists(self, ids):
        return [self.artists.get(i) for i in ids]

    def get_audio_features(self, ids):
        if self.audio_error is not None:
            raise self.audio_error
        return [self.features.get(i) for i in ids]


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 14, 15, 0, 0)


@pytest.fixture
def app_db(fixed_now):
    db = AppDatabase(":memory:", clock=lambda: fixed_now)
    yield db
    db.close()


@pytest.fixture
def graph_store(tmp_path):
    store = GraphStore(str(tmp_path / "graph.db"))
    yield store
    store.close()


@pytest.fixture
def graph(graph_store, app_db, fixed_now):
    return TasteGraphService(graph_store, app_db=app_db, clock=lambda: fixed_now)

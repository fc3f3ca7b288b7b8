"""
Remote Player Adapter - asyncio facade over the remote playback service

SpotifyPlayerAdapter runs the blocking SpotifyClient in worker threads with
a per-call timeout, so a hung request surfaces as a TransientError instead of
stalling the event loop. It also polls playback to detect track boundaries
(finished vs skipped) and reports them to a callback.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..errors import MoodifyError, TransientError
from ..models import PlaybackState, Track, TrackOrigin

logger = logging.getLogger(__name__)

FINISH_TOLERANCE_MS = 5000


class BoundaryKind(str, Enum):
    SKIP = "skip"
    FINISH = "finish"


@dataclass(frozen=True)
class BoundaryReport:
    kind: BoundaryKind
    track: Track
    listen_ms: int


BoundaryCallback = Callable[[BoundaryReport], None]


class RemotePlayerAdapter(abc.ABC):
    """What the DJ needs from a remote player"""

    @abc.abstractmethod
    async def get_current_state(self) -> Optional[PlaybackState]: ...

    @abc.abstractmethod
    async def play(self, uris: Optional[List[str]] = None) -> None: ...

    @abc.abstractmethod
    async def pause(self) -> None: ...

    @abc.abstractmethod
    async def next(self) -> None: ...

    @abc.abstractmethod
    async def previous(self) -> None: ...

    @abc.abstractmethod
    async def add_to_queue(self, uri: str) -> None: ...

    @abc.abstractmethod
    async def get_user_queue(self) -> List[Track]: ...

    @abc.abstractmethod
    async def search_tracks(self, query: str, limit: int = 5) -> List[Track]: ...

    @abc.abstractmethod
    def start_polling(self, on_boundary: BoundaryCallback, interval: float = 1.0) -> None: ...

    @abc.abstractmethod
    def stop_polling(self) -> None: ...


class TrackBoundaryDetector:
    """
    Turns a stream of playback snapshots into finish/skip reports.

    A track that changes while its progress was within FINISH_TOLERANCE_MS
    of its duration finished; any earlier change is a skip.
    """

    def __init__(self, finish_tolerance_ms: int = FINISH_TOLERANCE_MS):
        self.finish_tolerance_ms = finish_tolerance_ms
        self._track: Optional[Track] = None
        self._progress_ms = 0

    def observe(self, state: Optional[PlaybackState]) -> Optional[BoundaryReport]:
        if state is None or state.track is None:
            return None

        if self._track is None:
            self._track = state.track
            self._progress_ms = state.progress_ms
            return None

        if state.track.uri == self._track.uri:
            self._progress_ms = max(self._progress_ms, state.progress_ms)
            return None

        previous, listened = self._track, self._progress_ms
        self._track = state.track
        self._progress_ms = state.progress_ms

        if previous.duration_ms and listened >= previous.duration_ms - self.finish_tolerance_ms:
            kind = BoundaryKind.FINISH
        else:
            kind = BoundaryKind.SKIP
        return BoundaryReport(kind=kind, track=previous, listen_ms=listened)


class SpotifyPlayerAdapter(RemotePlayerAdapter):
    def __init__(self, client, timeout: float = 10.0):
        """
        Args:
            client: SpotifyClient (blocking)
            timeout: Seconds before a remote call is abandoned
        """
        self.client = client
        self.timeout = timeout
        self.detector = TrackBoundaryDetector()
        self._poll_task: Optional[asyncio.Task] = None

    async def _call(self, func, *args):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(
                f"{getattr(func, '__name__', 'call')} timed out after {self.timeout:.0f}s", code="TIMEOUT"
            ) from e

    async def get_current_state(self) -> Optional[PlaybackState]:
        data = await self._call(self.client.get_playback_state)
        if not data:
            return None
        item = data.get("item")
        return PlaybackState(
            track=Track.from_spotify(item, origin=TrackOrigin.SYNC) if item else None,
            is_playing=bool(data.get("is_playing")),
            progress_ms=int(data.get("progress_ms") or 0),
        )

    async def play(self, uris: Optional[List[str]] = None) -> None:
        await self._call(self.client.play, uris)

    async def pause(self) -> None:
        await self._call(self.client.pause)

    async def next(self) -> None:
        await self._call(self.client.next_track)

    async def previous(self) -> None:
        await self._call(self.client.previous_track)

    async def add_to_queue(self, uri: str) -> None:
        await self._call(self.client.add_to_queue, uri)

    async def get_user_queue(self) -> List[Track]:
        data = await self._call(self.client.get_queue)
        return [Track.from_spotify(item, origin=TrackOrigin.SYNC) for item in data.get("queue") or [] if item]

    async def search_tracks(self, query: str, limit: int = 5) -> List[Track]:
        items = await self._call(self.client.search_tracks, query, limit)
        return [Track.from_spotify(item) for item in items if item]

    async def _poll(self, on_boundary: BoundaryCallback, interval: float) -> None:
        while True:
            try:
                report = self.detector.observe(await self.get_current_state())
            except MoodifyError as e:
                logger.warning(f"Boundary poll failed: {e}")
                report = None
            if report is not None:
                logger.debug(f"Track boundary: {report.kind.value} '{report.track.title}' after {report.listen_ms}ms")
                on_boundary(report)
            await asyncio.sleep(interval)

    def start_polling(self, on_boundary: BoundaryCallback, interval: float = 1.0) -> None:
        """Start boundary polling on the running loop; a second call is ignored"""
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(on_boundary, interval))

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

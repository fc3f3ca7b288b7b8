"""
Queue Reconciler - local view of playback kept in step with the remote player

Local actions are applied optimistically and stamp last_action_time. Remote
snapshots are applied only when no local action is in flight, none happened
in the last `suppress_seconds`, and none happened while the snapshot was
being fetched. context_version changes whenever the queue is replaced, so
slow callers can tell their view went stale.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from ..errors import MoodifyError, NotFoundError, Subsystem, service_error_from_exception
from ..models import Track, TrackOrigin
from .adapter import BoundaryReport, RemotePlayerAdapter
from .queue_manager import (
    AppendResult,
    QueueResult,
    Sleep,
    enqueue_tracks,
    wait_for_track_to_play,
)

logger = logging.getLogger(__name__)

SYNC_SUPPRESS_SECONDS = 1.5
ENQUEUE_DELAY_SECONDS = 0.15
APPEND_DELAY_SECONDS = 0.2
HOME_POLL_SECONDS = 1.0
BACKGROUND_POLL_SECONDS = 5.0


class QueueReconciler:
    def __init__(
        self,
        adapter: RemotePlayerAdapter,
        error_surface=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        suppress_seconds: float = SYNC_SUPPRESS_SECONDS,
        enqueue_delay: float = ENQUEUE_DELAY_SECONDS,
        append_delay: float = APPEND_DELAY_SECONDS,
        home_interval: float = HOME_POLL_SECONDS,
        background_interval: float = BACKGROUND_POLL_SECONDS,
        boundary_interval: float = 1.0,
    ):
        """
        Args:
            adapter: Remote player
            error_surface: ErrorSurface for playback failures (optional)
            clock: Monotonic clock used for the recency watermark
            sleep: Async sleep (tests pass a no-op)
            suppress_seconds: Remote syncs are ignored this long after a local action
            enqueue_delay: Pause between enqueue requests when replacing the queue
            append_delay: Pause between enqueue requests when appending
            home_interval: Sync interval while the home view is active
            background_interval: Sync interval otherwise
            boundary_interval: Track boundary poll interval
        """
        self.adapter = adapter
        self.error_surface = error_surface
        self._clock = clock
        self._sleep = sleep
        self.suppress_seconds = suppress_seconds
        self.enqueue_delay = enqueue_delay
        self.append_delay = append_delay
        self.home_interval = home_interval
        self.background_interval = background_interval
        self.boundary_interval = boundary_interval

        self.current_track: Optional[Track] = None
        self.queue: List[Track] = []
        self.is_playing = False
        self.progress_ms = 0
        self.is_loading = False
        self.is_queue_modifying = False
        self.last_action_time = 0.0
        self.context_version = 0

        self._action_seq = 0
        self._home_active = True
        self._sync_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[["QueueReconciler"], None]] = []
        self._boundary_listeners: List[Callable[[BoundaryReport], None]] = []

    # Listeners
    def add_listener(self, listener: Callable[["QueueReconciler"], None]) -> None:
        """Called with the reconciler after every applied state change"""
        self._listeners.append(listener)

    def add_boundary_listener(self, listener: Callable[[BoundaryReport], None]) -> None:
        self._boundary_listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _on_boundary(self, report: BoundaryReport) -> None:
        for listener in list(self._boundary_listeners):
            listener(report)

    def _mark_action(self) -> None:
        self.last_action_time = self._clock()
        self._action_seq += 1

    def _publish(self, exc: BaseException, context: str) -> None:
        if self.error_surface is not None:
            self.error_surface.publish(service_error_from_exception(exc, Subsystem.PLAYER, context))

    @property
    def remaining(self) -> int:
        return len(self.queue)

    # Optimistic writes
    async def play_track(self, track: Track) -> bool:
        """Play a single track, dropping the local queue"""
        self.context_version += 1
        self.current_track = track.with_origin(TrackOrigin.OPTIMISTIC)
        self.queue = []
        self.is_playing = True
        self.progress_ms = 0
        self._mark_action()
        self._notify()
        try:
            await self.adapter.play([track.uri])
        except MoodifyError as e:
            logger.error(f"Could not play '{track.title}': {e}")
            self._publish(e, "play_track")
            return False
        return True

    async def play_list(self, tracks: List[Track], start_index: int = 0) -> QueueResult:
        """
        Replace the queue: play tracks[start_index] now and queue the rest.

        Returns:
            QueueResult; success is False only when the play command failed
        """
        tracks = list(tracks[start_index:])
        if not tracks:
            return QueueResult(success=False, error=NotFoundError("No tracks to play", code="NO_RESULTS"))

        first, rest = tracks[0], tracks[1:]
        self.context_version += 1
        self.is_loading = True
        self.is_queue_modifying = True
        self.current_track = first.with_origin(TrackOrigin.OPTIMISTIC)
        self.queue = [t.with_origin(TrackOrigin.OPTIMISTIC) for t in rest]
        self.is_playing = True
        self.progress_ms = 0
        self._mark_action()
        self._notify()

        try:
            try:
                await self.adapter.play([first.uri])
            except MoodifyError as e:
                logger.error(f"Could not start '{first.title}': {e}")
                self._publish(e, "play_list")
                return QueueResult(success=False, error=e)

            await wait_for_track_to_play(self.adapter, first.uri, sleep=self._sleep)
            queued, failed, last_error = await enqueue_tracks(
                self.adapter, rest, self.enqueue_delay, sleep=self._sleep
            )
            if failed:
                self.queue = [t for t in self.queue if t.uri not in {f.uri for f in failed}]
                self._publish(last_error, f"enqueue ({len(failed)} of {len(rest)} failed)")
            logger.info(f"Playing '{first.title}', queued {len(queued)} tracks ({len(failed)} failed)")
            return QueueResult(success=True, playing_track=first, queued=queued, failed=failed)
        finally:
            self.is_loading = False
            self.is_queue_modifying = False
            self._mark_action()
            self._notify()

    async def append_queue(self, tracks: List[Track]) -> AppendResult:
        """Append tracks not already queued or playing"""
        seen = {t.uri for t in self.queue}
        if self.current_track is not None:
            seen.add(self.current_track.uri)

        result = AppendResult()
        candidates: List[Track] = []
        for track in tracks:
            if track.uri in seen:
                result.duplicates.append(track)
                continue
            seen.add(track.uri)
            candidates.append(track)

        if not candidates:
            logger.debug(f"Nothing to append ({len(result.duplicates)} duplicates)")
            return result

        self.is_queue_modifying = True
        try:
            queued, failed, last_error = await enqueue_tracks(
                self.adapter, candidates, self.append_delay, sleep=self._sleep
            )
            result.added = queued
            result.failed = failed
            self.queue.extend(t.with_origin(TrackOrigin.OPTIMISTIC) for t in queued)
            if last_error is not None:
                self._publish(last_error, "append_queue")
        finally:
            self.is_queue_modifying = False
            self._mark_action()
            self._notify()

        logger.info(
            f"Appended {len(result.added)} tracks "
            f"({len(result.failed)} failed, {len(result.duplicates)} duplicates)"
        )
        return result

    async def _transport(self, name: str, command) -> bool:
        try:
            await command()
        except MoodifyError as e:
            logger.error(f"{name} failed: {e}")
            self._publish(e, name)
            return False
        return True

    async def next(self) -> bool:
        if self.queue:
            self.current_track = self.queue.pop(0).with_origin(TrackOrigin.OPTIMISTIC)
            self.progress_ms = 0
        self._mark_action()
        self._notify()
        return await self._transport("next", self.adapter.next)

    async def previous(self) -> bool:
        self.progress_ms = 0
        self._mark_action()
        return await self._transport("previous", self.adapter.previous)

    async def pause(self) -> bool:
        self.is_playing = False
        self._mark_action()
        self._notify()
        return await self._transport("pause", self.adapter.pause)

    async def resume(self) -> bool:
        self.is_playing = True
        self._mark_action()
        self._notify()
        return await self._transport("resume", self.adapter.play)

    # Synchronized writes
    def _sync_suppressed(self) -> bool:
        if self.is_loading or self.is_queue_modifying:
            return True
        return self._clock() - self.last_action_time < self.suppress_seconds

    async def sync_from_remote(self) -> bool:
        """
        Overwrite local state from the player.

        Returns:
            True if a snapshot was applied
        """
        if self._sync_suppressed():
            return False

        started_seq = self._action_seq
        try:
            state = await self.adapter.get_current_state()
            remote_queue = await self.adapter.get_user_queue()
        except MoodifyError as e:
            logger.warning(f"Sync failed: {e}")
            self._publish(e, "sync")
            return False

        if self._action_seq != started_seq or self._sync_suppressed():
            logger.debug("Discarding stale sync: a local action happened while fetching")
            return False

        if state is None:
            self.is_playing = False
        else:
            self.current_track = state.track.with_origin(TrackOrigin.SYNC) if state.track else None
            self.is_playing = state.is_playing
            self.progress_ms = state.progress_ms
        self.queue = [t.with_origin(TrackOrigin.SYNC) for t in remote_queue]
        self._notify()
        return True

    # Polling
    def set_home_active(self, active: bool) -> None:
        self._home_active = active

    @property
    def poll_interval(self) -> float:
        return self.home_interval if self._home_active else self.background_interval

    async def _sync_loop(self) -> None:
        while True:
            await self.sync_from_remote()
            await asyncio.sleep(self.poll_interval)

    def start_auto_sync(self) -> None:
        """Start the sync loop and boundary polling on the running loop"""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop())
        self.adapter.start_polling(self._on_boundary, self.boundary_interval)
        logger.debug(f"Auto sync started ({self.poll_interval:.0f}s interval)")

    def stop_auto_sync(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            self._sync_task = None
        self.adapter.stop_polling()

"""
Auto-DJ - steers the listening session from skip/listen behavior

Two loops share one OperationLock:
  * rescue: after RESCUE_SKIP_THRESHOLD consecutive skips the queue is
    replaced with a new direction from the oracle. The lock is taken
    eagerly, before the first await, so nothing else can slip in.
  * expansion: when the queue runs low or the listener settles in, more
    tracks in the current mood are appended. It never competes with a
    running operation; it waits for it to finish and tries again later.

Failures are published to the error surface and never escape a loop.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Callable, List, Optional, Set

from ..errors import MoodifyError, NotFoundError, Subsystem, service_error_from_exception
from ..graph.models import GraphNode, NodeType
from ..logging_utils import set_session_id, truncate_list
from ..models import EntryStatus, SessionHistoryEntry, Track, VibeOption, uri_from_track_id
from ..player.adapter import BoundaryKind, BoundaryReport
from ..player.queue_manager import QueueResult
from .operation_lock import OperationLock
from .session import VibeSession
from .skip_tracker import (
    EXPANSION_LISTEN_THRESHOLD,
    RESCUE_SKIP_THRESHOLD,
    SkipEvent,
    SkipTracker,
)

logger = logging.getLogger(__name__)

LOW_QUEUE_THRESHOLD = 5
EXPANSION_COOLDOWN_SECONDS = 15.0
RESCUE_SKIP_CONTEXT = 5
HISTORY_WINDOW = 50
MIN_RECORDED_LISTEN_MS = 60_000
FALLBACK_GENRES = 3
FALLBACK_REASON = "From your taste graph"


def _label(track: Track) -> str:
    return f"{track.title} - {track.artist}"


class AutoDJ:
    def __init__(
        self,
        player,
        oracle,
        graph,
        tracker: Optional[SkipTracker] = None,
        lock: Optional[OperationLock] = None,
        session: Optional[VibeSession] = None,
        error_surface=None,
        app_db=None,
        clock: Callable[[], float] = time.monotonic,
        rescue_threshold: int = RESCUE_SKIP_THRESHOLD,
        expansion_threshold: int = EXPANSION_LISTEN_THRESHOLD,
        low_queue_threshold: int = LOW_QUEUE_THRESHOLD,
        expansion_cooldown: float = EXPANSION_COOLDOWN_SECONDS,
        expansion_count: int = 5,
    ):
        """
        Args:
            player: QueueReconciler; every queue change goes through it
            oracle: RecommendationOracle
            graph: TasteGraphService
            tracker: Skip/listen tracker (a fresh one by default)
            lock: Operation lock shared by rescue and expansion
            session: Current vibe session
            error_surface: ErrorSurface for loop failures (optional)
            app_db: AppDatabase for listening history (optional)
            clock: Monotonic clock for the expansion cooldown
            rescue_threshold: Consecutive skips that trigger a rescue
            expansion_threshold: Consecutive listens that trigger an expansion
            low_queue_threshold: Queue length at or below which expansion runs
            expansion_cooldown: Minimum seconds between expansions
            expansion_count: Tracks appended by the graph fallback
        """
        self.player = player
        self.oracle = oracle
        self.graph = graph
        self.tracker = tracker or SkipTracker()
        self.lock = lock or OperationLock()
        self.session = session or VibeSession()
        self.error_surface = error_surface
        self.app_db = app_db
        self._clock = clock
        self.rescue_threshold = rescue_threshold
        self.expansion_threshold = expansion_threshold
        self.low_queue_threshold = low_queue_threshold
        self.expansion_cooldown = expansion_cooldown
        self.expansion_count = expansion_count

        self._last_observed_uri: Optional[str] = None
        self._last_expansion_time: Optional[float] = None
        self._processed_listen_count = 0
        self._evaluating = False
        self._stop = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    def attach(self) -> None:
        """Subscribe to the player's state changes and track boundaries"""
        self.player.add_listener(self._on_state_change)
        self.player.add_boundary_listener(self.on_boundary)

    def _publish(self, exc: BaseException, subsystem: Subsystem, context: str) -> None:
        if self.error_surface is not None:
            self.error_surface.publish(service_error_from_exception(exc, subsystem, context))
        else:
            logger.error(f"{context} failed: {exc}")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for background history writes (tests, shutdown)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # Observation
    def _on_state_change(self, reconciler) -> None:
        self.observe_track(reconciler.current_track)
        if not self._evaluating:
            self._spawn(self.evaluate())

    def observe_track(self, track: Optional[Track]) -> Optional[SkipEvent]:
        """Feed a newly playing track to the tracker; repeats are ignored"""
        if track is None or track.uri == self._last_observed_uri:
            return None
        self._last_observed_uri = track.uri
        event = self.tracker.on_track_change(track)
        if event is not None and not event.was_skipped:
            self._spawn(asyncio.to_thread(self._record_listen, event))
        return event

    def _record_listen(self, event: SkipEvent) -> None:
        node = self.graph.resolve_node(
            NodeType.SONG, event.track_name, event.track_id or None, {"artist": event.artist}
        )
        if node is not None:
            self.graph.record_play(node.id)
        if self.app_db is None:
            return
        try:
            self.app_db.add_history_item(
                uri_from_track_id(event.track_id),
                event.track_name,
                event.artist,
                skipped=False,
                listen_ms=int(event.listen_duration_seconds * 1000),
                context={"vibe": self.session.mood},
            )
        except sqlite3.Error as e:
            self._publish(e, Subsystem.GRAPH, "add_history_item")

    def on_boundary(self, report: BoundaryReport) -> None:
        """Append the finished/skipped track to the session history"""
        track = report.track
        status = EntryStatus.PLAYED if report.kind == BoundaryKind.FINISH else EntryStatus.SKIPPED
        self.session.add(SessionHistoryEntry(
            uri=track.uri,
            title=track.title,
            artist=track.artist,
            status=status,
            listen_ms=report.listen_ms,
        ))
        if self.app_db is not None and report.listen_ms >= MIN_RECORDED_LISTEN_MS:
            self._spawn(asyncio.to_thread(self._record_boundary, report))

    def _record_boundary(self, report: BoundaryReport) -> None:
        track = report.track
        try:
            self.app_db.record_play(
                track.uri,
                track.title,
                track.artist,
                skipped=report.kind == BoundaryKind.SKIP,
                context={"vibe": self.session.mood},
                listen_ms=report.listen_ms,
            )
        except sqlite3.Error as e:
            self._publish(e, Subsystem.GRAPH, "record_play")

    # Rescue
    async def check_rescue(self) -> bool:
        """
        Replace the queue with a new direction after repeated skips.

        Returns:
            True if the queue was replaced
        """
        if not self.tracker.should_trigger_rescue(self.rescue_threshold) or self.lock.locked:
            return False

        # Everything up to try_acquire is synchronous
        self.tracker.set_rescue_mode(True)
        self.tracker.reset_skip_count()
        if not self.lock.try_acquire("rescue"):
            self.tracker.set_rescue_mode(False)
            return False

        skips = [e for e in self.tracker.recent_events if e.was_skipped][-RESCUE_SKIP_CONTEXT:]
        strategy = self.tracker.strategy
        logger.info(f"Rescue triggered after {len(skips)} skips ({strategy.value})")
        subsystem = Subsystem.ORACLE
        try:
            result = await self.oracle.get_rescue_vibe(skips, strategy)
            if not result.items:
                raise NotFoundError(f"No playable tracks for rescue vibe '{result.vibe}'", code="NO_RESULTS")

            subsystem = Subsystem.PLAYER
            queued = await self.player.play_list(result.items)
            if not queued.success:
                self.tracker.reset_skip_count()
                return False

            self.session.set_mood(result.vibe)
            self.tracker.record_ai_trigger(result.reasoning)
            logger.info(f"Rescued with '{result.vibe}': {len(queued.queued) + 1} tracks")
            return True
        except MoodifyError as e:
            self.tracker.reset_skip_count()
            self._publish(e, subsystem, "rescue")
            return False
        except Exception as e:
            logger.error(f"Rescue failed unexpectedly: {e}", exc_info=True)
            self.tracker.reset_skip_count()
            self._publish(e, subsystem, "rescue")
            return False
        finally:
            self.tracker.set_rescue_mode(False)
            self.lock.release("rescue")

    # Expansion
    def _heard_uris(self) -> Set[str]:
        heard = {t.uri for t in self.player.queue}
        heard.update(self.session.recent_uris(HISTORY_WINDOW))
        if self.player.current_track is not None:
            heard.add(self.player.current_track.uri)
        return heard

    def _filter_new(self, tracks: List[Track]) -> List[Track]:
        heard = self._heard_uris()
        fresh: List[Track] = []
        for track in tracks:
            if track.uri and track.uri not in heard:
                heard.add(track.uri)
                fresh.append(track)
        return fresh

    async def check_expansion(self) -> bool:
        """
        Append tracks when the queue runs low or the listener keeps listening.

        Returns:
            True if tracks were appended
        """
        remaining = self.player.remaining
        listens = self.tracker.consecutive_listens
        low_queue = 0 < remaining <= self.low_queue_threshold
        listen_trigger = listens >= self.expansion_threshold and listens != self._processed_listen_count
        if not (low_queue or listen_trigger):
            return False

        now = self._clock()
        if self._last_expansion_time is not None and now - self._last_expansion_time < self.expansion_cooldown:
            return False

        if self.lock.locked:
            logger.debug(f"Expansion waiting for {self.lock.holder}")
            await self.lock.wait_for_current()
            return False

        self._last_expansion_time = now
        if listen_trigger:
            self._processed_listen_count = listens
        reason = "listen streak" if listen_trigger else f"{remaining} tracks left"
        logger.info(f"Expansion triggered ({reason})")
        return await self.lock.acquire(lambda: self._expand(listen_trigger), "expansion")

    async def _expand(self, listen_trigger: bool) -> bool:
        seed = self.player.current_track
        if seed is None:
            return False
        version = self.player.context_version

        result = None
        try:
            result = await self.oracle.expand_vibe(seed, self.session.mood, sorted(self._heard_uris()))
        except MoodifyError as e:
            self._publish(e, Subsystem.ORACLE, "expansion")
        except Exception as e:
            logger.error(f"Expansion request failed unexpectedly: {e}", exc_info=True)
            self._publish(e, Subsystem.ORACLE, "expansion")

        if self.player.context_version != version:
            logger.info("Queue was replaced while expanding; dropping results")
            return False

        added = 0
        fresh = self._filter_new(result.items) if result is not None else []
        if fresh:
            appended = await self.player.append_queue(fresh)
            added = len(appended.added)
            if added:
                logger.info(f"Expansion queued: {truncate_list(appended.added, format_fn=_label)}")
            if added and result.mood:
                self.session.set_mood(result.mood)

        if not added:
            added = await self._graph_fallback(seed, version)

        if added and listen_trigger:
            self.tracker.record_expansion_trigger()
            self._processed_listen_count = 0
        return added > 0

    async def _graph_fallback(self, seed: Track, version: int) -> int:
        """Queue songs from the taste graph when the oracle has nothing"""
        heard = self._heard_uris()
        candidates: List[GraphNode] = []

        node = await asyncio.to_thread(self.graph.find_by_external_id, seed.track_id)
        if node is not None:
            suggested = await asyncio.to_thread(self.graph.get_next_suggested_node, node.id)
            if suggested is not None and suggested.uri:
                candidates.append(suggested)

        top = await asyncio.to_thread(self.graph.get_top_genres, FALLBACK_GENRES)
        if top:
            songs = await asyncio.to_thread(
                self.graph.get_songs_by_genres, [g.name for g in top], self.expansion_count, heard
            )
            candidates.extend(songs)

        if self.player.context_version != version:
            return 0

        tracks = self._filter_new([
            Track(title=n.name, artist=n.artist or "", uri=n.uri, reason=FALLBACK_REASON)
            for n in candidates if n.uri
        ])[:self.expansion_count]
        if not tracks:
            logger.info("Graph fallback found nothing new to queue")
            return 0

        appended = await self.player.append_queue(tracks)
        logger.info(f"Graph fallback queued: {truncate_list(appended.added, format_fn=_label)}")
        return len(appended.added)

    # Loop
    async def evaluate(self) -> None:
        """One pass: rescue first, expansion if no rescue happened"""
        if self._evaluating:
            return
        self._evaluating = True
        try:
            if not await self.check_rescue():
                await self.check_expansion()
        except Exception as e:
            logger.error(f"Auto-DJ evaluation failed: {e}", exc_info=True)
            self._publish(e, Subsystem.PLAYER, "evaluate")
        finally:
            self._evaluating = False

    async def run(self, interval: float = 2.0) -> None:
        """Evaluate every `interval` seconds until stop()"""
        self._stop.clear()
        logger.info(f"Auto-DJ running (every {interval:.1f}s)")
        while not self._stop.is_set():
            await self.evaluate()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Auto-DJ stopped")

    def stop(self) -> None:
        self._stop.set()

    # Vibes
    async def choose_vibe(self, instruction: str = "") -> List[VibeOption]:
        try:
            return await self.oracle.get_vibe_options(instruction)
        except MoodifyError as e:
            self._publish(e, Subsystem.ORACLE, "vibe options")
            return []

    async def start_vibe(self, name: str, tracks: List[Track]) -> QueueResult:
        """
        Begin a listener-chosen vibe: commit the previous session, reset
        tracking and play `tracks`.
        """
        summary = await asyncio.to_thread(self.session.start_vibe, name, self.graph)
        if summary:
            logger.info(f"Previous vibe committed ({summary.songs} songs)")
        self.tracker.reset()
        self.oracle.clear_session()
        self._last_observed_uri = None
        self._last_expansion_time = None
        self._processed_listen_count = 0
        set_session_id(self.session.session_id)
        logger.info(f"Starting vibe '{name}' with {len(tracks)} tracks")
        return await self.player.play_list(tracks)

    async def start_vibe_option(self, option: VibeOption) -> QueueResult:
        """Start a vibe from its seed track, extended by the oracle when possible"""
        tracks = [option.track]
        try:
            expansion = await self.oracle.expand_vibe(option.track, option.description)
            tracks.extend(t for t in expansion.items if t.uri != option.track.uri)
        except MoodifyError as e:
            self._publish(e, Subsystem.ORACLE, "vibe start")
        return await self.start_vibe(option.title, tracks)

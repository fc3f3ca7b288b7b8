"""
Skip/Listen Tracker - classifies how long each track was heard

NONE -> TRACKING(track) -> on the next track change the dwell time is
compared with the skip threshold, a SkipEvent is emitted and the new track
becomes the tracked one. Rescue mode suppresses classification so tracks
the DJ itself swaps in are not counted as listener skips.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

from ..models import Track

logger = logging.getLogger(__name__)

SKIP_THRESHOLD_SECONDS = 30.0
RESCUE_SKIP_THRESHOLD = 3
EXPANSION_LISTEN_THRESHOLD = 5
RECENT_EVENTS_LIMIT = 10


class Strategy(str, Enum):
    CONSERVATIVE = "conservative"
    EXPLORATORY = "exploratory"
    REFINED = "refined"


@dataclass(frozen=True)
class SkipEvent:
    track_id: str
    track_name: str
    artist: str
    listen_duration_seconds: float
    timestamp: float
    was_skipped: bool


@dataclass
class AITriggerHistory:
    trigger_count: int = 0
    last_trigger_time: float = 0.0
    last_picked_track: Optional[str] = None

    @property
    def strategy(self) -> Strategy:
        """First rescue stays close to the listener, the second explores, then refine"""
        if self.trigger_count == 0:
            return Strategy.CONSERVATIVE
        if self.trigger_count == 1:
            return Strategy.EXPLORATORY
        return Strategy.REFINED


class SkipTracker:
    """Per-process skip/listen counters for the current listening session"""

    def __init__(
        self,
        skip_threshold_seconds: float = SKIP_THRESHOLD_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.skip_threshold_seconds = skip_threshold_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        self.current_track: Optional[Track] = None
        self.started_at: Optional[float] = None
        self._recent: Deque[SkipEvent] = deque(maxlen=RECENT_EVENTS_LIMIT)
        self.consecutive_skips = 0
        self.consecutive_listens = 0
        self.ai_history = AITriggerHistory()
        self.rescue_mode = False

    @property
    def recent_events(self) -> List[SkipEvent]:
        return list(self._recent)

    @property
    def strategy(self) -> Strategy:
        return self.ai_history.strategy

    def on_track_start(self, track: Track) -> None:
        self.current_track = track
        self.started_at = self._clock()

    def on_track_change(self, track: Track) -> Optional[SkipEvent]:
        """
        Record that `track` is now playing.

        Returns:
            The SkipEvent for the previous track, or None when nothing was
            classified (first track, same track reported again, rescue mode)
        """
        previous = self.current_track
        if previous is not None and previous.uri == track.uri:
            return None

        if previous is None or self.started_at is None:
            self.on_track_start(track)
            return None

        if self.rescue_mode:
            logger.debug(f"Rescue mode: not classifying '{previous.title}'")
            self.on_track_start(track)
            return None

        duration = self._clock() - self.started_at
        event = SkipEvent(
            track_id=previous.track_id,
            track_name=previous.title or "Unknown",
            artist=previous.artist or "Unknown",
            listen_duration_seconds=duration,
            timestamp=self._wall_clock(),
            was_skipped=duration < self.skip_threshold_seconds,
        )
        self._recent.append(event)

        if event.was_skipped:
            self.consecutive_skips += 1
            self.consecutive_listens = 0
        else:
            self.consecutive_skips = 0
            self.consecutive_listens += 1

        logger.debug(
            f"{'Skipped' if event.was_skipped else 'Listened'} '{event.track_name}' "
            f"after {duration:.1f}s (skips={self.consecutive_skips}, listens={self.consecutive_listens})"
        )
        self.on_track_start(track)
        return event

    def should_trigger_rescue(self, threshold: int = RESCUE_SKIP_THRESHOLD) -> bool:
        return self.consecutive_skips >= threshold

    def should_expand(self, threshold: int = EXPANSION_LISTEN_THRESHOLD) -> bool:
        return self.consecutive_listens >= threshold

    def record_ai_trigger(self, picked_track: Optional[str]) -> None:
        self.ai_history.trigger_count += 1
        self.ai_history.last_trigger_time = self._wall_clock()
        self.ai_history.last_picked_track = picked_track
        self.consecutive_skips = 0
        self.consecutive_listens = 0
        logger.info(f"AI trigger #{self.ai_history.trigger_count}, next strategy: {self.strategy.value}")

    def record_expansion_trigger(self) -> None:
        self.consecutive_listens = 0

    def reset_skip_count(self) -> None:
        self.consecutive_skips = 0

    def set_rescue_mode(self, enabled: bool) -> None:
        self.rescue_mode = enabled

    def reset(self) -> None:
        """Start a new listening session"""
        self.current_track = None
        self.started_at = None
        self._recent.clear()
        self.consecutive_skips = 0
        self.consecutive_listens = 0
        self.ai_history = AITriggerHistory()
        self.rescue_mode = False

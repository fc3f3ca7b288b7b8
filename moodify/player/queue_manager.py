"""
Queue Manager - sequential queue writes against the remote player

The Web API has no "replace queue" call: a new queue is built by playing the
first track alone, waiting until the player reports it, then enqueueing the
rest one request at a time with a short pause so the player keeps the order.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from ..errors import MoodifyError
from ..models import Track

logger = logging.getLogger(__name__)

CONFIRM_POLL_SECONDS = 0.3
CONFIRM_TIMEOUT_SECONDS = 5.0

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class QueueResult:
    success: bool
    playing_track: Optional[Track] = None
    queued: List[Track] = field(default_factory=list)
    failed: List[Track] = field(default_factory=list)
    error: Optional[MoodifyError] = None


@dataclass
class AppendResult:
    added: List[Track] = field(default_factory=list)
    failed: List[Track] = field(default_factory=list)
    duplicates: List[Track] = field(default_factory=list)


async def wait_for_track_to_play(
    adapter,
    uri: str,
    timeout: float = CONFIRM_TIMEOUT_SECONDS,
    interval: float = CONFIRM_POLL_SECONDS,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Poll the player until `uri` is the current track.

    Returns:
        True once the player reports the track, False after `timeout`
    """
    attempts = max(1, int(round(timeout / interval)))
    for _ in range(attempts):
        try:
            state = await adapter.get_current_state()
        except MoodifyError as e:
            logger.debug(f"Playback check failed while waiting for {uri}: {e}")
            state = None
        if state is not None and state.track is not None and state.track.uri == uri:
            return True
        await sleep(interval)
    logger.warning(f"Player did not confirm {uri} within {timeout:.1f}s")
    return False


async def enqueue_tracks(
    adapter,
    tracks: List[Track],
    delay: float,
    sleep: Sleep = asyncio.sleep,
) -> Tuple[List[Track], List[Track], Optional[MoodifyError]]:
    """
    Add tracks to the remote queue one by one.

    Returns:
        (queued, failed, last error)
    """
    queued: List[Track] = []
    failed: List[Track] = []
    last_error: Optional[MoodifyError] = None
    for i, track in enumerate(tracks):
        if i > 0 and delay > 0:
            await sleep(delay)
        try:
            await adapter.add_to_queue(track.uri)
            queued.append(track)
        except MoodifyError as e:
            logger.warning(f"Could not queue '{track.title}' ({track.uri}): {e}")
            failed.append(track)
            last_error = e
    return queued, failed, last_error

"""
Vibe Session - the ordered history of one user-chosen vibe

A session is committed to the taste graph and cleared when the listener
picks a new vibe. Rescue only relabels the mood; the history stays so the
eventual commit still sees everything that was played.
"""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from ..graph.models import CommitSummary, SessionSong
from ..models import EntryStatus, SessionHistoryEntry, track_id_from_uri

logger = logging.getLogger(__name__)


class VibeSession:
    def __init__(self, mood: Optional[str] = None):
        self.mood = mood
        self.session_id = uuid.uuid4().hex[:8]
        self.history: List[SessionHistoryEntry] = []

    def add(self, entry: SessionHistoryEntry) -> None:
        self.history.append(entry)

    def recent(self, n: int) -> List[SessionHistoryEntry]:
        return self.history[-n:] if n > 0 else []

    def recent_uris(self, n: int) -> List[str]:
        return [e.uri for e in self.recent(n)]

    def set_mood(self, mood: Optional[str]) -> None:
        if mood and mood != self.mood:
            logger.info(f"Mood now '{mood}' (was '{self.mood}')")
            self.mood = mood

    def to_session_songs(self) -> List[SessionSong]:
        return [
            SessionSong(
                name=e.title,
                artist=e.artist,
                external_id=track_id_from_uri(e.uri) or None,
                listened=e.status == EntryStatus.PLAYED,
            )
            for e in self.history
        ]

    def commit(self, graph) -> Optional[CommitSummary]:
        """Write the session into the graph and clear it"""
        if not self.mood or not self.history:
            self.history = []
            return None
        summary = graph.commit_session(self.mood, self.to_session_songs())
        if summary:
            self.history = []
        else:
            logger.warning(f"Session '{self.mood}' was not committed; {len(self.history)} entries still pending")
        return summary

    def start_vibe(self, mood: str, graph=None) -> Optional[CommitSummary]:
        """Commit the current vibe (if any) and begin a fresh session for `mood`"""
        summary = self.commit(graph) if graph is not None else None
        if self.history:
            logger.warning(f"Discarding {len(self.history)} uncommitted entries from '{self.mood}'")
        self.history = []
        self.mood = mood
        self.session_id = uuid.uuid4().hex[:8]
        return summary

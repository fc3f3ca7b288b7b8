"""Value types shared by the player, oracle and Auto-DJ layers."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

TRACK_URI_PREFIX = "spotify:track:"


class TrackOrigin(str, Enum):
    API = "api"
    SYNC = "sync"
    OPTIMISTIC = "optimistic"


class EntryStatus(str, Enum):
    PLAYED = "played"
    SKIPPED = "skipped"


def track_id_from_uri(uri: str) -> str:
    """'spotify:track:abc' -> 'abc'; bare ids pass through"""
    if uri and uri.startswith(TRACK_URI_PREFIX):
        return uri[len(TRACK_URI_PREFIX):]
    return uri


def uri_from_track_id(track_id: str) -> str:
    if track_id.startswith(TRACK_URI_PREFIX):
        return track_id
    return f"{TRACK_URI_PREFIX}{track_id}"


@dataclass(frozen=True)
class Track:
    title: str
    artist: str
    uri: str
    artwork: Optional[str] = None
    duration_ms: int = 0
    origin: TrackOrigin = TrackOrigin.API
    reason: Optional[str] = None

    @property
    def track_id(self) -> str:
        return track_id_from_uri(self.uri)

    def with_origin(self, origin: TrackOrigin) -> "Track":
        return replace(self, origin=origin)

    @classmethod
    def from_spotify(cls, item: Dict[str, Any], origin: TrackOrigin = TrackOrigin.API) -> "Track":
        """Build a Track from a Web API track object"""
        artists = item.get("artists") or []
        images = (item.get("album") or {}).get("images") or []
        return cls(
            title=item.get("name", ""),
            artist=artists[0].get("name", "") if artists else "",
            uri=item.get("uri") or uri_from_track_id(item.get("id", "")),
            artwork=images[0].get("url") if images else None,
            duration_ms=int(item.get("duration_ms") or 0),
            origin=origin,
        )


@dataclass
class SessionHistoryEntry:
    uri: str
    title: str
    artist: str
    status: EntryStatus
    listen_ms: int = 0
    liked: bool = False

    @property
    def listened(self) -> bool:
        return self.status == EntryStatus.PLAYED


@dataclass(frozen=True)
class PlaybackState:
    track: Optional[Track]
    is_playing: bool
    progress_ms: int = 0


@dataclass(frozen=True)
class VibeOption:
    id: str
    title: str
    description: str
    track: Track
    reason: Optional[str] = None


@dataclass
class ExpansionResult:
    items: List[Track] = field(default_factory=list)
    mood: Optional[str] = None


@dataclass
class RescueResult:
    items: List[Track] = field(default_factory=list)
    vibe: str = ""
    reasoning: str = ""

"""
Taste graph value types.

Node attributes are stored as a JSON blob in graph_nodes.data; at the API
boundary they are parsed into one dataclass per node type so callers never
deal with loosely-typed dicts. Keys a payload does not know about are kept
in `extra` so rows written by older versions survive a round trip.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class NodeType(str, Enum):
    SONG = "SONG"
    ARTIST = "ARTIST"
    VIBE = "VIBE"
    GENRE = "GENRE"
    AUDIO_FEATURE = "AUDIO_FEATURE"


class EdgeType(str, Enum):
    SIMILAR = "SIMILAR"
    NEXT = "NEXT"
    RELATED = "RELATED"
    HAS_FEATURE = "HAS_FEATURE"
    HAS_GENRE = "HAS_GENRE"


AUDIO_FEATURE_NAMES = (
    "energy", "valence", "danceability", "tempo", "acousticness", "instrumentalness",
)


@dataclass
class SongAttributes:
    artist: Optional[str] = None
    energy: Optional[float] = None
    valence: Optional[float] = None
    danceability: Optional[float] = None
    tempo: Optional[float] = None
    acousticness: Optional[float] = None
    instrumentalness: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_audio(self) -> bool:
        return self.energy is not None


@dataclass
class ArtistAttributes:
    genres: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VibeAttributes:
    description: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenreAttributes:
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AudioFeatureAttributes:
    value: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


NodeAttributes = Union[
    SongAttributes, ArtistAttributes, VibeAttributes, GenreAttributes, AudioFeatureAttributes
]

_ATTRIBUTE_TYPES = {
    NodeType.SONG: SongAttributes,
    NodeType.ARTIST: ArtistAttributes,
    NodeType.VIBE: VibeAttributes,
    NodeType.GENRE: GenreAttributes,
    NodeType.AUDIO_FEATURE: AudioFeatureAttributes,
}


def attributes_from_dict(node_type: NodeType, data: Optional[Dict[str, Any]]) -> NodeAttributes:
    """Build the typed payload for `node_type`; unknown keys land in `extra`"""
    cls = _ATTRIBUTE_TYPES[NodeType(node_type)]
    known = {f.name for f in fields(cls)} - {"extra"}
    data = dict(data or {})
    extra = dict(data.pop("extra", {}) or {})
    kwargs = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = value
        else:
            extra[key] = value
    return cls(extra=extra, **kwargs)


def attributes_to_dict(attrs: NodeAttributes) -> Dict[str, Any]:
    """Flatten a payload back to the stored JSON shape, dropping unset values"""
    raw = asdict(attrs)
    extra = raw.pop("extra", {}) or {}
    out = {k: v for k, v in raw.items() if v is not None}
    for key, value in extra.items():
        out.setdefault(key, value)
    return out


def merge_attributes(node_type: NodeType, current: NodeAttributes, updates: Dict[str, Any]) -> NodeAttributes:
    merged = attributes_to_dict(current)
    merged.update({k: v for k, v in updates.items() if v is not None})
    return attributes_from_dict(node_type, merged)


def parse_data_column(node_type: NodeType, raw: Optional[str]) -> NodeAttributes:
    try:
        data = json.loads(raw) if raw else {}
    except (TypeError, ValueError):
        data = {}
    if not isinstance(data, dict):
        data = {}
    return attributes_from_dict(node_type, data)


@dataclass
class GraphNode:
    id: int
    type: NodeType
    name: str
    external_id: Optional[str] = None
    attributes: NodeAttributes = field(default_factory=GenreAttributes)
    play_count: int = 0
    last_played_at: Optional[int] = None
    created_at: Optional[int] = None
    last_accessed: Optional[int] = None

    @property
    def uri(self) -> Optional[str]:
        if self.type != NodeType.SONG or not self.external_id:
            return None
        return f"spotify:track:{self.external_id}"

    @property
    def artist(self) -> Optional[str]:
        return getattr(self.attributes, "artist", None)


@dataclass(frozen=True)
class GraphEdge:
    source_id: int
    target_id: int
    type: EdgeType
    weight: float
    created_at: Optional[int] = None


@dataclass(frozen=True)
class GenreStat:
    name: str
    song_count: int
    total_weight: float


@dataclass(frozen=True)
class SessionSong:
    """One entry of a vibe session as handed to commit_session"""
    name: str
    artist: str
    external_id: Optional[str]
    listened: bool


@dataclass(frozen=True)
class CommitSummary:
    vibe_id: Optional[int]
    songs: int = 0
    listened: int = 0
    next_edges: int = 0

    def __bool__(self) -> bool:
        return self.vibe_id is not None


@dataclass
class TasteProfile:
    cluster_reps: List[GraphNode] = field(default_factory=list)
    top_genres: List[GenreStat] = field(default_factory=list)
    recent_vibes: List[str] = field(default_factory=list)
    audio_profile: Optional[Dict[str, float]] = None

    def as_prompt_context(self) -> Dict[str, Any]:
        return {
            "favorite_songs": [
                {"name": n.name, "artist": n.artist or "Unknown", "play_count": n.play_count}
                for n in self.cluster_reps
            ],
            "top_genres": [g.name for g in self.top_genres],
            "recent_vibes": list(self.recent_vibes),
            "audio_profile": self.audio_profile,
        }


@dataclass(frozen=True)
class IngestProgress:
    stage: str
    current: int
    total: int

"""
Taste Graph Service - learns listening taste as a weighted graph

Songs, artists, genres, vibes and audio features are nodes; listening
behavior creates and reinforces directed edges between them. Every public
operation traps persistence errors: it logs, publishes a graph error and
returns an empty result so a broken write never aborts the DJ loop.
"""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Sequence, Union

from ..errors import DataIntegrityError, Subsystem, service_error_from_exception
from ..logging_utils import stage_timer
from .ingest import INGESTED_PREFERENCE, IngestReport, LikedSongsIngestor
from .models import (
    CommitSummary,
    EdgeType,
    GenreStat,
    GraphNode,
    NodeAttributes,
    NodeType,
    SessionSong,
    TasteProfile,
    attributes_from_dict,
    attributes_to_dict,
    merge_attributes,
)
from .store import GraphStore

logger = logging.getLogger(__name__)

VIBE_EDGE_WEIGHT = 2.0
NEXT_EDGE_WEIGHT = 1.0
SUGGESTION_CANDIDATES = 10
CLUSTER_CANDIDATES = 50

AttrInput = Union[Dict[str, Any], NodeAttributes, None]


def _graph_operation(default_factory: Callable[[], Any]):
    """Trap sqlite errors, report them, and return `default_factory()` instead"""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"Graph operation {func.__name__} failed: {e}")
                self._publish(e, func.__name__)
                return default_factory()
        return wrapper
    return decorator


class TasteGraphService:
    """Node resolution, edge reinforcement, session commit and traversal"""

    def __init__(
        self,
        store: GraphStore,
        app_db=None,
        error_surface=None,
        reinforce_increment: float = 0.5,
        max_edge_weight: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            store: Graph persistence
            app_db: AppDatabase for the ingestion preference flag (optional)
            error_surface: ErrorSurface to publish graph failures to (optional)
            reinforce_increment: Weight added each time an existing edge is seen again
            max_edge_weight: Reinforcement saturates at this weight
            clock: Returns the current local datetime
        """
        self.store = store
        self.app_db = app_db
        self.error_surface = error_surface
        self.reinforce_increment = reinforce_increment
        self.max_edge_weight = max_edge_weight
        self._clock = clock

    # Helpers
    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def _midnight_ms(self) -> int:
        midnight = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
        return int(midnight.timestamp() * 1000)

    def _publish(self, exc: BaseException, context: str) -> None:
        if self.error_surface is not None:
            self.error_surface.publish(service_error_from_exception(exc, Subsystem.GRAPH, context))

    @staticmethod
    def _attrs_dict(attrs: AttrInput) -> Dict[str, Any]:
        if attrs is None:
            return {}
        if isinstance(attrs, dict):
            return attrs
        return attributes_to_dict(attrs)

    # Resolution
    def _heal_duplicates(self, node_type: NodeType, name: str, unlinked: List[GraphNode]) -> GraphNode:
        keep, dupes = unlinked[0], unlinked[1:]
        self.store.merge_nodes(keep.id, [d.id for d in dupes], self.max_edge_weight)
        exc = DataIntegrityError(
            f"merged {len(dupes)} duplicate {node_type.value} node(s) named {name!r} into #{keep.id}"
        )
        logger.warning(str(exc))
        self._publish(exc, "resolve_node")
        return self.store.get_node(keep.id)

    def _refresh(self, node: GraphNode, external_id: Optional[str], attrs: Dict[str, Any], now_ms: int) -> GraphNode:
        if external_id and node.external_id is None:
            self.store.set_external_id(node.id, external_id)
        if attrs:
            self.store.update_node_data(node.id, merge_attributes(node.type, node.attributes, attrs))
        self.store.touch_node(node.id, now_ms)
        return self.store.get_node(node.id)

    def _resolve_locked(
        self,
        node_type: NodeType,
        name: str,
        external_id: Optional[str],
        attrs: Dict[str, Any],
    ) -> GraphNode:
        now = self._now_ms()
        if external_id:
            node = self.store.find_by_external_id(external_id)
            if node:
                return self._refresh(node, None, attrs, now)

        rows = self.store.find_by_type_name(node_type, name)
        unlinked = [r for r in rows if r.external_id is None]
        if len(unlinked) > 1:
            healed = self._heal_duplicates(node_type, name, unlinked)
            rows = self.store.find_by_type_name(node_type, name)
            unlinked = [healed]

        if external_id:
            # A row already linked to a different external id is a different entity
            match = unlinked[0] if unlinked else None
        else:
            match = rows[0] if rows else None

        if match is not None:
            return self._refresh(match, external_id, attrs, now)

        node = self.store.insert_node(node_type, name, external_id, attributes_from_dict(node_type, attrs), now)
        logger.debug(f"Created {node_type.value} node #{node.id} '{name}'")
        return node

    def _resolve(
        self,
        node_type: NodeType,
        name: str,
        external_id: Optional[str] = None,
        attrs: AttrInput = None,
    ) -> GraphNode:
        node_type = NodeType(node_type)
        attrs_dict = self._attrs_dict(attrs)
        last_error: Optional[sqlite3.IntegrityError] = None
        for attempt in range(3):
            with self.store.lock:
                try:
                    return self._resolve_locked(node_type, name, external_id, attrs_dict)
                except sqlite3.IntegrityError as e:
                    # Another writer claimed the external id between lookup and insert
                    last_error = e
                    logger.warning(
                        f"Node insert race for {node_type.value} '{name}' "
                        f"(attempt {attempt + 1}/3), re-resolving: {e}"
                    )
        raise last_error

    @_graph_operation(lambda: None)
    def resolve_node(
        self,
        node_type: NodeType,
        name: str,
        external_id: Optional[str] = None,
        attrs: AttrInput = None,
    ) -> Optional[GraphNode]:
        """
        Find or create the node for an entity.

        Resolution order: external id, then (type, name) among rows without
        an external id (backfilling it), then a new node. Safe to call
        concurrently from several threads; duplicates left by an earlier
        race are merged into the oldest row.

        Args:
            node_type: Kind of node
            name: Display name (title, artist name, vibe label, genre)
            external_id: Provider id, when the entity has one
            attrs: Attributes to merge into the node's payload

        Returns:
            The resolved node, or None if the store failed
        """
        return self._resolve(node_type, name, external_id, attrs)

    def find_by_external_id(self, external_id: str) -> Optional[GraphNode]:
        try:
            return self.store.find_by_external_id(external_id)
        except sqlite3.Error as e:
            logger.error(f"Lookup of {external_id} failed: {e}")
            self._publish(e, "find_by_external_id")
            return None

    def get_node(self, node_id: int) -> Optional[GraphNode]:
        return self.store.get_node(node_id)

    # Edges and counters
    def _connect(self, source_id: int, target_id: int, edge_type: EdgeType, base_weight: float) -> float:
        return self.store.upsert_edge(
            source_id,
            target_id,
            EdgeType(edge_type),
            base_weight,
            self.reinforce_increment,
            self.max_edge_weight,
            self._now_ms(),
        )

    @_graph_operation(lambda: None)
    def connect_or_reinforce(
        self,
        source_id: int,
        target_id: int,
        edge_type: EdgeType,
        base_weight: float = 1.0,
    ) -> Optional[float]:
        """Create the edge at base_weight, or reinforce it if it already exists"""
        return self._connect(source_id, target_id, edge_type, base_weight)

    @_graph_operation(lambda: False)
    def record_play(self, node_id: int) -> bool:
        self.store.record_play(node_id, self._now_ms())
        return True

    @_graph_operation(lambda: None)
    def update_node_attributes(self, node_id: int, **values) -> Optional[GraphNode]:
        with self.store.lock:
            node = self.store.get_node(node_id)
            if node is None:
                return None
            self.store.update_node_data(node_id, merge_attributes(node.type, node.attributes, values))
            return self.store.get_node(node_id)

    # Session commit
    @_graph_operation(lambda: CommitSummary(vibe_id=None))
    def commit_session(self, vibe_name: str, songs: Sequence[SessionSong]) -> CommitSummary:
        """
        Fold a finished vibe session into the graph.

        Every song is linked to the vibe in both directions (RELATED).
        NEXT edges join consecutive songs only when both were listened;
        a skipped song breaks the chain. Listened songs get a play recorded.
        Runs as one transaction.
        """
        if not songs:
            logger.debug(f"Nothing to commit for vibe '{vibe_name}'")
            return CommitSummary(vibe_id=None)

        listened = 0
        next_edges = 0
        with stage_timer(f"Commit of vibe '{vibe_name}' ({len(songs)} songs)", logger):
            with self.store.transaction():
                vibe = self._resolve(NodeType.VIBE, vibe_name)
                prev_id: Optional[int] = None
                for song in songs:
                    node = self._resolve(
                        NodeType.SONG, song.name, song.external_id, {"artist": song.artist}
                    )
                    self._connect(vibe.id, node.id, EdgeType.RELATED, VIBE_EDGE_WEIGHT)
                    self._connect(node.id, vibe.id, EdgeType.RELATED, VIBE_EDGE_WEIGHT)

                    if not song.listened:
                        prev_id = None
                        continue

                    if prev_id is not None and prev_id != node.id:
                        self._connect(prev_id, node.id, EdgeType.NEXT, NEXT_EDGE_WEIGHT)
                        next_edges += 1
                    self.store.record_play(node.id, self._now_ms())
                    listened += 1
                    prev_id = node.id
                self.store.set_last_played(vibe.id, self._now_ms())

        logger.info(
            f"Committed vibe '{vibe_name}': {len(songs)} songs, {listened} listened, {next_edges} NEXT edges"
        )
        return CommitSummary(vibe_id=vibe.id, songs=len(songs), listened=listened, next_edges=next_edges)

    # Traversal
    @_graph_operation(list)
    def get_neighbors(self, node_id: int, limit: int = 5) -> List[GraphNode]:
        """Outgoing neighbors, heaviest edge first"""
        return [node for node, _ in self.store.outgoing(node_id, limit)]

    @_graph_operation(lambda: None)
    def get_next_suggested_node(
        self,
        node_id: int,
        exclude_ids: Collection[int] = (),
    ) -> Optional[GraphNode]:
        """
        Heaviest outgoing SONG neighbor not played since local midnight.

        Songs never played are eligible. Returns None when nothing qualifies.
        """
        excluded = set(exclude_ids)
        candidates = self.store.outgoing(
            node_id,
            SUGGESTION_CANDIDATES + len(excluded),
            target_type=NodeType.SONG,
            played_before_ms=self._midnight_ms(),
        )
        for node, _weight in candidates:
            if node.id not in excluded:
                return node
        return None

    @_graph_operation(list)
    def get_top_genres(self, limit: int = 10) -> List[GenreStat]:
        return self.store.top_genres(limit)

    @_graph_operation(list)
    def get_songs_by_genres(
        self,
        genres: Iterable[str],
        limit: int = 20,
        exclude: Collection[str] = (),
    ) -> List[GraphNode]:
        """
        Songs tagged with any of `genres`, not played today, ranked by genre weight.

        `exclude` may hold bare track ids or spotify:track: URIs.
        """
        excluded = set(exclude)
        rows = self.store.songs_by_genres(genres, self._midnight_ms(), limit + len(excluded))
        picked = [
            n for n in rows
            if n.external_id not in excluded and n.uri not in excluded
        ]
        return picked[:limit]

    @_graph_operation(list)
    def get_cluster_representatives(self, limit: int = 8) -> List[GraphNode]:
        """Most played songs, preferring one per artist, topped up to `limit`"""
        candidates = self.store.songs_by_play_count(CLUSTER_CANDIDATES)
        selected: List[GraphNode] = []
        artists = set()
        for node in candidates:
            if len(selected) >= limit:
                break
            if node.artist in artists:
                continue
            selected.append(node)
            artists.add(node.artist)

        if len(selected) < limit:
            chosen = {n.id for n in selected}
            for node in candidates:
                if len(selected) >= limit:
                    break
                if node.id not in chosen:
                    selected.append(node)
                    chosen.add(node.id)
        return selected

    @_graph_operation(list)
    def get_recent_vibes(self, limit: int = 5) -> List[str]:
        return self.store.recent_vibe_names(limit)

    @_graph_operation(lambda: None)
    def get_audio_profile(self) -> Optional[Dict[str, float]]:
        averages = self.store.audio_averages()
        if averages is None:
            return None
        energy, valence, danceability = averages
        return {
            "energy": round(energy, 2),
            "valence": round(valence, 2),
            "danceability": round(danceability, 2),
        }

    def get_taste_profile(self) -> TasteProfile:
        """Summary of the listener's taste for oracle prompts"""
        return TasteProfile(
            cluster_reps=self.get_cluster_representatives(6),
            top_genres=self.get_top_genres(8),
            recent_vibes=self.get_recent_vibes(5),
            audio_profile=self.get_audio_profile(),
        )

    # Maintenance
    @_graph_operation(lambda: False)
    def is_graph_populated(self) -> bool:
        return self.store.count_nodes(NodeType.SONG) > 0

    def is_ingested(self) -> bool:
        if self.app_db is None:
            return False
        return self.app_db.get_preference(INGESTED_PREFERENCE) == "true"

    @_graph_operation(lambda: False)
    def reset_graph(self) -> bool:
        """Delete every node and edge and forget that the library was ingested"""
        self.store.clear()
        if self.app_db is not None:
            self.app_db.delete_preference(INGESTED_PREFERENCE)
        logger.info("Taste graph reset")
        return True

    async def ingest_liked_songs(self, library, on_progress=None, batch_size: int = 50) -> IngestReport:
        """
        Import the user's saved tracks; see LikedSongsIngestor.

        A storage failure stops the import at the failing batch and returns
        the partial report with `failed` set; the library stays marked as
        not ingested.
        """
        ingestor = LikedSongsIngestor(self, library, batch_size=batch_size, on_progress=on_progress)
        with stage_timer("Liked songs ingestion", logger):
            return await ingestor.run()

"""
Liked songs ingestion - seeds the taste graph from the user's saved tracks

Phases:
  1. Page through saved tracks (50 per request)
  2. Fetch primary artist details for genres (50 ids per request)
  3. Create SONG/ARTIST/GENRE nodes with SONG->ARTIST (RELATED) and
     SONG->GENRE (HAS_GENRE) edges, one transaction per batch
  4. Audio features: HAS_FEATURE edges to one node per feature and SIMILAR
     edges chaining songs that fall into the same energy/valence/danceability
     bucket

Blocking calls run in worker threads; the event loop gets control back
between batches.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from ..errors import AuthenticationError, NotFoundError, TransientError
from ..logging_utils import ProgressLogger, RunSummary
from .models import AUDIO_FEATURE_NAMES, EdgeType, IngestProgress, NodeType, merge_attributes

if TYPE_CHECKING:
    from .service import TasteGraphService

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
ARTIST_BATCH = 50
AUDIO_BATCH = 100
TEMPO_CEILING = 200.0
INGESTED_PREFERENCE = "graph_ingested_liked"


@dataclass
class LikedSong:
    track_id: str
    name: str
    artist_id: str
    artist_name: str


@dataclass
class IngestReport:
    songs: int = 0
    artists: int = 0
    genres: int = 0
    artist_edges: int = 0
    genre_edges: int = 0
    feature_edges: int = 0
    similar_edges: int = 0
    audio_skipped: bool = False
    failed: bool = False


def audio_bucket(features: Dict[str, float]) -> Tuple[int, int, int]:
    """Three bins per dimension: <0.33, <0.66, rest"""
    def bin_of(value: float) -> int:
        if value < 0.33:
            return 0
        if value < 0.66:
            return 1
        return 2
    return (
        bin_of(features.get("energy") or 0.0),
        bin_of(features.get("valence") or 0.0),
        bin_of(features.get("danceability") or 0.0),
    )


def _chunks(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class LikedSongsIngestor:
    """Builds the graph from a saved-tracks library in bounded batches"""

    def __init__(
        self,
        graph: "TasteGraphService",
        library,
        batch_size: int = 50,
        on_progress: Optional[Callable[[IngestProgress], None]] = None,
    ):
        """
        Args:
            graph: Taste graph service to write into
            library: Object with get_saved_tracks(limit, offset),
                get_artists(ids) and get_audio_features(ids)
            batch_size: Songs written per transaction
            on_progress: Called with IngestProgress after each step
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.graph = graph
        self.library = library
        self.batch_size = batch_size
        self.on_progress = on_progress
        self.report = IngestReport()
        self._artist_nodes: Dict[str, int] = {}
        self._genre_nodes: Dict[str, int] = {}
        self._song_nodes: Dict[str, int] = {}

    def _progress(self, stage: str, current: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(IngestProgress(stage, current, total))

    async def _write(self, func, *args) -> None:
        """Run one write batch in a worker thread; its counters roll back with the transaction"""
        before = replace(self.report)
        try:
            await asyncio.to_thread(func, *args)
        except sqlite3.Error:
            self.report = before
            raise

    async def run(self) -> IngestReport:
        songs = await self._fetch_liked_songs()
        try:
            if songs:
                artists = await self._fetch_artists(songs)
                await self._build_links(songs, artists)
                await self._audio_phase(songs)

            if self.graph.app_db is not None:
                self.graph.app_db.set_preference(INGESTED_PREFERENCE, "true")
        except sqlite3.Error as e:
            logger.error(f"Ingestion stopped after {self.report.songs} songs: {e}")
            self.graph._publish(e, "ingest_liked_songs")
            self.report.failed = True
            return self.report

        summary = RunSummary("Liked songs ingestion", logger)
        for key, value in vars(self.report).items():
            summary.add(key, value)
        summary.log()
        self._progress("done", self.report.songs, self.report.songs)
        return self.report

    async def _fetch_liked_songs(self) -> List[LikedSong]:
        first = await asyncio.to_thread(self.library.get_saved_tracks, PAGE_SIZE, 0)
        total = int(first.get("total") or 0)
        items = first.get("items") or []
        if not items:
            if total > 0:
                raise TransientError(
                    f"Saved tracks returned no items despite total={total}", code="NETWORK_ERROR"
                )
            logger.info("No liked songs found (library is empty)")
            return []

        songs: List[LikedSong] = []
        seen = set()

        def take(page_items):
            for item in page_items:
                track = (item or {}).get("track") or {}
                track_id = track.get("id")
                if not track_id or track_id in seen:
                    continue
                seen.add(track_id)
                artists = track.get("artists") or [{}]
                primary = artists[0] or {}
                songs.append(LikedSong(
                    track_id=track_id,
                    name=track.get("name", ""),
                    artist_id=primary.get("id") or "",
                    artist_name=primary.get("name") or "Unknown",
                ))

        take(items)
        offset = len(items)
        self._progress("fetch", offset, total)
        while offset < total:
            page = await asyncio.to_thread(self.library.get_saved_tracks, PAGE_SIZE, offset)
            page_items = page.get("items") or []
            if not page_items:
                break
            take(page_items)
            offset += len(page_items)
            self._progress("fetch", offset, total)

        logger.info(f"Fetched {len(songs)} liked songs")
        return songs

    async def _fetch_artists(self, songs: List[LikedSong]) -> Dict[str, dict]:
        artist_ids = list(dict.fromkeys(s.artist_id for s in songs if s.artist_id))
        details: Dict[str, dict] = {}
        done = 0
        for chunk in _chunks(artist_ids, ARTIST_BATCH):
            results = await asyncio.to_thread(self.library.get_artists, chunk)
            for artist_id, artist in zip(chunk, results):
                if artist and artist.get("id"):
                    details[artist_id] = artist
            done += len(chunk)
            self._progress("artists", done, len(artist_ids))
        return details

    def _apply_song_batch(self, batch: List[LikedSong], artists: Dict[str, dict]) -> None:
        graph = self.graph
        with graph.store.transaction():
            for song in batch:
                song_node = graph._resolve(NodeType.SONG, song.name, song.track_id, {"artist": song.artist_name})
                self._song_nodes[song.track_id] = song_node.id
                self.report.songs += 1

                artist = artists.get(song.artist_id)
                if not artist:
                    continue
                artist_node_id = self._artist_nodes.get(artist["id"])
                if artist_node_id is None:
                    artist_node = graph._resolve(
                        NodeType.ARTIST, artist.get("name", song.artist_name), artist["id"],
                        {"genres": list(artist.get("genres") or [])},
                    )
                    artist_node_id = self._artist_nodes[artist["id"]] = artist_node.id
                    self.report.artists += 1
                graph._connect(song_node.id, artist_node_id, EdgeType.RELATED, 1.0)
                self.report.artist_edges += 1

                for genre in artist.get("genres") or []:
                    if not genre:
                        continue
                    genre_node_id = self._genre_nodes.get(genre)
                    if genre_node_id is None:
                        genre_node_id = self._genre_nodes[genre] = graph._resolve(NodeType.GENRE, genre).id
                        self.report.genres += 1
                    graph._connect(song_node.id, genre_node_id, EdgeType.HAS_GENRE, 1.0)
                    self.report.genre_edges += 1

    async def _build_links(self, songs: List[LikedSong], artists: Dict[str, dict]) -> None:
        progress = ProgressLogger(logger, total=len(songs), label="Graph build", unit="songs", every_n=200)
        done = 0
        for batch in _chunks(songs, self.batch_size):
            await self._write(self._apply_song_batch, batch, artists)
            done += len(batch)
            progress.update(len(batch))
            self._progress("graph", done, len(songs))
            await asyncio.sleep(0)
        progress.finish(
            f"Graph links: {len(self._artist_nodes)} artists, {len(self._genre_nodes)} genres"
        )

    def _apply_feature_batch(
        self,
        pairs: List[Tuple[int, Dict[str, float]]],
        buckets: Dict[Tuple[int, int, int], List[int]],
    ) -> None:
        graph = self.graph
        with graph.store.transaction():
            feature_nodes = {
                name: graph._resolve(NodeType.AUDIO_FEATURE, name).id for name in AUDIO_FEATURE_NAMES
            }
            for node_id, features in pairs:
                values = {name: features.get(name) for name in AUDIO_FEATURE_NAMES}
                node = graph.store.get_node(node_id)
                graph.store.update_node_data(node_id, merge_attributes(node.type, node.attributes, values))

                buckets.setdefault(audio_bucket(features), []).append(node_id)
                for name, value in values.items():
                    if not isinstance(value, (int, float)):
                        continue
                    weight = min(1.0, value / TEMPO_CEILING) if name == "tempo" else float(value)
                    graph._connect(node_id, feature_nodes[name], EdgeType.HAS_FEATURE, weight)
                    self.report.feature_edges += 1

    def _apply_similar_edges(self, buckets: Dict[Tuple[int, int, int], List[int]]) -> None:
        with self.graph.store.transaction():
            for node_ids in buckets.values():
                for left, right in zip(node_ids, node_ids[1:]):
                    self.graph._connect(left, right, EdgeType.SIMILAR, 1.0)
                    self.report.similar_edges += 1

    async def _audio_phase(self, songs: List[LikedSong]) -> None:
        track_ids = [s.track_id for s in songs if s.track_id in self._song_nodes]
        buckets: Dict[Tuple[int, int, int], List[int]] = {}
        done = 0
        for chunk in _chunks(track_ids, AUDIO_BATCH):
            try:
                features = await asyncio.to_thread(self.library.get_audio_features, chunk)
            except (AuthenticationError, NotFoundError) as e:
                logger.warning(f"Audio features unavailable, skipping audio phase: {e}")
                self.report.audio_skipped = True
                return
            pairs = [
                (self._song_nodes[track_id], feats)
                for track_id, feats in zip(chunk, features)
                if feats
            ]
            for batch in _chunks(pairs, self.batch_size):
                await self._write(self._apply_feature_batch, batch, buckets)
                await asyncio.sleep(0)
            done += len(chunk)
            self._progress("audio", done, len(track_ids))

        await self._write(self._apply_similar_edges, buckets)
        logger.info(f"Audio phase: {self.report.similar_edges} SIMILAR edges across {len(buckets)} buckets")

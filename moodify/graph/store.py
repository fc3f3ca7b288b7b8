"""
Graph Store - SQLite persistence for taste graph nodes and edges

One connection shared by worker threads; every statement runs under a
re-entrant lock so lookups and inserts from concurrent resolutions are
serialized. Timestamps are epoch milliseconds.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .models import (
    EdgeType,
    GenreStat,
    GraphEdge,
    GraphNode,
    NodeAttributes,
    NodeType,
    attributes_to_dict,
    parse_data_column,
)

logger = logging.getLogger(__name__)

UNIQUE_EXTERNAL_ID_INDEX = "idx_graph_nodes_spotify_id_unique"


def ensure_graph_schema(conn: sqlite3.Connection) -> None:
    """Create graph tables and indexes; tolerate legacy duplicate external ids."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS graph_nodes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            spotify_id TEXT,
            name TEXT,
            data TEXT,
            play_count INTEGER DEFAULT 0,
            last_played_at INTEGER,
            created_at INTEGER,
            last_accessed INTEGER
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS graph_edges (
            source_id INTEGER,
            target_id INTEGER,
            type TEXT,
            weight REAL DEFAULT 1.0,
            created_at INTEGER,
            FOREIGN KEY(source_id) REFERENCES graph_nodes(id),
            FOREIGN KEY(target_id) REFERENCES graph_nodes(id),
            UNIQUE(source_id, target_id, type)
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_graph_spotify_id ON graph_nodes(spotify_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_graph_nodes_type_name ON graph_nodes(type, name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_graph_edges_source ON graph_edges(source_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_graph_edges_target ON graph_edges(target_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_graph_edges_type ON graph_edges(type)")
    conn.commit()
    try:
        conn.execute(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_EXTERNAL_ID_INDEX} "
            "ON graph_nodes(spotify_id) WHERE spotify_id IS NOT NULL"
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        logger.warning(
            "graph_nodes has duplicate spotify_id values; unique index not created "
            "until the duplicates are merged"
        )


class GraphStore:
    """Node/edge storage with lookup, upsert and aggregate queries"""

    def __init__(self, db_path: str = "moodify.db"):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            ensure_graph_schema(self.conn)
        logger.info(f"Initialized graph store: {db_path}")

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one commit; nested use joins the outer transaction"""
        with self._lock:
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    def _row_to_node(self, row: sqlite3.Row) -> GraphNode:
        node_type = NodeType(row["type"])
        return GraphNode(
            id=row["id"],
            type=node_type,
            name=row["name"],
            external_id=row["spotify_id"],
            attributes=parse_data_column(node_type, row["data"]),
            play_count=row["play_count"] or 0,
            last_played_at=row["last_played_at"],
            created_at=row["created_at"],
            last_accessed=row["last_accessed"],
        )

    # Node lookup
    def get_node(self, node_id: int) -> Optional[GraphNode]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM graph_nodes WHERE id = ?", (node_id,)).fetchone()
        return self._row_to_node(row) if row else None

    def find_by_external_id(self, external_id: str) -> Optional[GraphNode]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM graph_nodes WHERE spotify_id = ? ORDER BY created_at, id LIMIT 1",
                (external_id,),
            ).fetchone()
        return self._row_to_node(row) if row else None

    def find_by_type_name(self, node_type: NodeType, name: str) -> List[GraphNode]:
        """All rows with this (type, name), oldest first"""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM graph_nodes WHERE type = ? AND name = ? ORDER BY created_at, id",
                (NodeType(node_type).value, name),
            ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def nodes_by_type(self, node_type: NodeType) -> List[GraphNode]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM graph_nodes WHERE type = ? ORDER BY id", (NodeType(node_type).value,)
            ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def count_nodes(self, node_type: Optional[NodeType] = None) -> int:
        with self._lock:
            if node_type is None:
                row = self.conn.execute("SELECT COUNT(*) FROM graph_nodes").fetchone()
            else:
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM graph_nodes WHERE type = ?", (NodeType(node_type).value,)
                ).fetchone()
        return int(row[0])

    # Node writes
    def insert_node(
        self,
        node_type: NodeType,
        name: str,
        external_id: Optional[str],
        attributes: NodeAttributes,
        now_ms: int,
    ) -> GraphNode:
        """Insert a node; raises sqlite3.IntegrityError if external_id is taken"""
        with self._lock:
            cursor = self.conn.execute(
                """
                INSERT INTO graph_nodes
                    (type, spotify_id, name, data, play_count, last_played_at, created_at, last_accessed)
                VALUES (?, ?, ?, ?, 0, NULL, ?, ?)
                """,
                (NodeType(node_type).value, external_id, name,
                 json.dumps(attributes_to_dict(attributes)), now_ms, now_ms),
            )
            self._commit()
            return self.get_node(cursor.lastrowid)

    def set_external_id(self, node_id: int, external_id: str) -> None:
        with self._lock:
            self.conn.execute("UPDATE graph_nodes SET spotify_id = ? WHERE id = ?", (external_id, node_id))
            self._commit()

    def update_node_data(self, node_id: int, attributes: NodeAttributes) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE graph_nodes SET data = ? WHERE id = ?",
                (json.dumps(attributes_to_dict(attributes)), node_id),
            )
            self._commit()

    def touch_node(self, node_id: int, now_ms: int) -> None:
        with self._lock:
            self.conn.execute("UPDATE graph_nodes SET last_accessed = ? WHERE id = ?", (now_ms, node_id))
            self._commit()

    def record_play(self, node_id: int, now_ms: int) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE graph_nodes SET play_count = play_count + 1, last_played_at = ? WHERE id = ?",
                (now_ms, node_id),
            )
            self._commit()

    def set_last_played(self, node_id: int, now_ms: int) -> None:
        with self._lock:
            self.conn.execute("UPDATE graph_nodes SET last_played_at = ? WHERE id = ?", (now_ms, node_id))
            self._commit()

    # Edges
    def upsert_edge(
        self,
        source_id: int,
        target_id: int,
        edge_type: EdgeType,
        base_weight: float,
        increment: float,
        max_weight: float,
        now_ms: int,
    ) -> float:
        """
        Insert an edge or reinforce the existing one.

        Reinforcement adds `increment`, saturating at `max_weight`; a weight
        never decreases.

        Returns:
            The edge weight after the write
        """
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO graph_edges (source_id, target_id, type, weight, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(source_id, target_id, type) DO UPDATE SET
                    weight = MAX(weight, MIN(weight + ?, ?))
                """,
                (source_id, target_id, EdgeType(edge_type).value, base_weight, now_ms, increment, max_weight),
            )
            self._commit()
            edge = self.get_edge(source_id, target_id, edge_type)
        return edge.weight if edge else base_weight

    def get_edge(self, source_id: int, target_id: int, edge_type: EdgeType) -> Optional[GraphEdge]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM graph_edges WHERE source_id = ? AND target_id = ? AND type = ?",
                (source_id, target_id, EdgeType(edge_type).value),
            ).fetchone()
        if not row:
            return None
        return GraphEdge(row["source_id"], row["target_id"], EdgeType(row["type"]), row["weight"], row["created_at"])

    def count_edges(
        self,
        source_id: Optional[int] = None,
        target_id: Optional[int] = None,
        edge_type: Optional[EdgeType] = None,
    ) -> int:
        clauses, params = [], []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if target_id is not None:
            clauses.append("target_id = ?")
            params.append(target_id)
        if edge_type is not None:
            clauses.append("type = ?")
            params.append(EdgeType(edge_type).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            row = self.conn.execute(f"SELECT COUNT(*) FROM graph_edges{where}", params).fetchone()
        return int(row[0])

    def outgoing(
        self,
        node_id: int,
        limit: int,
        target_type: Optional[NodeType] = None,
        played_before_ms: Optional[int] = None,
    ) -> List[Tuple[GraphNode, float]]:
        """Outgoing neighbors joined with their edge weight, heaviest first"""
        sql = """
            SELECT n.*, e.weight AS edge_weight
            FROM graph_edges e
            JOIN graph_nodes n ON e.target_id = n.id
            WHERE e.source_id = ?
        """
        params: list = [node_id]
        if target_type is not None:
            sql += " AND n.type = ?"
            params.append(NodeType(target_type).value)
        if played_before_ms is not None:
            sql += " AND COALESCE(n.last_played_at, 0) < ?"
            params.append(played_before_ms)
        sql += " ORDER BY e.weight DESC, n.id LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [(self._row_to_node(r), r["edge_weight"]) for r in rows]

    def merge_nodes(self, keep_id: int, drop_ids: Sequence[int], max_weight: float) -> None:
        """
        Fold duplicate nodes into `keep_id`.

        Edges are re-pointed with weights combined (capped at max_weight),
        play counts summed and the latest last_played_at kept.
        """
        with self.transaction():
            for drop_id in drop_ids:
                if drop_id == keep_id:
                    continue
                edges = self.conn.execute(
                    "SELECT * FROM graph_edges WHERE source_id = ? OR target_id = ?",
                    (drop_id, drop_id),
                ).fetchall()
                for edge in edges:
                    source = keep_id if edge["source_id"] == drop_id else edge["source_id"]
                    target = keep_id if edge["target_id"] == drop_id else edge["target_id"]
                    if source == target:
                        continue
                    self.conn.execute(
                        """
                        INSERT INTO graph_edges (source_id, target_id, type, weight, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(source_id, target_id, type) DO UPDATE SET
                            weight = MAX(weight, MIN(weight + excluded.weight, ?))
                        """,
                        (source, target, edge["type"], edge["weight"], edge["created_at"], max_weight),
                    )
                self.conn.execute(
                    "DELETE FROM graph_edges WHERE source_id = ? OR target_id = ?", (drop_id, drop_id)
                )
                dropped = self.conn.execute(
                    "SELECT play_count, last_played_at, spotify_id FROM graph_nodes WHERE id = ?", (drop_id,)
                ).fetchone()
                if dropped is None:
                    continue
                self.conn.execute(
                    """
                    UPDATE graph_nodes SET
                        play_count = play_count + ?,
                        last_played_at = MAX(COALESCE(last_played_at, 0), ?)
                    WHERE id = ?
                    """,
                    (dropped["play_count"] or 0, dropped["last_played_at"] or 0, keep_id),
                )
                self.conn.execute("DELETE FROM graph_nodes WHERE id = ?", (drop_id,))
                if dropped["spotify_id"]:
                    self.conn.execute(
                        "UPDATE graph_nodes SET spotify_id = ? WHERE id = ? AND spotify_id IS NULL",
                        (dropped["spotify_id"], keep_id),
                    )

    # Aggregates
    def top_genres(self, limit: int) -> List[GenreStat]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT gn.name, COUNT(DISTINCT ge.source_id) AS song_count, SUM(ge.weight) AS total_weight
                FROM graph_edges ge
                JOIN graph_nodes gn ON ge.target_id = gn.id
                WHERE ge.type = 'HAS_GENRE' AND gn.type = 'GENRE'
                GROUP BY gn.id
                ORDER BY total_weight DESC, song_count DESC, gn.name
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [GenreStat(r["name"], int(r["song_count"]), float(r["total_weight"])) for r in rows]

    def songs_by_genres(self, genres: Iterable[str], played_before_ms: int, limit: int) -> List[GraphNode]:
        names = list(genres)
        if not names:
            return []
        placeholders = ",".join("?" for _ in names)
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT sn.*, SUM(ge.weight) AS genre_weight
                FROM graph_nodes gn
                JOIN graph_edges ge ON ge.target_id = gn.id AND ge.type = 'HAS_GENRE'
                JOIN graph_nodes sn ON ge.source_id = sn.id AND sn.type = 'SONG'
                WHERE gn.type = 'GENRE' AND gn.name IN ({placeholders})
                  AND sn.spotify_id IS NOT NULL
                  AND COALESCE(sn.last_played_at, 0) < ?
                GROUP BY sn.id
                ORDER BY genre_weight DESC, sn.play_count DESC, sn.id
                LIMIT ?
                """,
                (*names, played_before_ms, limit),
            ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def songs_by_play_count(self, limit: int) -> List[GraphNode]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM graph_nodes WHERE type = 'SONG' ORDER BY play_count DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_node(r) for r in rows]

    def recent_vibe_names(self, limit: int) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT name FROM graph_nodes WHERE type = 'VIBE'
                ORDER BY COALESCE(last_played_at, 0) DESC, id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [r["name"] for r in rows]

    def audio_averages(self, limit: int = 100) -> Optional[Tuple[float, float, float]]:
        """Mean energy/valence/danceability over the most played songs with audio data"""
        with self._lock:
            row = self.conn.execute(
                """
                SELECT AVG(json_extract(data, '$.energy')) AS energy,
                       AVG(json_extract(data, '$.valence')) AS valence,
                       AVG(json_extract(data, '$.danceability')) AS danceability
                FROM (
                    SELECT data FROM graph_nodes
                    WHERE type = 'SONG' AND json_extract(data, '$.energy') IS NOT NULL
                    ORDER BY play_count DESC
                    LIMIT ?
                )
                """,
                (limit,),
            ).fetchone()
        if not row or row["energy"] is None:
            return None
        return float(row["energy"]), float(row["valence"] or 0), float(row["danceability"] or 0)

    def clear(self) -> None:
        with self.transaction():
            self.conn.execute("DELETE FROM graph_edges")
            self.conn.execute("DELETE FROM graph_nodes")
        logger.info("Graph cleared")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

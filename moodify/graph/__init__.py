"""Taste graph: persistent weighted graph of songs, artists, genres and vibes."""
from .models import EdgeType, GraphEdge, GraphNode, NodeType, SessionSong
from .service import TasteGraphService
from .store import GraphStore

__all__ = [
    "EdgeType",
    "GraphEdge",
    "GraphNode",
    "GraphStore",
    "NodeType",
    "SessionSong",
    "TasteGraphService",
]

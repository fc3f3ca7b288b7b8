from .adapter import (
    BoundaryKind,
    BoundaryReport,
    RemotePlayerAdapter,
    SpotifyPlayerAdapter,
    TrackBoundaryDetector,
)
from .queue_manager import AppendResult, QueueResult
from .reconciler import QueueReconciler

__all__ = [
    "AppendResult",
    "BoundaryKind",
    "BoundaryReport",
    "QueueReconciler",
    "QueueResult",
    "RemotePlayerAdapter",
    "SpotifyPlayerAdapter",
    "TrackBoundaryDetector",
]

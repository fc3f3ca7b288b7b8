"""Auto-DJ: skip tracking, operation lock, vibe sessions and the orchestrator."""
from .auto_dj import AutoDJ
from .operation_lock import OperationLock
from .session import VibeSession
from .skip_tracker import SkipEvent, SkipTracker, Strategy

__all__ = [
    "AutoDJ",
    "OperationLock",
    "SkipEvent",
    "SkipTracker",
    "Strategy",
    "VibeSession",
]

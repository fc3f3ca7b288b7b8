"""
Error Surface - latest error per subsystem plus a short history.

Transient errors expire on their own (8s for errors, 5s for warnings);
critical and non-retryable errors stay until cleared.
"""
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .errors import ServiceError, Severity, Subsystem

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


class ErrorSurface:
    """Holds the most recent ServiceError for each subsystem"""

    def __init__(self, clock: Callable[[], float] = time.time, history_limit: int = HISTORY_LIMIT):
        self._clock = clock
        self._latest: Dict[Subsystem, ServiceError] = {}
        self._expires: Dict[Subsystem, Optional[float]] = {}
        self._history: Deque[ServiceError] = deque(maxlen=history_limit)
        self._listeners: List[Callable[[ServiceError], None]] = []
        self._lock = threading.Lock()

    def publish(self, error: ServiceError) -> None:
        """Record an error, replacing any earlier one for the same subsystem"""
        if error.severity == Severity.WARNING or error.silent:
            log_fn = logger.warning
        else:
            log_fn = logger.error
        log_fn(f"[{error.subsystem.value}] {error.code}: {error.details or error.user_message}")

        dismiss = error.auto_dismiss_seconds
        with self._lock:
            self._latest[error.subsystem] = error
            self._expires[error.subsystem] = (self._clock() + dismiss) if dismiss is not None else None
            self._history.append(error)
            listeners = list(self._listeners)

        for listener in listeners:
            listener(error)

    def add_listener(self, listener: Callable[[ServiceError], None]) -> None:
        self._listeners.append(listener)

    def _expire(self) -> None:
        now = self._clock()
        for subsystem, expires_at in list(self._expires.items()):
            if expires_at is not None and now >= expires_at:
                self._latest.pop(subsystem, None)
                self._expires.pop(subsystem, None)

    def latest(self, subsystem: Subsystem) -> Optional[ServiceError]:
        """Most recent unexpired error for a subsystem, including silent ones"""
        with self._lock:
            self._expire()
            return self._latest.get(subsystem)

    def active(self) -> List[ServiceError]:
        """Unexpired, non-silent errors, newest first"""
        with self._lock:
            self._expire()
            errors = [e for e in self._latest.values() if not e.silent]
        return sorted(errors, key=lambda e: e.timestamp, reverse=True)

    def has_active(self) -> bool:
        return bool(self.active())

    def clear(self, subsystem: Subsystem) -> None:
        with self._lock:
            self._latest.pop(subsystem, None)
            self._expires.pop(subsystem, None)

    def clear_all(self) -> None:
        with self._lock:
            self._latest.clear()
            self._expires.clear()

    @property
    def history(self) -> List[ServiceError]:
        with self._lock:
            return list(self._history)

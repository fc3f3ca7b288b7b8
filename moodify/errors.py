"""
Error taxonomy for Moodify.

Every failure that crosses a component boundary is raised as a subclass of
MoodifyError so callers can branch on `kind` instead of string matching.
The orchestrator turns caught exceptions into ServiceError records with
service_error_from_exception() and publishes them to the ErrorSurface.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


class Subsystem(str, Enum):
    ORACLE = "oracle"
    PLAYER = "player"
    GRAPH = "graph"
    NETWORK = "network"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    ORACLE_RATE_LIMITED = "oracle_rate_limited"
    ORACLE = "oracle"
    NOT_FOUND = "not_found"
    DATA_INTEGRITY = "data_integrity"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class MoodifyError(Exception):
    """Base exception for all Moodify failures"""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    default_code: str = "UNKNOWN"

    def __init__(self, message: str = "", code: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message or self.default_code)
        self.code = code or self.default_code
        self.details = details


class TransientError(MoodifyError):
    """Network failure, timeout or 5xx; safe to retry"""

    kind = ErrorKind.TRANSIENT
    retryable = True
    default_code = "NETWORK_ERROR"


class AuthenticationError(MoodifyError):
    """Credentials rejected (expired token, invalid key, premium required)"""

    kind = ErrorKind.AUTHENTICATION
    default_code = "AUTH_EXPIRED"


class OracleError(MoodifyError):
    """Recommendation oracle failed or returned something unusable"""

    kind = ErrorKind.ORACLE
    retryable = True
    default_code = "ORACLE_FAILED"


class OracleRateLimitedError(OracleError):
    """Recommendation oracle is throttling requests"""

    kind = ErrorKind.ORACLE_RATE_LIMITED
    default_code = "RATE_LIMITED"

    def __init__(self, message: str = "", code: Optional[str] = None, details: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, code, details)
        self.retry_after = retry_after


class NotFoundError(MoodifyError):
    """Requested entity does not exist (track, device, node)"""

    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"


class NoActiveDeviceError(NotFoundError):
    """No playback device is active on the remote player"""

    retryable = True
    default_code = "NO_DEVICE"


class DataIntegrityError(MoodifyError):
    """Persistent data violated an expected invariant"""

    kind = ErrorKind.DATA_INTEGRITY
    default_code = "DATA_INTEGRITY"


# code -> (severity, user message, silent, action label)
_CATALOG: Dict[str, Tuple[Severity, str, bool, Optional[str]]] = {
    "INVALID_KEY": (Severity.CRITICAL, "AI API key is invalid. Please check Settings.", False, "Fix Key"),
    "RATE_LIMITED": (Severity.WARNING, "AI is busy. Retrying automatically...", True, None),
    "PARSE_ERROR": (Severity.WARNING, "AI response was malformed. Retrying...", True, None),
    "ORACLE_FAILED": (Severity.ERROR, "AI encountered an error. Please try again.", False, None),
    "NO_RESULTS": (Severity.WARNING, "AI could not find playable tracks for this vibe.", False, None),
    "NO_DEVICE": (Severity.ERROR, "No Spotify device found. Open Spotify app and play something.", False, None),
    "PREMIUM_REQUIRED": (Severity.CRITICAL, "Spotify Premium is required for playback control.", False, "Open Spotify"),
    "NOT_AUTHENTICATED": (Severity.CRITICAL, "Please connect your Spotify account in Settings.", False, "Connect Spotify"),
    "AUTH_EXPIRED": (Severity.CRITICAL, "Session expired. Please reconnect.", False, "Reconnect"),
    "TRACK_NOT_FOUND": (Severity.WARNING, "Track not found on Spotify.", True, None),
    "NOT_FOUND": (Severity.WARNING, "Nothing found.", True, None),
    "TIMEOUT": (Severity.ERROR, "Request timed out. Please try again.", False, None),
    "QUERY_FAILED": (Severity.WARNING, "Database operation failed.", True, None),
    "DATA_INTEGRITY": (Severity.WARNING, "Taste graph needed a repair.", True, None),
}

_SUBSYSTEM_LABELS = {
    Subsystem.ORACLE: "the AI",
    Subsystem.PLAYER: "Spotify",
    Subsystem.GRAPH: "the database",
    Subsystem.NETWORK: "the network",
}


@dataclass(frozen=True)
class ServiceError:
    """A user-facing error record, one per failure, kept by the ErrorSurface"""

    subsystem: Subsystem
    code: str
    kind: ErrorKind
    severity: Severity
    user_message: str
    retryable: bool
    timestamp: float = field(default_factory=time.time)
    details: Optional[str] = None
    silent: bool = False
    action_label: Optional[str] = None

    @property
    def is_transient(self) -> bool:
        return self.retryable and self.severity != Severity.CRITICAL

    @property
    def auto_dismiss_seconds(self) -> Optional[float]:
        """Seconds until the error expires, or None if it persists until cleared"""
        if self.severity == Severity.CRITICAL or not self.retryable:
            return None
        if self.severity == Severity.ERROR:
            return 8.0
        return 5.0


def make_service_error(
    subsystem: Subsystem,
    code: str,
    kind: ErrorKind = ErrorKind.UNKNOWN,
    retryable: bool = True,
    details: Optional[str] = None,
    timestamp: Optional[float] = None,
) -> ServiceError:
    """Build a ServiceError from the catalog entry for `code`"""
    severity, message, silent, action = _CATALOG.get(
        code,
        (Severity.ERROR, f"Something went wrong talking to {_SUBSYSTEM_LABELS[subsystem]}.", False, None),
    )
    if code == "NETWORK_ERROR":
        message = f"Cannot reach {_SUBSYSTEM_LABELS[subsystem]}. Check your connection."
    return ServiceError(
        subsystem=subsystem,
        code=code,
        kind=kind,
        severity=severity,
        user_message=message,
        retryable=retryable,
        timestamp=timestamp if timestamp is not None else time.time(),
        details=details,
        silent=silent,
        action_label=action,
    )


def service_error_from_exception(
    exc: BaseException,
    subsystem: Subsystem,
    context: Optional[str] = None,
    timestamp: Optional[float] = None,
) -> ServiceError:
    """
    Translate a caught exception into a ServiceError.

    Args:
        exc: The exception that was caught
        subsystem: Subsystem the failing operation belongs to
        context: Short description of the operation, kept in details
        timestamp: Override for the record time (tests)

    Returns:
        ServiceError ready to publish
    """
    details = f"{context}: {exc}" if context else str(exc)
    if isinstance(exc, MoodifyError):
        return make_service_error(
            subsystem,
            exc.code,
            kind=exc.kind,
            retryable=exc.retryable,
            details=details,
            timestamp=timestamp,
        )
    return make_service_error(
        subsystem,
        "UNKNOWN",
        kind=ErrorKind.UNKNOWN,
        retryable=True,
        details=details,
        timestamp=timestamp,
    )

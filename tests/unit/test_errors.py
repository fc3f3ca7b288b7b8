import sqlite3

from moodify.error_surface import ErrorSurface
from moodify.errors import (
    AuthenticationError,
    ErrorKind,
    NoActiveDeviceError,
    OracleError,
    OracleRateLimitedError,
    Severity,
    Subsystem,
    TransientError,
    make_service_error,
    service_error_from_exception,
)

from conftest import FakeClock


def test_taxonomy_defaults():
    assert TransientError("x").retryable
    assert TransientError("x").code == "NETWORK_ERROR"
    assert not AuthenticationError("x").retryable
    assert NoActiveDeviceError("x").kind == ErrorKind.NOT_FOUND
    assert NoActiveDeviceError("x").code == "NO_DEVICE"
    assert isinstance(OracleRateLimitedError("x"), OracleError)
    assert OracleRateLimitedError("x", retry_after=3.0).retry_after == 3.0
    assert str(OracleError()) == "ORACLE_FAILED"


def test_invalid_key_is_critical_and_persistent():
    error = service_error_from_exception(
        AuthenticationError("bad", code="INVALID_KEY"), Subsystem.ORACLE, "rescue"
    )
    assert error.severity == Severity.CRITICAL
    assert error.action_label == "Fix Key"
    assert error.auto_dismiss_seconds is None
    assert not error.is_transient
    assert error.details == "rescue: bad"


def test_network_error_message_names_subsystem():
    error = service_error_from_exception(TransientError("down"), Subsystem.PLAYER)
    assert error.user_message == "Cannot reach Spotify. Check your connection."
    assert error.auto_dismiss_seconds == 8.0
    assert error.is_transient


def test_rate_limit_is_silent_warning():
    error = service_error_from_exception(OracleRateLimitedError("slow"), Subsystem.ORACLE)
    assert error.silent
    assert error.severity == Severity.WARNING
    assert error.auto_dismiss_seconds == 5.0


def test_foreign_exception_maps_to_unknown():
    error = service_error_from_exception(sqlite3.OperationalError("locked"), Subsystem.GRAPH, "commit")
    assert error.code == "UNKNOWN"
    assert error.kind == ErrorKind.UNKNOWN
    assert error.user_message == "Something went wrong talking to the database."


def test_surface_keeps_latest_per_subsystem():
    clock = FakeClock()
    surface = ErrorSurface(clock=clock)
    surface.publish(make_service_error(Subsystem.PLAYER, "NO_DEVICE", timestamp=1.0))
    surface.publish(make_service_error(Subsystem.PLAYER, "TIMEOUT", timestamp=2.0))
    surface.publish(make_service_error(Subsystem.ORACLE, "ORACLE_FAILED", timestamp=3.0))
    assert surface.latest(Subsystem.PLAYER).code == "TIMEOUT"
    assert [e.code for e in surface.active()] == ["ORACLE_FAILED", "TIMEOUT"]
    assert len(surface.history) == 3


def test_transient_errors_expire():
    clock = FakeClock()
    surface = ErrorSurface(clock=clock)
    surface.publish(make_service_error(Subsystem.PLAYER, "TIMEOUT"))
    surface.publish(make_service_error(Subsystem.ORACLE, "INVALID_KEY", retryable=False))
    clock.advance(7.9)
    assert surface.latest(Subsystem.PLAYER) is not None
    clock.advance(0.2)
    assert surface.latest(Subsystem.PLAYER) is None
    clock.advance(3600)
    assert surface.latest(Subsystem.ORACLE).code == "INVALID_KEY"


def test_silent_errors_are_not_active():
    surface = ErrorSurface(clock=FakeClock())
    surface.publish(make_service_error(Subsystem.ORACLE, "PARSE_ERROR"))
    assert surface.latest(Subsystem.ORACLE) is not None
    assert not surface.has_active()


def test_listeners_and_clear():
    surface = ErrorSurface(clock=FakeClock())
    seen = []
    surface.add_listener(seen.append)
    surface.publish(make_service_error(Subsystem.GRAPH, "QUERY_FAILED"))
    surface.publish(make_service_error(Subsystem.PLAYER, "NO_DEVICE"))
    assert [e.code for e in seen] == ["QUERY_FAILED", "NO_DEVICE"]
    surface.clear(Subsystem.PLAYER)
    assert surface.latest(Subsystem.PLAYER) is None
    surface.clear_all()
    assert surface.latest(Subsystem.GRAPH) is None

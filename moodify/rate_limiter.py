"""
Rate Limiter - spaces out calls to remote APIs

Shared by worker threads, so state changes happen under a lock.
"""
import threading
import time
import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Enforces a minimum interval between calls, plus server-requested pauses

    Usage:
        limiter = RateLimiter(calls_per_second=5)
        limiter.wait()
        session.get(url)

        # on HTTP 429 with Retry-After: 3
        limiter.pause_for(3)
    """

    def __init__(self, calls_per_second: float = 2.0):
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")

        self.min_interval = 1.0 / calls_per_second
        self.last_call = 0.0
        self.blocked_until = 0.0
        self.total_waits = 0
        self.total_wait_time = 0.0
        self._lock = threading.Lock()

        logger.debug(f"Rate limiter initialized: max {calls_per_second} calls/sec")

    def wait(self):
        """Sleep until the next call is allowed, then claim the slot"""
        with self._lock:
            now = time.monotonic()
            next_allowed = max(self.last_call + self.min_interval, self.blocked_until)
            sleep_time = next_allowed - now
            # Claim the slot before sleeping so concurrent callers queue behind us
            self.last_call = max(now, next_allowed)
            if sleep_time > 0:
                self.total_waits += 1
                self.total_wait_time += sleep_time

        if sleep_time > 0:
            time.sleep(sleep_time)

    def pause_for(self, seconds: float):
        """Block all callers for `seconds` (e.g. a Retry-After header)"""
        with self._lock:
            self.blocked_until = max(self.blocked_until, time.monotonic() + seconds)
        logger.warning(f"Rate limited by server, pausing requests for {seconds:.1f}s")

    def reset(self):
        with self._lock:
            self.last_call = 0.0
            self.blocked_until = 0.0
            self.total_waits = 0
            self.total_wait_time = 0.0

    def get_stats(self) -> dict:
        """Get statistics about rate limiting"""
        return {
            'total_waits': self.total_waits,
            'total_wait_time': self.total_wait_time,
            'avg_wait_time': self.total_wait_time / self.total_waits if self.total_waits > 0 else 0
        }

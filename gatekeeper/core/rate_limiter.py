# gatekeeper/core/rate_limiter.py
"""
Fixed-window rate limiter keyed by (bucket, identity).

Each key owns a counter ``{window_start, count}`` guarded by its own lock, so
requests for distinct keys never contend. The counter map itself is only
touched through ``dict.setdefault``/``dict.pop``, which are atomic.

Known limitation: a fixed window admits up to 2x ``max_requests`` across a
window boundary (a full quota at the end of one window followed by a full
quota at the start of the next). This is accepted in exchange for O(1)
memory per key.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from gatekeeper.core.rate_limit_config import RateLimitBucket

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class Admitted:
    """Request admitted; remaining quota in the current window"""
    limit: int
    remaining: int
    reset_after_seconds: float

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    """Request denied until the current window closes"""
    limit: int
    retry_after_seconds: float

    @property
    def allowed(self) -> bool:
        return False


Decision = Union[Admitted, Denied]


class RateLimitCounter:
    """Mutable per-key window state. Only touched while holding ``lock``."""

    __slots__ = ("window_start", "count", "window_seconds", "lock", "evicted")

    def __init__(self, window_start: float, window_seconds: float):
        self.window_start = window_start
        self.window_seconds = window_seconds
        self.count = 0
        self.lock = threading.Lock()
        self.evicted = False

    def is_stale(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Constructed once per process (see ``gatekeeper.main``) and injected into
    the secure handler. State is not persisted across restarts.
    """

    def __init__(self, clock: Optional[Clock] = None, sweep_interval: float = 300.0):
        """
        Args:
            clock: Monotonic time source in seconds (injectable for tests)
            sweep_interval: Minimum seconds between opportunistic sweeps of
                stale counters; 0 disables opportunistic sweeping
        """
        self._clock = clock or time.monotonic
        self._counters: Dict[Tuple[str, str], RateLimitCounter] = {}
        self._sweep_interval = sweep_interval
        self._sweep_lock = threading.Lock()
        self._last_sweep = self._clock()

        # Metrics for monitoring
        self._admitted = 0
        self._denied = 0

    def now(self) -> float:
        return self._clock()

    def _counter_for(self, key: Tuple[str, str], now: float, window_seconds: float) -> RateLimitCounter:
        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters.setdefault(key, RateLimitCounter(now, window_seconds))
        return counter

    def admit(self, bucket: RateLimitBucket, identity: str, now: Optional[float] = None) -> Decision:
        """
        Decide whether a request from ``identity`` fits in ``bucket``.

        Args:
            bucket: Policy to apply
            identity: Caller key (``user:<id>`` or ``ip:<addr>``)
            now: Current time; defaults to the limiter's clock

        Returns:
            Admitted with remaining quota, or Denied with seconds until reset
        """
        if now is None:
            now = self._clock()
        key = (bucket.name, identity)

        while True:
            counter = self._counter_for(key, now, bucket.window_seconds)
            with counter.lock:
                if counter.evicted:
                    # Swept between lookup and lock; pick up the fresh counter
                    continue

                counter.window_seconds = bucket.window_seconds
                if counter.is_stale(now):
                    counter.window_start = now
                    counter.count = 0

                elapsed = now - counter.window_start
                if counter.count >= bucket.max_requests:
                    decision = Denied(
                        limit=bucket.max_requests,
                        retry_after_seconds=bucket.window_seconds - elapsed,
                    )
                else:
                    counter.count += 1
                    decision = Admitted(
                        limit=bucket.max_requests,
                        remaining=bucket.max_requests - counter.count,
                        reset_after_seconds=bucket.window_seconds - elapsed,
                    )
            break

        if decision.allowed:
            self._admitted += 1
        else:
            self._denied += 1
            logger.debug(f"Denied {identity} on bucket '{bucket.name}' for {decision.retry_after_seconds:.1f}s")

        self._maybe_sweep(now)
        return decision

    def remaining(self, bucket: RateLimitBucket, identity: str, now: Optional[float] = None) -> int:
        """Requests left in the current window, without consuming one."""
        if now is None:
            now = self._clock()
        counter = self._counters.get((bucket.name, identity))
        if counter is None:
            return bucket.max_requests
        with counter.lock:
            if counter.evicted or counter.is_stale(now):
                return bucket.max_requests
            return max(0, bucket.max_requests - counter.count)

    def reset(self, bucket: RateLimitBucket, identity: str) -> None:
        """Clear the counter for one key (administrative unblock)."""
        key = (bucket.name, identity)
        counter = self._counters.get(key)
        if counter is None:
            return
        with counter.lock:
            counter.evicted = True
            if self._counters.get(key) is counter:
                self._counters.pop(key, None)
        logger.info(f"🔓 Rate limit reset for {identity} on bucket '{bucket.name}'")

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Drop counters whose window has closed.

        Staleness never affects admit decisions (a stale counter is reset on
        its next use); sweeping only reclaims memory.

        Returns:
            Number of counters removed
        """
        if now is None:
            now = self._clock()
        removed = 0
        for key, counter in list(self._counters.items()):
            # Skip counters busy with a request; they are not stale anyway
            if not counter.lock.acquire(blocking=False):
                continue
            try:
                if counter.is_stale(now) and self._counters.get(key) is counter:
                    counter.evicted = True
                    self._counters.pop(key, None)
                    removed += 1
            finally:
                counter.lock.release()

        if removed:
            logger.info(f"🧹 Swept {removed} stale rate limit counters")
        return removed

    def _maybe_sweep(self, now: float) -> None:
        if self._sweep_interval <= 0 or now - self._last_sweep < self._sweep_interval:
            return
        # Only one thread sweeps; the rest carry on
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = now
            self.sweep(now)
        finally:
            self._sweep_lock.release()

    def get_metrics(self) -> Dict[str, int]:
        """Get limiter metrics for monitoring."""
        return {
            "tracked_keys": len(self._counters),
            "admitted": self._admitted,
            "denied": self._denied,
        }

import threading
from dataclasses import dataclass
from typing import Dict, Tuple

from presence.clock import Clock, epoch_ms, utcnow
from presence.config import RateLimitRule, settings
from presence.locks import KeyedLocks


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int
    reset_at: int  # epoch milliseconds
    limit: int


class RateLimitStore:
    """Counter backend. hit() must be atomic per key."""

    def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        """Count one request; return (count, window_start_ms)."""
        raise NotImplementedError

    def prune(self, window_ms: int, now_ms: int) -> int:
        raise NotImplementedError


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._locks = KeyedLocks()
        # Guards the dict itself; per-key locks serialize each read-modify-write
        self._guard = threading.Lock()

    def hit(self, key, window_ms, now_ms):
        with self._locks.hold(key):
            with self._guard:
                count, start = self._windows.get(key, (0, None))
            if start is None or now_ms - start > window_ms:
                count, start = 0, now_ms
            count += 1
            with self._guard:
                self._windows[key] = (count, start)
            return count, start

    def prune(self, window_ms, now_ms):
        with self._guard:
            candidates = [k for k, (_, start) in list(self._windows.items()) if now_ms - start > window_ms]

        removed = 0
        for key in candidates:
            with self._locks.hold(key):
                with self._guard:
                    window = self._windows.get(key)
                    # A concurrent hit may have opened a fresh window
                    if window is None or now_ms - window[1] <= window_ms:
                        continue
                    del self._windows[key]
                self._locks.discard(key)
                removed += 1
        return removed


class RateLimiter:
    def __init__(self, store: RateLimitStore = None, clock: Clock = utcnow):
        self.store = store if store is not None else MemoryRateLimitStore()
        self.clock = clock

    def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        count, start = self.store.hit(key, window_ms, epoch_ms(self.clock()))
        return RateLimitResult(
            limited=count > max_requests,
            remaining=max(0, max_requests - count),
            reset_at=start + window_ms,
            limit=max_requests,
        )

    @staticmethod
    def rule_for(endpoint: str) -> RateLimitRule:
        return settings.RATE_LIMITS.get(endpoint) or settings.RATE_LIMITS["general"]

    def check_endpoint(self, client: str, endpoint: str) -> RateLimitResult:
        rule = self.rule_for(endpoint)
        return self.check(f"{client}:{endpoint}", rule.window_ms, rule.max_requests)

    def prune(self, window_ms: int = None) -> int:
        if window_ms is None:
            window_ms = max(rule.window_ms for rule in settings.RATE_LIMITS.values())
        return self.store.prune(window_ms, epoch_ms(self.clock()))

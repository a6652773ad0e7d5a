import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Hashable, Optional, Tuple

Clock = Callable[[], float]


def now_ms() -> float:
    """Wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000.0


@dataclass
class RateLimitConfig:
    max_requests: int = 60
    window_ms: int = 60_000


class RateLimiter:
    """
    In-memory, per-process, per-key sliding window rate limiter.

    Callers check with can_make_request() and record the upstream call with
    track_request(). acquire() does both under the lock for hosts that run
    handlers on several threads.
    """
    def __init__(self, cfg: RateLimitConfig, clock: Clock = now_ms):
        self.cfg = cfg
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> Deque[float]:
        q = self._requests.get(key)
        if q is None:
            q = deque()
            self._requests[key] = q

        # keep entries >= now - window
        window_start = now - self.cfg.window_ms
        while q and q[0] < window_start:
            q.popleft()
        return q

    def can_make_request(self, key: str) -> bool:
        with self._lock:
            q = self._prune(key, self._clock())
            return len(q) < self.cfg.max_requests

    def track_request(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._requests.setdefault(key, deque()).append(now)

    def acquire(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            q = self._prune(key, now)
            if len(q) >= self.cfg.max_requests:
                return False
            q.append(now)
            return True

    def get_remaining_requests(self, key: str) -> int:
        with self._lock:
            q = self._prune(key, self._clock())
            return max(0, self.cfg.max_requests - len(q))

    def get_time_until_next_slot(self, key: str) -> int:
        """Whole seconds until the key may make another request (0 if it may now)."""
        now = self._clock()
        with self._lock:
            q = self._prune(key, now)
            if len(q) < self.cfg.max_requests:
                return 0
            if self.cfg.max_requests <= 0:
                return max(1, math.ceil(self.cfg.window_ms / 1000))

            # the entry that must age out before the count drops below the limit
            blocking = q[len(q) - self.cfg.max_requests]
            wait_ms = self.cfg.window_ms - (now - blocking)
            return max(1, math.ceil(wait_ms / 1000))

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._requests.clear()
            else:
                self._requests.pop(key, None)


class TTLCache:
    """
    Simple in-memory TTL cache.
    Stores JSON-serializable objects; expired entries are dropped on read.
    """
    def __init__(self, ttl_seconds: float = 30, clock: Clock = now_ms):
        self.ttl_ms = ttl_seconds * 1000
        self._clock = clock
        self._store: Dict[Hashable, Tuple[float, float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            stored_at, ttl_ms, value = item
            if now - stored_at >= ttl_ms:
                self._store.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl_ms: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            self._store[key] = (now, self.ttl_ms if ttl_ms is None else ttl_ms, value)

    def get_remaining_ttl(self, key: Hashable) -> int:
        """Whole seconds (rounded up) before the entry expires; 0 if missing or expired."""
        now = self._clock()
        with self._lock:
            item = self._store.get(key)
            if not item:
                return 0
            stored_at, ttl_ms, _ = item
            remaining_ms = ttl_ms - (now - stored_at)
            return max(0, math.ceil(remaining_ms / 1000))

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

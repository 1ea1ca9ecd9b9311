"""Fixed-window request limiter with pluggable counter storage.

A single instance can count in memory; several instances behind a load
balancer need a shared store, so the counters can also live in the database.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session

from streamchat.core.errors import RateLimitedError
from streamchat.models.rate_limit import RateLimitBucket

logger = logging.getLogger(__name__)


class RateLimitStore(ABC):
    @abstractmethod
    def hit(self, key: str, window_seconds: float, now: float) -> tuple[int, float]:
        """Count one request for ``key``. Returns (count in current window, window end)."""
        ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self):
        self._buckets: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float, window_seconds: float) -> None:
        """Drop buckets whose window has ended, at most once per window."""
        if now < self._next_sweep:
            return
        expired = [key for key, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for key in expired:
            del self._buckets[key]
        self._next_sweep = now + window_seconds

    def hit(self, key: str, window_seconds: float, now: float) -> tuple[int, float]:
        with self._lock:
            self._sweep(now, window_seconds)
            count, reset_at = self._buckets.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._buckets[key] = (count, reset_at)
            return count, reset_at


class DatabaseRateLimitStore(RateLimitStore):
    def __init__(self, engine: Engine):
        self._engine = engine
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: float, now: float) -> tuple[int, float]:
        with self._lock, Session(self._engine) as session:
            bucket = session.get(RateLimitBucket, key)
            if bucket is None:
                bucket = RateLimitBucket(key=key, count=0, reset_at=now + window_seconds)
            elif now >= bucket.reset_at:
                bucket.count = 0
                bucket.reset_at = now + window_seconds
            bucket.count += 1
            session.add(bucket)
            session.commit()
            return bucket.count, bucket.reset_at


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        max_requests: int = 30,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, key: str) -> int:
        """Record a request for ``key`` and return how many remain in the window.

        Raises RateLimitedError once the window's quota is used up.
        """
        now = self._clock()
        count, reset_at = self.store.hit(key, self.window_seconds, now)
        if count > self.max_requests:
            retry_after = max(0.0, reset_at - now)
            logger.warning(f"Rate limit exceeded for {key}: {count}/{self.max_requests}, retry in {retry_after:.0f}s")
            raise RateLimitedError(
                "Too many chat requests, please try again later", retry_after=retry_after
            )
        return self.max_requests - count


def create_rate_limiter(
    backend: str,
    engine: Engine | None = None,
    max_requests: int = 30,
    window_seconds: float = 15 * 60,
) -> RateLimiter:
    if backend == "memory":
        store: RateLimitStore = InMemoryRateLimitStore()
    elif backend == "database":
        if engine is None:
            raise ValueError("The database rate limit backend needs an engine")
        store = DatabaseRateLimitStore(engine)
    else:
        raise ValueError(f"Unknown rate limit backend: {backend}")
    return RateLimiter(store, max_requests=max_requests, window_seconds=window_seconds)

"""Sliding window throttles guarding recovery and HTTP entry points."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, DefaultDict, Protocol

from redis import Redis


class Throttle(Protocol):
    def allow(self, key: str) -> bool: ...


class SlidingWindowThrottle:
    """Thread-safe in-process sliding window."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: DefaultDict[str, Deque[float]] = DefaultDict(deque)
        self._lock = Lock()

    def allow(self, key: str) -> bool:
        """Return ``True`` and record the hit when ``key`` is under its limit."""
        now = time.monotonic()
        with self._lock:
            queue = self._events[key]
            while queue and now - queue[0] >= self._window:
                queue.popleft()
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)


class RedisSlidingWindowThrottle:
    """Distributed sliding window kept in one Redis sorted set per key."""

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "throttle",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix

    def allow(self, key: str) -> bool:
        now_ms = int(time.time() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        # Trim and count in one round trip; the add happens only when allowed.
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now_ms - self._window_ms)
        pipe.zcard(redis_key)
        _, current = pipe.execute()
        if int(current) >= self._max_requests:
            return False

        seq = self._client.incr(f"{redis_key}:seq")
        pipe = self._client.pipeline()
        pipe.zadd(redis_key, {f"{now_ms}:{seq}": now_ms})
        pipe.pexpire(redis_key, self._window_ms)
        pipe.pexpire(f"{redis_key}:seq", self._window_ms)
        pipe.execute()
        return True

    def reset(self, key: str) -> None:
        redis_key = f"{self._key_prefix}:{key}"
        self._client.delete(redis_key, f"{redis_key}:seq")

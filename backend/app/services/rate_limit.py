from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
import time
from typing import Deque

from fastapi import Request

from app.core.exceptions import RateLimitedError


class SlidingWindowRateLimiter:
    """Counts hits per key inside a trailing time window.

    State is process-local; it throttles abusive clients but is not a
    substitute for the attempt budget kept in the challenge store.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._buckets: dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self._clock = clock

    def hit(self, key: str, *, limit: int, window_seconds: int) -> int | None:
        """Record a hit; return ``None`` if allowed, else seconds until retry."""
        now = self._clock()
        earliest = now - window_seconds
        with self._lock:
            bucket = self._buckets[key]
            while bucket and bucket[0] <= earliest:
                bucket.popleft()
            if len(bucket) >= limit:
                return max(1, int(bucket[0] + window_seconds - now))
            bucket.append(now)
            return None

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = SlidingWindowRateLimiter()


def _request_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_rate_limit(
    *,
    request: Request,
    scope: str,
    limit: int,
    window_seconds: int,
    identity: str | None = None,
) -> None:
    key = f"{scope}|{_request_ip(request)}|{(identity or '').strip().lower()}"
    retry_after = _limiter.hit(key, limit=limit, window_seconds=window_seconds)
    if retry_after is not None:
        raise RateLimitedError(scope, retry_after)


def clear_rate_limiter() -> None:
    _limiter.clear()

"""
Rate limiting module for the CertLedger service.

Sliding window limits per (endpoint, client) key. Public verification and
approval processing each get their own limiter; ``enforce`` turns a denied
check into an HTTP 429 with a Retry-After header.
"""

import math
import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from fastapi import HTTPException

from .logging_config import audit_log


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; each key keeps a deque of hit timestamps inside the window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self._limit

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Record a hit for ``key`` if the window has room."""
        now = time.time()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] < now - self._window:
                hits.popleft()

            reset_at = (hits[0] + self._window) if hits else (now + self._window)
            if len(hits) >= self._limit:
                return RateLimitResult(False, 0, reset_at, retry_after=max(0.0, reset_at - now))

            hits.append(now)
            return RateLimitResult(True, self._limit - len(hits), reset_at)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded hits for one key, or for every key."""
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


def enforce(limiter: RateLimiter, endpoint: str, client_id: str) -> None:
    """
    Raise HTTP 429 when ``client_id`` is over its limit on ``endpoint``.
    """
    result = limiter.check(f"{endpoint}:{client_id}")
    if result.allowed:
        return
    audit_log.rate_limit_exceeded(client_id, endpoint)
    raise HTTPException(
        status_code=429,
        detail={"error": "RATE_LIMITED", "message": f"too many requests to {endpoint}"},
        headers={"Retry-After": str(math.ceil(result.retry_after or 0))},
    )

"""
gitcity.api.rate_limit — In-Memory Fixed-Window Rate Limiting
===============================================================

Per-key request throttle for the interactive endpoints (kudos, check-in,
district change, checkout, ad tracking).

Each key maps to a ``(count, reset_at)`` pair.  The first hit — or the
first hit after ``reset_at`` — opens a new window.  Expired entries are
swept at most once per ``CLEANUP_INTERVAL`` seconds.  State is
process-local and is lost on restart; every worker enforces its own
limits.

Returns HTTP 429 with a ``Retry-After`` header when a limit is exceeded.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 60.0  # seconds


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    ok: bool
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int = 0  # whole seconds; set only when blocked


class RateLimiter:
    """Fixed-window counter keyed by an arbitrary string.

    Thread-safe: sync FastAPI routes run on a thread pool.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Record one request for *key* and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            self._maybe_cleanup(now)

            entry = self._entries.get(key)
            if entry is None or now > entry[1]:
                reset_at = now + window_seconds
                self._entries[key] = (1, reset_at)
                return RateLimitResult(ok=True, remaining=limit - 1, reset_at=reset_at)

            count, reset_at = entry
            if count >= limit:
                retry_after = max(1, math.ceil(reset_at - now))
                return RateLimitResult(ok=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

            count += 1
            self._entries[key] = (count, reset_at)
            return RateLimitResult(ok=True, remaining=limit - count, reset_at=reset_at)

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        expired = [key for key, (_, reset_at) in self._entries.items() if now > reset_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Rate limiter swept %d expired keys", len(expired))

    def reset(self) -> None:
        """Clear all counters (used in tests)."""
        with self._lock:
            self._entries.clear()
            self._last_cleanup = self._clock()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return _limiter


def reset() -> None:
    """Clear the shared limiter."""
    _limiter.reset()


def enforce_rate_limit(
    key: str,
    limit: int,
    window_seconds: float,
    message: str = "Too many requests",
) -> RateLimitResult:
    """Count a hit for *key*; raise 429 if it is over *limit*."""
    result = get_rate_limiter().hit(key, limit, window_seconds)
    if not result.ok:
        logger.info("Rate limit exceeded for %s", key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": message,
                "retry_after": result.retry_after,
            },
            headers={"Retry-After": str(result.retry_after)},
        )
    return result


def client_ip(request: Request) -> str:
    """Best-effort client address behind Vercel / Cloudflare / nginx."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"

"""Fixed-window request limiting for mutating endpoints."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_TRACKED_KEYS = 10_000


@dataclass(frozen=True, slots=True)
class RateLimit:
    max_requests: int
    window_seconds: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int


class FixedWindowRateLimiter:
    """Counts requests per key inside aligned windows of `window_seconds`."""

    def __init__(self, *, limit: RateLimit) -> None:
        self._limit = limit
        # key -> (window index, requests counted in that window)
        self._windows: dict[str, tuple[int, int]] = {}
        self._evicted_window: int | None = None
        self._lock = threading.Lock()

    @property
    def limit(self) -> RateLimit:
        return self._limit

    def check(self, key: str, *, now: float | None = None) -> RateLimitDecision:
        timestamp = now if now is not None else time.time()
        window = int(timestamp // self._limit.window_seconds)
        with self._lock:
            current_window, count = self._windows.get(key, (window, 0))
            if current_window != window:
                count = 0
            if count >= self._limit.max_requests:
                window_end = (window + 1) * self._limit.window_seconds
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=max(1, math.ceil(window_end - timestamp)),
                )

            count += 1
            # Re-insert so the key counted last is the last one dropped.
            self._windows.pop(key, None)
            self._windows[key] = (window, count)
            if len(self._windows) > MAX_TRACKED_KEYS:
                self._shrink(window)
            return RateLimitDecision(
                allowed=True,
                remaining=self._limit.max_requests - count,
                retry_after_seconds=0,
            )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)

    def _shrink(self, window: int) -> None:
        # Scan for expired windows at most once per window.
        if self._evicted_window != window:
            self._evicted_window = window
            stale = [key for key, (seen, _) in self._windows.items() if seen < window]
            for key in stale:
                del self._windows[key]
        while len(self._windows) > MAX_TRACKED_KEYS:
            del self._windows[next(iter(self._windows))]


@lru_cache
def get_rate_limiter() -> FixedWindowRateLimiter:
    settings = get_settings()
    return FixedWindowRateLimiter(
        limit=RateLimit(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    )


def client_key(request: Request) -> str:
    """Key on the socket peer.

    Forwarding headers are client-controlled. Behind a proxy, run uvicorn with
    `--proxy-headers --forwarded-allow-ips` so the peer is the real client.
    """

    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


async def enforce_rate_limit(
    request: Request,
    settings: Settings = Depends(get_settings),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> None:
    if not settings.rate_limit_enabled:
        return

    key = client_key(request)
    decision = limiter.check(key)
    if not decision.allowed:
        logger.warning("rate limit exceeded key=%s path=%s", key, request.url.path)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

"""Per-client sliding-window request throttling."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("tessera.api.ratelimit")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class SlidingWindowRateLimiter:
    """At most *max_requests* per client within any *window_seconds* span.

    Each client's timestamps are pruned lazily when it makes a request.
    Once more than *sweep_threshold* clients are tracked, every idle
    client is dropped in one pass so memory stays bounded.
    """

    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 30,
        sweep_threshold: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window_seconds
        self.max_requests = max_requests
        self.sweep_threshold = sweep_threshold
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def hit(self, client_key: str) -> RateDecision:
        now = self._clock()
        cutoff = now - self.window
        with self._lock:
            hits = self._hits.setdefault(client_key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(hits[0] + self.window - now))
                return RateDecision(allowed=False, retry_after=retry_after)

            hits.append(now)
            remaining = self.max_requests - len(hits)
            if len(self._hits) > self.sweep_threshold:
                self._sweep(cutoff)
            return RateDecision(allowed=True, remaining=remaining)

    def _sweep(self, cutoff: float) -> None:
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in idle:
            del self._hits[key]
        if idle:
            logger.debug("Rate limiter swept %d idle clients", len(idle))

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Rate limit exceeded, retry after {retry_after}s")
        self.retry_after = retry_after


async def rate_limit_exceeded_handler(request: Request, exc: Exception) -> JSONResponse:
    retry_after = exc.retry_after if isinstance(exc, RateLimitExceeded) else 60
    return JSONResponse(
        {
            "error": "Too many requests",
            "message": "Rate limit exceeded. Please try again later.",
            "retryAfter": retry_after,
        },
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(name: str) -> Callable[[Request], Coroutine[Any, Any, None]]:
    """Dependency factory applying the limiter stored at ``app.state.limiters[name]``."""

    async def checker(request: Request) -> None:
        limiter: SlidingWindowRateLimiter = request.app.state.limiters[name]
        decision = limiter.hit(client_key(request))
        if not decision.allowed:
            logger.warning("Rate limit '%s' exceeded for %s", name, client_key(request))
            raise RateLimitExceeded(decision.retry_after)

    return checker

"""Per-client request rate limiting.

Two sliding-window limits protect the service from runaway inference cost:

- every ``/api/`` request counts toward ``rate_limit_requests`` per window;
- ``POST /api/scan`` also counts toward the stricter
  ``scan_rate_limit_requests``.

Clients are keyed by the first address in ``X-Forwarded-For`` (set by the
load balancer in front of the container), falling back to the peer address.
Rejected requests get a 429 with the shared ``{"error", "code"}`` body plus
``retry_after`` and a ``Retry-After`` header.

Counters live in process memory, so each worker process enforces its own
limit.
"""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from lexicon.core.errors import RateLimitExceeded
from lexicon.core.log_utils import StructuredLogger

API_LIMIT_MESSAGE = "Too many requests. Please wait before scanning again."
SCAN_LIMIT_MESSAGE = "Scan rate limit exceeded. Neural cooling required."

# Idle clients are swept once this many keys are tracked.
_SWEEP_THRESHOLD = 10_000


class SlidingWindowLimiter:
    """Allow at most ``max_requests`` per ``window_s`` seconds per key.

    Args:
        max_requests: Requests allowed inside one window.
        window_s: Window length in seconds.
        timer: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        max_requests: int,
        window_s: float,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self.max_requests = max_requests
        self.window_s = window_s
        self._timer = timer
        self._hits: dict[str, deque[float]] = {}

    def hit(self, key: str) -> int | None:
        """Record one request for *key*.

        Returns:
            ``None`` when the request is allowed, otherwise the number of
            whole seconds until the oldest counted request leaves the window.
            Rejected requests are not counted.
        """
        now = self._timer()
        if len(self._hits) > _SWEEP_THRESHOLD:
            self._sweep(now)

        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= now - self.window_s:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return max(1, math.ceil(hits[0] + self.window_s - now))
        hits.append(now)
        return None

    def _sweep(self, now: float) -> None:
        cutoff = now - self.window_s
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def __len__(self) -> int:
        return len(self._hits)


def client_key(request: Request) -> str:
    """Identify the calling client for rate limiting."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject clients that exceed the API or scan request limits."""

    def __init__(
        self,
        app,
        *,
        api_limiter: SlidingWindowLimiter,
        scan_limiter: SlidingWindowLimiter,
        prefix: str = "/api/",
        log: StructuredLogger | None = None,
    ) -> None:
        super().__init__(app)
        self.api_limiter = api_limiter
        self.scan_limiter = scan_limiter
        self.prefix = prefix
        self.log = log or StructuredLogger("lexicon.api.rate_limit")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.prefix):
            return await call_next(request)

        key = client_key(request)
        retry_after = self.api_limiter.hit(key)
        error = None
        if retry_after is not None:
            error = RateLimitExceeded(API_LIMIT_MESSAGE, retry_after_s=retry_after)
        elif request.method == "POST" and path == f"{self.prefix}scan":
            retry_after = self.scan_limiter.hit(key)
            if retry_after is not None:
                error = RateLimitExceeded(
                    SCAN_LIMIT_MESSAGE,
                    retry_after_s=retry_after,
                    code="SCAN_RATE_LIMIT_EXCEEDED",
                )

        if error is None:
            return await call_next(request)

        self.log.warning("Rate limit exceeded", client=key, path=path, code=error.code)
        return JSONResponse(
            status_code=error.status_code,
            content=error.to_dict(),
            headers={"Retry-After": str(error.retry_after_s)},
        )

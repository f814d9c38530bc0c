"""
In-memory per-client rate limiting for the public capture endpoints.

A sliding window of request timestamps is kept per client address. The state
lives in process memory, so each worker process enforces its own limit.
Addresses whose hits have all left the window are swept once per window.

The client address is the socket peer. Behind the hosting platform's proxy,
run uvicorn with proxy headers restricted to that proxy so the peer is the
real caller rather than the proxy:

    uvicorn app.main:app --proxy-headers --forwarded-allow-ips=<proxy address>

X-Forwarded-For is never read here; the caller controls it.

Environment variables
---------------------
RATE_LIMIT_MAX_REQUESTS     Requests allowed per window (default: 10).
RATE_LIMIT_WINDOW_SECONDS   Window length in seconds (default: 60).
"""

import logging
import math
import os
import time
from typing import Callable, Dict, List, Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."


class RateLimiter:
    """Sliding-window limiter keyed by client address."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._last_sweep = clock()

    def consume(self, key: str) -> Optional[int]:
        """
        Record one request for ``key``.

        Returns None when the request is allowed, otherwise the number of
        whole seconds (>= 1) until the oldest hit leaves the window. Rejected
        requests are not recorded.
        """
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        hits = [t for t in self._hits.get(key, []) if now - t < self.window_seconds]

        if len(hits) >= self.max_requests:
            self._hits[key] = hits
            retry_after = hits[0] + self.window_seconds - now
            return max(1, math.ceil(retry_after))

        hits.append(now)
        self._hits[key] = hits
        return None

    def _sweep(self, now: float) -> None:
        """Forget every key whose newest hit has left the window."""
        expired = [
            key for key, hits in self._hits.items()
            if not hits or now - hits[-1] >= self.window_seconds
        ]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def reset(self) -> None:
        self._hits.clear()
        self._last_sweep = self._clock()

    def __len__(self) -> int:
        return len(self._hits)


def client_address(request: Request) -> str:
    """
    Resolve the caller's address from the socket peer.

    With uvicorn's proxy headers enabled for the platform proxy only, the peer
    already reflects the address that proxy saw.
    """
    if request.client:
        return request.client.host
    return "unknown"


capture_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "10")),
    window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
)


def enforce_rate_limit(request: Request) -> None:
    """
    FastAPI dependency shared by /email-capture and /stats.

    Raises 429 with a Retry-After header when the caller is over the limit.
    """
    address = client_address(request)
    retry_after = capture_rate_limiter.consume(address)
    if retry_after is not None:
        logger.info(f"Rate limit exceeded for {address} on {request.url.path}")
        raise HTTPException(
            status_code=429,
            detail=RATE_LIMIT_MESSAGE,
            headers={"Retry-After": str(retry_after)},
        )

"""
Fixed-window request rate limiting for the /api/ routes.

Each client IP gets RATE_LIMIT_MAX_REQUESTS requests per window of
RATE_LIMIT_WINDOW minutes. Counters live in process memory, so every worker
process enforces its own budget.
"""

import logging
import math
import os
import time
from typing import Callable, Dict, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from responses import error_body

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


def _positive_int_from_env(name: str, default: int) -> int:
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        logger.warning(f"⚠️  Invalid {name} value in environment. Using default of {default}.")
        return default
    if value < 1:
        logger.warning(f"⚠️  {name}={value} must be positive. Using default of {default}.")
        return default
    return value


class RateLimiter:
    """
    Per-key fixed-window counter.

    Expired windows are swept at most once per window length, so memory is
    bounded by the keys seen during roughly the last two windows.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = clock()

    def hit(self, key: str) -> Tuple[bool, int, int]:
        """
        Record one request for ``key``.

        Returns:
            (allowed, remaining, seconds_until_reset)
        """
        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        window_start, count = self._windows.get(key, (now, 0))
        if now - window_start >= self.window_seconds:
            window_start, count = now, 0

        count += 1
        self._windows[key] = (window_start, count)

        reset_in = max(0, math.ceil(window_start + self.window_seconds - now))
        remaining = max(0, self.max_requests - count)
        return count <= self.max_requests, remaining, reset_in

    def _sweep(self, now: float) -> None:
        expired = [key for key, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate limit windows")

    def tracked_keys(self) -> int:
        return len(self._windows)

    def reset(self) -> None:
        self._windows.clear()
        self._last_sweep = self._clock()


limiter = RateLimiter(
    max_requests=_positive_int_from_env("RATE_LIMIT_MAX_REQUESTS", 100),
    window_seconds=_positive_int_from_env("RATE_LIMIT_WINDOW", 15) * 60,
)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, rate_limiter: RateLimiter = limiter, path_prefix: str = "/api/"):
        super().__init__(app)
        self.limiter = rate_limiter
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        allowed, remaining, reset_in = self.limiter.hit(client_ip)
        headers = {
            "RateLimit-Limit": str(self.limiter.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": str(reset_in),
        }

        if not allowed:
            logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=error_body(RATE_LIMIT_MESSAGE),
                headers={**headers, "Retry-After": str(reset_in)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

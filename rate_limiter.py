from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset)),
        }


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """In-process fixed-window limiter keyed by an arbitrary identifier.

    State lives in this process only; several workers each keep their own
    counts.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = 5 * 60,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._last_cleanup = clock()

    def check(self, identifier: str) -> RateLimitResult:
        """Count one request against ``identifier`` and say whether it may proceed."""
        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self.cleanup()
        window = self._windows.get(identifier)

        if window is None or now > window.reset_at:
            window = _Window(count=1, reset_at=now + self.window_seconds)
            self._windows[identifier] = window
            return RateLimitResult(
                success=True,
                limit=self.max_requests,
                remaining=self.max_requests - 1,
                reset=window.reset_at,
            )

        if window.count >= self.max_requests:
            logger.warning(
                "rate limit exceeded identifier=%s count=%s limit=%s",
                identifier,
                window.count,
                self.max_requests,
            )
            return RateLimitResult(
                success=False,
                limit=self.max_requests,
                remaining=0,
                reset=window.reset_at,
            )

        window.count += 1
        return RateLimitResult(
            success=True,
            limit=self.max_requests,
            remaining=self.max_requests - window.count,
            reset=window.reset_at,
        )

    def retry_after(self, result: RateLimitResult) -> int:
        """Whole seconds until the window behind ``result`` resets."""
        return max(0, math.ceil(result.reset - self._clock()))

    def cleanup(self) -> int:
        """Drop expired windows and return how many were removed."""
        now = self._clock()
        self._last_cleanup = now
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("cleaned up expired rate limit entries count=%s", len(expired))
        return len(expired)

"""Async sliding-window rate limiter shared by the API clients."""

import asyncio
import logging
import time
from collections import deque

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``requests_per_minute`` acquisitions per ``window`` seconds.

    Usage::

        limiter = RateLimiter(requests_per_minute=10, name="pagespeed")
        async with limiter:
            await make_request()
    """

    def __init__(self, requests_per_minute: int = 60, name: str = "default", window: float = 60.0):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        self._limit = requests_per_minute
        self._window = window
        self._name = name
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self._window:
            self._stamps.popleft()

    def wait_time(self) -> float:
        """Seconds until the next acquisition would be allowed."""
        now = time.monotonic()
        self._expire(now)
        if len(self._stamps) < self._limit:
            return 0.0
        return max(self._window - (now - self._stamps[0]), 0.0)

    async def acquire(self) -> None:
        async with self._lock:
            wait = self.wait_time()
            while wait > 0:
                logger.debug("RateLimiter(%s) sleeping %.2fs", self._name, wait)
                await asyncio.sleep(wait)
                wait = self.wait_time()
            self._stamps.append(time.monotonic())

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, *args):
        pass

    @property
    def requests_in_window(self) -> int:
        self._expire(time.monotonic())
        return len(self._stamps)

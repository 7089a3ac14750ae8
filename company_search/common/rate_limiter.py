"""
Sliding-window rate limiter for outbound LLM calls.

Each limiter is an explicitly-owned object: services receive one through
their constructor, so every test can build an isolated limiter and
several services can share one when they hit the same provider quota.

Callers reserve a slot under the lock and then wait outside it, so
permits are granted in arrival order and no lock is held while sleeping
or while the caller talks to the network.

Usage:
    limiter = SlidingWindowRateLimiter(max_calls=10, window_seconds=60, name="web_search")

    await limiter.acquire_async()  # Waits if the window is full
    response = await llm.ainvoke(...)
"""

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Thread-safe limiter allowing at most `max_calls` per `window_seconds`.

    A caller over the limit waits for its reserved slot instead of being
    rejected.
    """

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.name = name
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock

        # Granted (possibly future) permit timestamps, oldest first
        self._window: deque = deque()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        """Reserve the next free slot and return how long to wait for it."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_seconds
            while self._window and self._window[0] <= cutoff:
                self._window.popleft()

            if len(self._window) < self.max_calls:
                slot = now
            else:
                slot = self._window[-self.max_calls] + self.window_seconds
            self._window.append(slot)
            return max(0.0, slot - now)

    async def acquire_async(self) -> float:
        """
        Take a permit, sleeping until its slot opens.

        Returns:
            Seconds spent waiting
        """
        wait_time = self._reserve()
        if wait_time > 0:
            logger.debug(f"Rate limiter '{self.name}' waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)
        return wait_time

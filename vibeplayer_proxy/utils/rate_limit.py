"""
Per-client rate limiting for the resolve endpoint.

A sliding window of request timestamps is kept for every client, keyed by
the MD5 of the client address. Old timestamps are pruned on each check and a
rejected request is not recorded.
"""

import asyncio
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class SlidingWindowRateLimiter:
    def __init__(self, max_requests: int, window: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(client_ip: str) -> str:
        return hashlib.md5(client_ip.encode()).hexdigest()

    async def check(self, client_ip: str) -> RateLimitDecision:
        """Record a request for ``client_ip`` unless the window is already full."""
        key = self._key(client_ip)
        async with self._lock:
            now = self._clock()
            timestamps = [ts for ts in self._requests.get(key, []) if now - ts < self.window]

            if len(timestamps) >= self.max_requests:
                self._requests[key] = timestamps
                retry_after = max(1, math.ceil(self.window - (now - timestamps[0])))
                logger.warning(f"[RateLimit] Client {key[:8]} exceeded {self.max_requests}/{self.window}s")
                return RateLimitDecision(allowed=False, retry_after=retry_after)

            timestamps.append(now)
            self._requests[key] = timestamps
            self._prune(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(timestamps))

    def _prune(self, now: float) -> None:
        stale = [key for key, stamps in self._requests.items() if not stamps or now - stamps[-1] >= self.window]
        for key in stale:
            del self._requests[key]

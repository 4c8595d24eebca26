"""Sliding-window rate limiter per provider and capability.

Each (provider, capability) pair gets a bucket sized from the provider
descriptor's RateLimit: requests per minute plus a cap on in-flight calls.
When a limit is hit, ``acquire`` returns how long to wait.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from ai_gateway.gateway.types import Capability, RateLimit

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60.0


@dataclass
class _Bucket:
    """Sliding window bucket for one provider/capability pair."""

    limit: RateLimit
    timestamps: deque[float] = field(default_factory=deque)
    active_count: int = 0  # Currently in-flight requests
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _prune(self, now: float) -> None:
        cutoff = now - _WINDOW_SECONDS
        while self.timestamps and self.timestamps[0] < cutoff:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        """How long to wait before the next request. 0 means go."""
        self._prune(now)

        if self.active_count >= self.limit.max_concurrent:
            return 0.5  # Brief wait for a slot to open

        if len(self.timestamps) >= self.limit.requests_per_minute:
            # Wait until the oldest entry leaves the window
            return max((self.timestamps[0] + _WINDOW_SECONDS) - now, 0.1)

        return 0.0


class RateLimiter:
    """Usage:
        limiter = RateLimiter()
        if await limiter.acquire_blocking("openai", cap, descriptor.rate_limit_for(cap)):
            try:
                ...
            finally:
                limiter.release("openai", cap)
    """

    def __init__(self):
        self._buckets: dict[tuple[str, Capability], _Bucket] = {}

    def _get_bucket(self, provider_id: str, capability: Capability, limit: RateLimit | None) -> _Bucket:
        key = (provider_id, capability)
        if key not in self._buckets:
            self._buckets[key] = _Bucket(limit=limit or RateLimit())
        return self._buckets[key]

    async def acquire(self, provider_id: str, capability: Capability, limit: RateLimit | None = None) -> float:
        """Try to take a slot. Returns 0 on success, else seconds to wait."""
        bucket = self._get_bucket(provider_id, capability, limit)
        async with bucket.lock:
            now = time.monotonic()
            wait = bucket.wait_time(now)
            if wait <= 0:
                bucket.timestamps.append(now)
                bucket.active_count += 1
                return 0.0
            return wait

    async def acquire_blocking(
        self,
        provider_id: str,
        capability: Capability,
        limit: RateLimit | None = None,
        timeout: float = 120.0,
    ) -> bool:
        """Block until a slot is free. False if ``timeout`` passes first."""
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            wait = await self.acquire(provider_id, capability, limit)
            if wait <= 0:
                return True
            sleep_time = min(wait, deadline - time.monotonic())
            if sleep_time <= 0:
                return False
            logger.debug("Rate limit for %s/%s, waiting %.1fs", provider_id, capability.value, sleep_time)
            await asyncio.sleep(sleep_time)

        return False

    def release(self, provider_id: str, capability: Capability) -> None:
        bucket = self._buckets.get((provider_id, capability))
        if bucket is not None:
            bucket.active_count = max(0, bucket.active_count - 1)

    def get_all_stats(self) -> list[dict]:
        now = time.monotonic()
        stats = []
        for (provider_id, capability), bucket in self._buckets.items():
            bucket._prune(now)
            stats.append(
                {
                    "provider": provider_id,
                    "capability": capability.value,
                    "current_rpm": len(bucket.timestamps),
                    "rpm_limit": bucket.limit.requests_per_minute,
                    "active_requests": bucket.active_count,
                    "max_concurrent": bucket.limit.max_concurrent,
                }
            )
        return stats

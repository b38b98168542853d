"""Process-local concurrency limits for activity pools.

A pool caps how many attempts of a given kind run at once across every
execution on this worker process. Limits are not shared between processes
and are never part of durable history; a restarted worker starts with empty
pools.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional

from .contracts import utc_now
from .errors import PoolNotConfigured

logger = logging.getLogger(__name__)


class SemaphoreSlot:
    """One unit of a pool's capacity held by a single gated attempt."""

    def __init__(self, limiter: "ConcurrencyLimiter") -> None:
        self.limiter = limiter
        self.acquired_at = utc_now()
        self.released = False

    @property
    def pool(self) -> str:
        return self.limiter.name

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"SemaphoreSlot(pool={self.pool!r}, {state})"


class ConcurrencyLimiter:
    """Counting admission gate for one named pool."""

    def __init__(self, name: str, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.in_flight = 0
        self.peak = 0

    async def acquire(self) -> SemaphoreSlot:
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return SemaphoreSlot(self)

    def release(self, slot: SemaphoreSlot) -> None:
        if slot.limiter is not self:
            raise ValueError(f"Slot belongs to pool {slot.pool!r}, not {self.name!r}")
        if slot.released:
            return
        slot.released = True
        self.in_flight -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[SemaphoreSlot]:
        held = await self.acquire()
        try:
            yield held
        finally:
            self.release(held)


class LimiterRegistry:
    """Map of pool name to limiter, created lazily and reused thereafter."""

    def __init__(self, defaults: Optional[Mapping[str, int]] = None) -> None:
        self._defaults: Dict[str, int] = dict(defaults or {})
        self._limiters: Dict[str, ConcurrencyLimiter] = {}

    def configure(self, defaults: Optional[Mapping[str, int]]) -> None:
        """Merge pool caps into the defaults used for pools not yet created."""
        for pool_name, limit in (defaults or {}).items():
            limiter = self._limiters.get(pool_name)
            if limiter is not None and limiter.max_concurrency != limit:
                logger.warning(
                    f"Pool {pool_name} already limited to {limiter.max_concurrency}; "
                    f"configured limit {limit} applies after restart"
                )
            self._defaults[pool_name] = limit

    def get(self, pool_name: str, max_concurrency: Optional[int] = None) -> ConcurrencyLimiter:
        limiter = self._limiters.get(pool_name)
        if limiter is not None:
            if max_concurrency is not None and max_concurrency != limiter.max_concurrency:
                logger.warning(
                    f"Pool {pool_name} already limited to {limiter.max_concurrency}; "
                    f"ignoring requested limit {max_concurrency}"
                )
            return limiter

        limit = max_concurrency or self._defaults.get(pool_name)
        if limit is None:
            raise PoolNotConfigured(f"No concurrency limit configured for pool {pool_name!r}")
        limiter = ConcurrencyLimiter(pool_name, limit)
        self._limiters[pool_name] = limiter
        logger.debug(f"Created limiter for pool {pool_name} with limit {limit}")
        return limiter

    async def acquire(
        self, pool_name: str, max_concurrency: Optional[int] = None
    ) -> SemaphoreSlot:
        return await self.get(pool_name, max_concurrency).acquire()

    def release(self, slot: SemaphoreSlot) -> None:
        slot.limiter.release(slot)

    @asynccontextmanager
    async def slot(
        self, pool_name: str, max_concurrency: Optional[int] = None
    ) -> AsyncIterator[SemaphoreSlot]:
        async with self.get(pool_name, max_concurrency).slot() as held:
            yield held

    def __contains__(self, pool_name: str) -> bool:
        return pool_name in self._limiters

    def pools(self) -> list[str]:
        return list(self._limiters)


_registry_instance: LimiterRegistry | None = None


def get_limiter_registry(defaults: Optional[Mapping[str, int]] = None) -> LimiterRegistry:
    """Return the process-wide limiter registry, creating it on first use."""

    global _registry_instance
    if _registry_instance is None:
        _registry_instance = LimiterRegistry(defaults)
    else:
        _registry_instance.configure(defaults)
    return _registry_instance
